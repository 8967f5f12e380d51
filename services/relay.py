import threading
from typing import Callable, Dict, List, Optional
from errors import AuthenticationError, AuthorizationError
from redis_keys import REDIS_PROJECT_CHANNEL
from schemas.signals import ParticipantOut, SignalRequest
from services.broadcaster import DualTransportBroadcaster
from services.membership import MembershipDirectory
from services.presence import Participant, PresenceStore, now_ms
from services.signal_buffer import SignalEvent
from logging_config import get_logger

logger = get_logger(__name__)

USER_JOINED = "user-joined"
USER_LEFT = "user-left"
PARTICIPANTS_UPDATE = "participants-update"
CALL_STARTED = "video-call-started"

ROSTER_EVENTS = (USER_JOINED, USER_LEFT)


class SignalRelay:
    """Single entry point for call signaling in a project room.

    Accepted signals update presence and are rebroadcast to the room. Joins
    and leaves are followed by a full-roster `participants-update` so clients
    that missed a push heal on the next snapshot. Signals without an actor
    are still buffered but leave presence untouched.
    """

    def __init__(
        self,
        presence: PresenceStore,
        broadcaster: DualTransportBroadcaster,
        membership: MembershipDirectory,
        clock: Callable[[], int] = now_ms,
    ):
        self.presence = presence
        self.broadcaster = broadcaster
        self.membership = membership
        self.clock = clock
        self._room_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _room_lock(self, project_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._room_locks.get(project_id)
            if lock is None:
                lock = self._room_locks[project_id] = threading.Lock()
            return lock

    def authorize(self, project_id: str, caller_id: Optional[str]) -> str:
        if not caller_id:
            logger.warning(f"Rejected unauthenticated request for room {project_id}")
            raise AuthenticationError("Unauthorized")
        try:
            is_member = self.membership.is_member(project_id, caller_id)
        except Exception as e:
            logger.error(f"Membership check for {caller_id} in project {project_id} failed: {e}", exc_info=True)
            is_member = False
        if not is_member:
            logger.warning(f"Rejected {caller_id}: not a member of project {project_id}")
            raise AuthorizationError("Forbidden")
        return caller_id

    def roster(self, project_id: str) -> List[Participant]:
        return self.presence.list(project_id)

    def handle(self, project_id: str, caller_id: Optional[str], signal: SignalRequest) -> SignalEvent:
        self.authorize(project_id, caller_id)

        actor_id = signal.actor_id
        event = SignalEvent(
            type=signal.type,
            payload=signal.payload(),
            origin_user_id=actor_id,
            timestamp=self.clock(),
        )
        logger.debug(f"Signal {event.type} from {actor_id or '-'} (caller {caller_id}) in room {project_id}")

        with self._room_lock(project_id):
            if actor_id and signal.type == USER_JOINED:
                self.presence.upsert(project_id, actor_id, signal.actor_name, signal.peer_id)
            elif actor_id and signal.type == USER_LEFT:
                self.presence.remove(project_id, actor_id)
            elif actor_id:
                self.presence.upsert(project_id, actor_id, signal.user_name or signal.from_name, signal.peer_id)
            else:
                logger.debug(f"Signal {event.type} in room {project_id} has no actor, buffering without presence change")

            self.broadcaster.broadcast(project_id, event)

            room_empty = False
            if signal.type in ROSTER_EVENTS:
                participants = self.presence.list(project_id)
                room_empty = not participants
                self.broadcaster.broadcast(project_id, self._roster_event(participants))

        if room_empty:
            self._release_room_lock(project_id)
        return event

    def _release_room_lock(self, project_id: str):
        with self._locks_guard:
            lock = self._room_locks.get(project_id)
            if lock is not None and not lock.locked():
                del self._room_locks[project_id]

    def _roster_event(self, participants: List[Participant]) -> SignalEvent:
        return SignalEvent(
            type=PARTICIPANTS_UPDATE,
            payload={"participants": [ParticipantOut.from_participant(p).model_dump(by_alias=True) for p in participants]},
            origin_user_id=None,
            timestamp=self.clock(),
        )

    def poll(self, project_id: str, caller_id: Optional[str], since: int = 0) -> List[SignalEvent]:
        self.authorize(project_id, caller_id)
        return self.broadcaster.poll(project_id, since)

    def participants(self, project_id: str, caller_id: Optional[str]) -> List[Participant]:
        self.authorize(project_id, caller_id)
        return self.roster(project_id)

    def notify_call_started(self, project_id: str, caller_id: Optional[str], user_id: str, user_name: str) -> bool:
        """Tell the whole project a call started. Push only; returns whether it was sent."""
        self.authorize(project_id, caller_id)
        channel = self.broadcaster.push_channel
        if channel is None:
            logger.info(f"Call-started notice for project {project_id} skipped, no push channel")
            return False
        try:
            channel.trigger(REDIS_PROJECT_CHANNEL.format(slug=project_id), CALL_STARTED, {"userName": user_name, "userId": user_id})
        except Exception as e:
            logger.error(f"Push of call-started notice for project {project_id} failed: {e}", exc_info=True)
            return False
        logger.info(f"{user_name} ({user_id}) started a call in project {project_id}")
        return True
