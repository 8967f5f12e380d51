import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Callable, Dict, List, Optional
from backend import RedisBackend
from logging_config import get_logger

logger = get_logger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Participant:
    user_id: str
    display_name: str
    peer_id: Optional[str]
    joined_at: int
    last_seen_at: int

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Participant":
        return cls(
            user_id=data["user_id"],
            display_name=data.get("display_name") or "Participant",
            peer_id=data.get("peer_id"),
            joined_at=int(data.get("joined_at", 0)),
            last_seen_at=int(data.get("last_seen_at", 0)),
        )


class PresenceStore(ABC):
    """Who is currently in each call room.

    Participants are listed in first-join order. A participant whose
    last_seen_at is older than `stale_after_ms` is evicted the next time
    the room is listed; `stale_after_ms=0` disables eviction.
    """

    def __init__(self, stale_after_ms: int = 0, clock: Callable[[], int] = now_ms):
        self.stale_after_ms = stale_after_ms
        self.clock = clock

    def is_stale(self, participant: Participant, now: int) -> bool:
        return bool(self.stale_after_ms) and now - participant.last_seen_at > self.stale_after_ms

    @abstractmethod
    def upsert(self, room: str, user_id: str, display_name: Optional[str] = None, peer_id: Optional[str] = None) -> Participant:
        ...

    @abstractmethod
    def remove(self, room: str, user_id: str) -> None:
        ...

    @abstractmethod
    def list(self, room: str) -> List[Participant]:
        ...


class InMemoryPresenceStore(PresenceStore):
    def __init__(self, stale_after_ms: int = 0, clock: Callable[[], int] = now_ms):
        super().__init__(stale_after_ms, clock)
        # Format: {room: {user_id: Participant}}, dicts keep first-join order
        self.rooms: Dict[str, Dict[str, Participant]] = {}

    def upsert(self, room, user_id, display_name=None, peer_id=None):
        now = self.clock()
        participants = self.rooms.setdefault(room, {})
        existing = participants.get(user_id)
        if existing is None:
            participant = Participant(
                user_id=user_id,
                display_name=display_name or "Participant",
                peer_id=peer_id,
                joined_at=now,
                last_seen_at=now,
            )
            participants[user_id] = participant
            logger.info(f"Participant {user_id} joined room {room} ({len(participants)} present)")
            return participant

        if display_name:
            existing.display_name = display_name
        if peer_id:
            existing.peer_id = peer_id
        existing.last_seen_at = now
        logger.debug(f"Touched participant {user_id} in room {room}")
        return existing

    def remove(self, room, user_id):
        participants = self.rooms.get(room)
        if not participants or user_id not in participants:
            logger.debug(f"Participant {user_id} not present in room {room}, nothing to remove")
            return
        del participants[user_id]
        logger.info(f"Participant {user_id} left room {room} ({len(participants)} remaining)")
        if not participants:
            del self.rooms[room]
            logger.debug(f"Room {room} is empty, dropped")

    def list(self, room):
        participants = self.rooms.get(room)
        if not participants:
            return []
        now = self.clock()
        stale = [user_id for user_id, p in participants.items() if self.is_stale(p, now)]
        for user_id in stale:
            del participants[user_id]
            logger.info(f"Evicted stale participant {user_id} from room {room}")
        if not participants:
            del self.rooms[room]
            return []
        return list(participants.values())


class RedisPresenceStore(PresenceStore):
    """Presence shared across relay instances through a Redis hash per room."""

    def __init__(self, backend: RedisBackend, stale_after_ms: int = 0, room_ttl: int = 3600, clock: Callable[[], int] = now_ms):
        super().__init__(stale_after_ms, clock)
        self.backend = backend
        self.room_ttl = room_ttl

    def upsert(self, room, user_id, display_name=None, peer_id=None):
        now = self.clock()
        record = self.backend.get_participant(room, user_id)
        if record is None:
            participant = Participant(
                user_id=user_id,
                display_name=display_name or "Participant",
                peer_id=peer_id,
                joined_at=now,
                last_seen_at=now,
            )
            logger.info(f"Participant {user_id} joined room {room}")
        else:
            participant = Participant.from_dict(record)
            if display_name:
                participant.display_name = display_name
            if peer_id:
                participant.peer_id = peer_id
            participant.last_seen_at = now
        self.backend.save_participant(room, user_id, participant.to_dict(), ttl=self.room_ttl)
        return participant

    def remove(self, room, user_id):
        removed = self.backend.delete_participants(room, user_id)
        if removed:
            logger.info(f"Participant {user_id} left room {room}")

    def list(self, room):
        now = self.clock()
        participants = []
        stale = []
        for record in self.backend.get_participants(room):
            participant = Participant.from_dict(record)
            if self.is_stale(participant, now):
                stale.append(participant.user_id)
            else:
                participants.append(participant)
        if stale:
            self.backend.delete_participants(room, *stale)
            logger.info(f"Evicted {len(stale)} stale participant(s) from room {room}")
        participants.sort(key=lambda p: p.joined_at)
        return participants
