"""Client-side call orchestration for a project video call.

One peer connection is kept per remote participant in a full mesh. The
peer transport (PeerJS-style endpoint) and the media devices are injected,
so the same orchestration runs in a browser bridge, a headless bot or tests.

Dial tie-break: when two participants discover each other, only the one
whose user id sorts greater (plain string comparison, ``local > remote``)
places the call. The other side waits for the incoming call. This keeps
exactly one offer per pair; a manual reconnect bypasses it.
"""

import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from client.signal_client import SignalClient
from constants import POLL_INTERVAL_SECONDS
from logging_config import get_logger

logger = get_logger(__name__)


class ConnectionStatus(str, Enum):
    ABSENT = "absent"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass
class PeerConnectionState:
    remote_user_id: str
    remote_peer_id: str
    display_name: str
    status: ConnectionStatus = ConnectionStatus.CONNECTING
    stream: Any = None


class MediaErrorKind(str, Enum):
    NOT_FOUND = "not-found"
    PERMISSION_DENIED = "permission-denied"
    DEVICE_BUSY = "device-busy"
    UNKNOWN = "unknown"


MEDIA_ERROR_MESSAGES = {
    MediaErrorKind.NOT_FOUND: "Camera or microphone not found. Please check your devices.",
    MediaErrorKind.PERMISSION_DENIED: "Permission denied. Please allow camera and microphone access.",
    MediaErrorKind.DEVICE_BUSY: "Device is already in use by another application.",
    MediaErrorKind.UNKNOWN: "Failed to access camera/microphone",
}

_MEDIA_ERROR_NAMES = {
    "NotFoundError": MediaErrorKind.NOT_FOUND,
    "DevicesNotFoundError": MediaErrorKind.NOT_FOUND,
    "NotAllowedError": MediaErrorKind.PERMISSION_DENIED,
    "PermissionDeniedError": MediaErrorKind.PERMISSION_DENIED,
    "NotReadableError": MediaErrorKind.DEVICE_BUSY,
    "TrackStartError": MediaErrorKind.DEVICE_BUSY,
}


def classify_media_error(name: Optional[str]) -> MediaErrorKind:
    return _MEDIA_ERROR_NAMES.get(name or "", MediaErrorKind.UNKNOWN)


class MediaDeviceError(Exception):
    def __init__(self, kind: MediaErrorKind, detail: Optional[str] = None):
        self.kind = kind
        self.detail = detail
        super().__init__(MEDIA_ERROR_MESSAGES[kind])

    @property
    def message(self) -> str:
        return MEDIA_ERROR_MESSAGES[self.kind]


class MediaTrack(Protocol):
    kind: str
    enabled: bool

    def stop(self) -> None: ...


class MediaStream(Protocol):
    def get_audio_tracks(self) -> List[MediaTrack]: ...

    def get_video_tracks(self) -> List[MediaTrack]: ...

    def get_tracks(self) -> List[MediaTrack]: ...


class MediaDevices(Protocol):
    async def get_user_media(self) -> MediaStream: ...

    async def get_display_media(self) -> MediaStream: ...


class PeerCall(Protocol):
    peer: str
    metadata: Dict[str, Any]

    def on(self, event: str, handler: Callable) -> None: ...

    def answer(self, stream: MediaStream) -> None: ...

    def replace_track(self, kind: str, track: MediaTrack) -> None: ...

    def close(self) -> None: ...


class PeerEndpoint(Protocol):
    open: bool

    def on(self, event: str, handler: Callable) -> None: ...

    def call(self, peer_id: str, stream: MediaStream, metadata: Dict[str, Any]) -> PeerCall: ...

    def destroy(self) -> None: ...


def should_initiate(local_user_id: str, remote_user_id: str) -> bool:
    return local_user_id > remote_user_id


def make_peer_id(project_id: str, user_id: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]", "", f"{project_id}-{user_id}")


class PeerOrchestrator:
    def __init__(
        self,
        signal_client: SignalClient,
        endpoint: PeerEndpoint,
        media_devices: MediaDevices,
        project_id: str,
        user_id: str,
        user_name: str,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        announce_retries: int = 3,
        announce_retry_delay: float = 1.0,
    ):
        self.signal_client = signal_client
        self.endpoint = endpoint
        self.media_devices = media_devices
        self.project_id = project_id
        self.user_id = user_id
        self.user_name = user_name
        self.peer_id = make_peer_id(project_id, user_id)
        self.poll_interval = poll_interval
        self.announce_retries = announce_retries
        self.announce_retry_delay = announce_retry_delay

        self.local_stream: Optional[MediaStream] = None
        self.screen_stream: Optional[MediaStream] = None
        self.peers: Dict[str, PeerConnectionState] = {}
        self.calls: Dict[str, PeerCall] = {}
        self.roster: Dict[str, dict] = {}
        self.error: Optional[str] = None
        self.audio_enabled = True
        self.video_enabled = True
        self._poll_task: Optional[asyncio.Task] = None
        self._closed = False

        self.endpoint.on("call", self.handle_incoming_call)

    @property
    def is_screen_sharing(self) -> bool:
        return self.screen_stream is not None

    async def start(self) -> None:
        """Acquire local media, announce presence and begin the polling loop.

        Raises MediaDeviceError when the camera or microphone cannot be
        opened; calling start() again retries.
        """
        self.error = None
        self._closed = False
        if self.local_stream is None:
            try:
                self.local_stream = await self.media_devices.get_user_media()
            except MediaDeviceError as e:
                self.error = e.message
                raise
            except Exception as e:
                kind = classify_media_error(getattr(e, "name", None) or type(e).__name__)
                self.error = MEDIA_ERROR_MESSAGES[kind]
                logger.error(f"Error acquiring local media: {e}")
                raise MediaDeviceError(kind, str(e)) from e

        await self.signal_client.send_with_retry(
            {"type": "user-joined", "userId": self.user_id, "userName": self.user_name, "peerId": self.peer_id},
            retries=self.announce_retries,
            delay=self.announce_retry_delay,
        )
        await self.signal_client.skip_backlog()
        await self.refresh()
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info(f"{self.user_id} joined call in project {self.project_id} as {self.peer_id}")

    async def _poll_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.refresh(heartbeat=True)
            except Exception as e:
                logger.warning(f"Polling round for project {self.project_id} failed: {e}")

    async def refresh(self, heartbeat: bool = False) -> None:
        """One polling round: optional liveness touch, roster snapshot, buffered signals."""
        if heartbeat:
            await self.signal_client.send({"type": "heartbeat", "userId": self.user_id, "peerId": self.peer_id})
        self.on_roster(await self.signal_client.participants())
        for message in await self.signal_client.poll():
            self.handle_signal(message)

    def on_roster(self, participants: List[dict]) -> None:
        self.roster = {p["userId"]: p for p in participants if p.get("userId")}
        for participant in self.roster.values():
            self.connect_to_participant(participant)

    def handle_signal(self, message: dict) -> None:
        """Apply one signal received by push or by polling."""
        data = message.get("data") or {}
        event_type = message.get("type")
        if event_type == "participants-update":
            self.on_roster(data.get("participants", []))
        elif event_type == "user-left":
            remote_id = message.get("userId") or data.get("userId") or data.get("from")
            if remote_id and remote_id != self.user_id:
                self.roster.pop(remote_id, None)
                self.drop_peer(remote_id)
        elif event_type == "user-joined":
            remote_id = message.get("userId") or data.get("userId") or data.get("from")
            if remote_id:
                participant = {
                    "userId": remote_id,
                    "userName": data.get("userName") or data.get("fromName") or "Participant",
                    "peerId": data.get("peerId"),
                }
                self.roster[remote_id] = participant
                self.connect_to_participant(participant)

    def connect_to_participant(self, participant: dict, force: bool = False) -> bool:
        """Dial a participant if this side owns the dial. Returns whether a call was placed."""
        remote_id = participant.get("userId")
        remote_peer_id = participant.get("peerId")
        if self._closed or self.local_stream is None or not self.endpoint.open:
            return False
        if not remote_id or not remote_peer_id or remote_id == self.user_id:
            return False
        if remote_id in self.calls:
            return False
        if not force and not should_initiate(self.user_id, remote_id):
            return False

        logger.debug(f"{self.user_id} dialing {remote_id} at {remote_peer_id}")
        call = self.endpoint.call(remote_peer_id, self.local_stream, {"userId": self.user_id, "userName": self.user_name})
        self._register_call(remote_id, participant.get("userName") or "Participant", remote_peer_id, call)
        return True

    def handle_incoming_call(self, call: PeerCall) -> None:
        if self.local_stream is None or self._closed:
            call.close()
            return
        metadata = call.metadata or {}
        remote_id = metadata.get("userId") or call.peer
        call.answer(self.local_stream)
        logger.debug(f"{self.user_id} answered call from {remote_id}")
        self._register_call(remote_id, metadata.get("userName") or "Participant", call.peer, call)

    def _register_call(self, remote_id: str, display_name: str, remote_peer_id: str, call: PeerCall) -> None:
        existing = self.calls.get(remote_id)
        self.calls[remote_id] = call
        if existing is not None and existing is not call:
            existing.close()
        previous = self.peers.get(remote_id)
        self.peers[remote_id] = PeerConnectionState(
            remote_user_id=remote_id,
            remote_peer_id=remote_peer_id,
            display_name=display_name,
            stream=previous.stream if previous else None,
        )
        if self.is_screen_sharing:
            call.replace_track("video", self.screen_stream.get_video_tracks()[0])

        def on_stream(stream):
            if self.calls.get(remote_id) is not call:
                return
            state = self.peers[remote_id]
            state.stream = stream
            state.status = ConnectionStatus.CONNECTED
            logger.info(f"{self.user_id} connected to {remote_id}")

        def on_close():
            if self.calls.get(remote_id) is call:
                self.drop_peer(remote_id)

        def on_error(err):
            if self.calls.get(remote_id) is not call:
                return
            logger.error(f"Media call error with {remote_id}: {err}")
            self.peers[remote_id].status = ConnectionStatus.FAILED

        call.on("stream", on_stream)
        call.on("close", on_close)
        call.on("error", on_error)

    def drop_peer(self, remote_id: str) -> None:
        call = self.calls.pop(remote_id, None)
        self.peers.pop(remote_id, None)
        if call is not None:
            call.close()
            logger.info(f"{self.user_id} dropped peer {remote_id}")

    def status_of(self, remote_id: str) -> ConnectionStatus:
        state = self.peers.get(remote_id)
        return state.status if state else ConnectionStatus.ABSENT

    def reconnect(self, remote_id: str) -> bool:
        """Re-dial a peer from its last known roster entry, whichever side owns the dial."""
        participant = self.roster.get(remote_id)
        if participant is None:
            logger.warning(f"Cannot reconnect to {remote_id}: not in roster")
            return False
        self.drop_peer(remote_id)
        return self.connect_to_participant(participant, force=True)

    def toggle_audio(self) -> bool:
        tracks = self.local_stream.get_audio_tracks() if self.local_stream else []
        if tracks:
            tracks[0].enabled = not tracks[0].enabled
            self.audio_enabled = tracks[0].enabled
        return self.audio_enabled

    def toggle_video(self) -> bool:
        tracks = self.local_stream.get_video_tracks() if self.local_stream else []
        if tracks:
            tracks[0].enabled = not tracks[0].enabled
            self.video_enabled = tracks[0].enabled
        return self.video_enabled

    def _replace_video_track(self, track: MediaTrack) -> None:
        for call in self.calls.values():
            call.replace_track("video", track)

    async def toggle_screen_share(self) -> bool:
        """Swap the outgoing video track on every call; audio keeps flowing untouched."""
        if not self.is_screen_sharing:
            screen_stream = await self.media_devices.get_display_media()
            screen_tracks = screen_stream.get_video_tracks()
            if not screen_tracks:
                return False
            self.screen_stream = screen_stream
            self._replace_video_track(screen_tracks[0])
            return True

        camera_tracks = self.local_stream.get_video_tracks() if self.local_stream else []
        if camera_tracks:
            self._replace_video_track(camera_tracks[0])
        for track in self.screen_stream.get_tracks():
            track.stop()
        self.screen_stream = None
        return False

    async def close(self) -> None:
        """Leave the call: stop polling, announce the leave, then release local resources.

        Resources are released even if the leave signal fails.
        """
        if self._closed:
            return
        self._closed = True
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

        try:
            await self.signal_client.send({"type": "user-left", "userId": self.user_id})
        except Exception as e:
            logger.error(f"Failed to notify leave: {e}")

        try:
            for stream in (self.local_stream, self.screen_stream):
                if stream is not None:
                    for track in stream.get_tracks():
                        track.stop()

            for remote_id in list(self.calls):
                self.drop_peer(remote_id)
            self.peers.clear()
            self.endpoint.destroy()
        finally:
            self.local_stream = None
            self.screen_stream = None
            logger.info(f"{self.user_id} left call in project {self.project_id}")

    async def __aenter__(self) -> "PeerOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
