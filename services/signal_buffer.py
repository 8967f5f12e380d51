import threading
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional
from backend import RedisBackend
from logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SignalEvent:
    type: str
    payload: Dict[str, Any]
    origin_user_id: Optional[str]
    timestamp: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_message(self) -> dict:
        """Wire shape shared by the push channel and the poll endpoint."""
        return {
            "id": self.id,
            "type": self.type,
            "data": self.payload,
            "userId": self.origin_user_id,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_message(cls, message: dict) -> "SignalEvent":
        return cls(
            id=message["id"],
            type=message["type"],
            payload=message.get("data") or {},
            origin_user_id=message.get("userId"),
            timestamp=int(message["timestamp"]),
        )


class SignalBuffer(ABC):
    """Bounded per-room FIFO of signal events for polling clients.

    Appending beyond `capacity` evicts the oldest entry. `since` returns
    events with timestamp strictly greater than the given epoch millis.
    """

    def __init__(self, capacity: int = 100):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity

    @abstractmethod
    def append(self, room: str, event: SignalEvent) -> None:
        ...

    @abstractmethod
    def since(self, room: str, since: int = 0) -> List[SignalEvent]:
        ...


class InMemorySignalBuffer(SignalBuffer):
    """In-process buffer. Rooms with no new event for `ttl_ms` are dropped (0 keeps them)."""

    def __init__(self, capacity: int = 100, ttl_ms: int = 0):
        super().__init__(capacity)
        self.ttl_ms = ttl_ms
        self.rooms: Dict[str, Deque[SignalEvent]] = {}
        self._lock = threading.Lock()

    def append(self, room, event):
        with self._lock:
            self._expire_rooms(event.timestamp)
            events = self.rooms.get(room)
            if events is None:
                events = self.rooms[room] = deque(maxlen=self.capacity)
            if len(events) == self.capacity:
                logger.debug(f"Signal buffer for room {room} full, evicting oldest event {events[0].id}")
            events.append(event)

    def _expire_rooms(self, now: int):
        if not self.ttl_ms:
            return
        expired = [room for room, events in self.rooms.items() if events and events[-1].timestamp <= now - self.ttl_ms]
        for room in expired:
            del self.rooms[room]
        if expired:
            logger.debug(f"Dropped idle signal buffers for rooms {expired}")

    def since(self, room, since=0):
        with self._lock:
            events = list(self.rooms.get(room, ()))
        return [event for event in events if event.timestamp > since]


class RedisSignalBuffer(SignalBuffer):
    def __init__(self, backend: RedisBackend, capacity: int = 100, ttl: int = 3600):
        super().__init__(capacity)
        self.backend = backend
        self.ttl = ttl

    def append(self, room, event):
        self.backend.append_signal(room, event.to_message(), self.capacity, ttl=self.ttl)

    def since(self, room, since=0):
        events = []
        for message in self.backend.get_signals(room):
            try:
                event = SignalEvent.from_message(message)
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Skipping malformed buffered signal in room {room}")
                continue
            if event.timestamp > since:
                events.append(event)
        return events
