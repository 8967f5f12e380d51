from abc import ABC, abstractmethod
from typing import Any, Dict
from backend import RedisBackend
from logging_config import get_logger

logger = get_logger(__name__)


class NotificationChannel(ABC):
    """Push transport: deliver an event to every subscriber of a named channel."""

    @abstractmethod
    def trigger(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        ...


class RedisPubSubChannel(NotificationChannel):
    """Fire-and-forget publish over Redis pub/sub.

    Subscribers receive `{"event": ..., "data": ...}` JSON on the channel;
    the websocket endpoint forwards it unchanged to browsers.
    """

    def __init__(self, backend: RedisBackend):
        self.backend = backend

    def trigger(self, channel, event, payload):
        subscribers = self.backend.publish_message(channel, {"event": event, "data": payload})
        logger.debug(f"Triggered {event} on {channel} ({subscribers} subscribers)")
