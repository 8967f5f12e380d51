from typing import List, Optional
from redis_keys import REDIS_CALL_CHANNEL
from services.channels import NotificationChannel
from services.signal_buffer import SignalBuffer, SignalEvent
from logging_config import get_logger

logger = get_logger(__name__)


class DualTransportBroadcaster:
    """Push every event through the notification channel and keep it for pollers.

    Push delivery is best-effort: no acknowledgement, no retry, and a failure
    is logged without affecting the buffered copy.
    """

    def __init__(self, buffer: SignalBuffer, push_channel: Optional[NotificationChannel] = None):
        self.buffer = buffer
        self.push_channel = push_channel
        if push_channel is None:
            logger.info("No push channel configured, signals are delivered by polling only")

    @property
    def push_enabled(self) -> bool:
        return self.push_channel is not None

    def channel_name(self, room: str) -> str:
        return REDIS_CALL_CHANNEL.format(slug=room)

    def broadcast(self, room: str, event: SignalEvent) -> bool:
        """Returns whether the push attempt went through; the buffer append always happens."""
        pushed = False
        if self.push_channel is not None:
            try:
                self.push_channel.trigger(self.channel_name(room), event.type, event.to_message())
                pushed = True
            except Exception as e:
                logger.error(f"Push broadcast of {event.type} to room {room} failed: {e}", exc_info=True)

        self.buffer.append(room, event)
        logger.debug(f"Buffered {event.type} event {event.id} for room {room} (pushed={pushed})")
        return pushed

    def poll(self, room: str, since: int = 0) -> List[SignalEvent]:
        return self.buffer.since(room, since)
