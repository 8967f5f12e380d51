import threading
from typing import Optional
from fastapi import Header
from backend import RedisBackend, create_redis_backend
from constants import (
    PUSH_ENABLED, PRESENCE_BACKEND, MEMBERSHIP_BACKEND, PROJECT_MEMBERS, MEMBERSHIP_URL,
    MEMBERSHIP_TIMEOUT_SECONDS, SIGNAL_BUFFER_CAPACITY, SIGNAL_BUFFER_TTL_SECONDS, PARTICIPANT_STALE_SECONDS,
)
from services.broadcaster import DualTransportBroadcaster
from services.channels import RedisPubSubChannel
from services.membership import (
    HttpMembershipDirectory, MembershipDirectory, RedisMembershipDirectory, StaticMembershipDirectory,
    parse_project_members,
)
from services.presence import InMemoryPresenceStore, PresenceStore, RedisPresenceStore
from services.relay import SignalRelay
from services.signal_buffer import InMemorySignalBuffer, RedisSignalBuffer, SignalBuffer
from logging_config import get_logger

logger = get_logger(__name__)

_relay: Optional[SignalRelay] = None
_redis_backend: Optional[RedisBackend] = None
_relay_lock = threading.Lock()


def get_caller_identity(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    """Identity asserted by the authentication layer in front of this service."""
    if x_user_id and x_user_id.strip():
        return x_user_id.strip()
    return None


def get_caller_name(x_user_name: Optional[str] = Header(None)) -> Optional[str]:
    return x_user_name.strip() if x_user_name and x_user_name.strip() else None


def _needs_redis() -> bool:
    return PUSH_ENABLED or PRESENCE_BACKEND == "redis" or MEMBERSHIP_BACKEND == "redis"


def _build_membership(backend: Optional[RedisBackend]) -> MembershipDirectory:
    if MEMBERSHIP_BACKEND == "redis":
        if backend is None:
            raise RuntimeError("MEMBERSHIP_BACKEND=redis but Redis is unreachable")
        return RedisMembershipDirectory(backend)
    if MEMBERSHIP_BACKEND == "http":
        return HttpMembershipDirectory(MEMBERSHIP_URL, timeout=MEMBERSHIP_TIMEOUT_SECONDS)
    return StaticMembershipDirectory(parse_project_members(PROJECT_MEMBERS))


def build_relay() -> SignalRelay:
    """Assemble the relay from environment configuration.

    Redis is pinged once; when it is down the relay degrades to in-process
    stores and polling-only delivery.
    """
    global _redis_backend
    backend = create_redis_backend() if _needs_redis() else None
    _redis_backend = backend

    stale_after_ms = PARTICIPANT_STALE_SECONDS * 1000
    if PRESENCE_BACKEND == "redis" and backend is not None:
        presence: PresenceStore = RedisPresenceStore(backend, stale_after_ms=stale_after_ms, room_ttl=SIGNAL_BUFFER_TTL_SECONDS)
        buffer: SignalBuffer = RedisSignalBuffer(backend, capacity=SIGNAL_BUFFER_CAPACITY, ttl=SIGNAL_BUFFER_TTL_SECONDS)
    else:
        if PRESENCE_BACKEND == "redis":
            logger.warning("PRESENCE_BACKEND=redis but Redis is unreachable, using in-process stores")
        presence = InMemoryPresenceStore(stale_after_ms=stale_after_ms)
        buffer = InMemorySignalBuffer(capacity=SIGNAL_BUFFER_CAPACITY, ttl_ms=SIGNAL_BUFFER_TTL_SECONDS * 1000)

    push_channel = RedisPubSubChannel(backend) if PUSH_ENABLED and backend is not None else None
    broadcaster = DualTransportBroadcaster(buffer, push_channel)

    logger.info(
        f"Signal relay ready: presence={type(presence).__name__}, push={'redis' if push_channel else 'off'}, "
        f"membership={MEMBERSHIP_BACKEND}, buffer_capacity={SIGNAL_BUFFER_CAPACITY}"
    )
    return SignalRelay(presence, broadcaster, _build_membership(backend))


def get_relay() -> SignalRelay:
    global _relay
    if _relay is None:
        with _relay_lock:
            if _relay is None:
                _relay = build_relay()
    return _relay


def get_redis_backend() -> Optional[RedisBackend]:
    """Redis connection used by the websocket push listener, None when push is off."""
    get_relay()
    return _redis_backend if PUSH_ENABLED else None
