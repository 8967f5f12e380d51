import redis
import json
from typing import Optional
from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD
from redis_keys import REDIS_PARTICIPANTS_KEY, REDIS_SIGNALS_KEY, REDIS_CALL_CHANNEL, REDIS_PROJECT_CHANNEL, REDIS_MEMBERS_KEY
from logging_config import get_logger

logger = get_logger(__name__)


class RedisBackend:
    def __init__(self, redis_client: Optional[redis.Redis] = None, pubsub_client: Optional[redis.Redis] = None):
        logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")
        self.redis_client = redis_client or redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
        # Separate connection for pub/sub (required by Redis)
        self.pubsub_client = pubsub_client or redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)

    def ping(self) -> bool:
        try:
            self.redis_client.ping()
            self.pubsub_client.ping()
            logger.info(f"Redis clients connected successfully to {REDIS_HOST}:{REDIS_PORT}")
            return True
        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
            return False

    # Participants

    def save_participant(self, project_id: str, user_id: str, participant: dict, ttl: int = 0):
        """Store one participant record in the room hash, refreshing the room TTL."""
        key = REDIS_PARTICIPANTS_KEY.format(slug=project_id)
        self.redis_client.hset(key, user_id, json.dumps(participant))
        if ttl:
            self.redis_client.expire(key, ttl)
        logger.debug(f"Saved participant {user_id} in room {project_id}")

    def get_participant(self, project_id: str, user_id: str) -> Optional[dict]:
        key = REDIS_PARTICIPANTS_KEY.format(slug=project_id)
        raw = self.redis_client.hget(key, user_id)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Discarding unreadable participant record {user_id} in room {project_id}")
            return None

    def delete_participants(self, project_id: str, *user_ids: str) -> int:
        if not user_ids:
            return 0
        key = REDIS_PARTICIPANTS_KEY.format(slug=project_id)
        removed = self.redis_client.hdel(key, *user_ids)
        logger.debug(f"Removed {removed} participant(s) from room {project_id}")
        return removed

    def get_participants(self, project_id: str) -> list:
        """Get all participant records of a room (unordered)."""
        key = REDIS_PARTICIPANTS_KEY.format(slug=project_id)
        records = []
        for user_id, raw in self.redis_client.hgetall(key).items():
            try:
                records.append(json.loads(raw))
            except json.JSONDecodeError:
                logger.warning(f"Discarding unreadable participant record {user_id} in room {project_id}")
        logger.debug(f"Room {project_id} has {len(records)} participants")
        return records

    # Signal buffer

    def append_signal(self, project_id: str, entry: dict, capacity: int, ttl: int = 0):
        """Append to the room's signal list and trim it to the newest `capacity` entries."""
        key = REDIS_SIGNALS_KEY.format(slug=project_id)
        pipe = self.redis_client.pipeline()
        pipe.rpush(key, json.dumps(entry))
        pipe.ltrim(key, -capacity, -1)
        if ttl:
            pipe.expire(key, ttl)
        pipe.execute()

    def get_signals(self, project_id: str) -> list:
        key = REDIS_SIGNALS_KEY.format(slug=project_id)
        entries = []
        for raw in self.redis_client.lrange(key, 0, -1):
            try:
                entries.append(json.loads(raw))
            except json.JSONDecodeError:
                logger.warning(f"Discarding unreadable signal entry in room {project_id}")
        return entries

    # Membership

    def is_project_member(self, project_id: str, user_id: str) -> bool:
        return bool(self.redis_client.sismember(REDIS_MEMBERS_KEY.format(slug=project_id), user_id))

    # Pub/sub

    def get_call_channel_name(self, project_id: str) -> str:
        """Get the Redis pub/sub channel name for a project's call."""
        return REDIS_CALL_CHANNEL.format(slug=project_id)

    def get_project_channel_name(self, project_id: str) -> str:
        return REDIS_PROJECT_CHANNEL.format(slug=project_id)

    def publish_message(self, channel: str, message: dict) -> int:
        """Publish a message to a Redis pub/sub channel."""
        message_json = json.dumps(message)
        subscribers = self.redis_client.publish(channel, message_json)
        logger.debug(f"Published message to channel {channel}, {subscribers} subscribers")
        return subscribers

    def subscribe(self, *channels: str):
        """Create a pubsub subscriber for the given channels."""
        logger.debug(f"Subscribing to Redis channels {channels}")
        pubsub = self.pubsub_client.pubsub()
        pubsub.subscribe(*channels)
        logger.debug(f"Successfully subscribed to channels {channels}")
        return pubsub


def create_redis_backend() -> Optional[RedisBackend]:
    """Connect to Redis if it is reachable; None means the relay runs without it."""
    backend = RedisBackend()
    if backend.ping():
        return backend
    logger.warning("Redis unavailable, push transport and shared stores disabled")
    return None
