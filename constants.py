import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# Push transport over Redis pub/sub; polling-only when disabled or unreachable
PUSH_ENABLED = os.getenv("PUSH_ENABLED", "true").lower() in ("1", "true", "yes")

# "memory" keeps presence and signal buffers in this process, "redis" shares them
PRESENCE_BACKEND = os.getenv("PRESENCE_BACKEND", "memory")

# "static" (PROJECT_MEMBERS), "redis" (project:members:{id} sets) or "http" (MEMBERSHIP_URL)
MEMBERSHIP_BACKEND = os.getenv("MEMBERSHIP_BACKEND", "static")
# Format: "project1:alice,bob;project2:carol"
PROJECT_MEMBERS = os.getenv("PROJECT_MEMBERS", "")
MEMBERSHIP_URL = os.getenv("MEMBERSHIP_URL", "http://localhost:3000/api")
MEMBERSHIP_TIMEOUT_SECONDS = float(os.getenv("MEMBERSHIP_TIMEOUT_SECONDS", 5))

SIGNAL_BUFFER_CAPACITY = int(os.getenv("SIGNAL_BUFFER_CAPACITY", 100))
SIGNAL_BUFFER_TTL_SECONDS = int(os.getenv("SIGNAL_BUFFER_TTL_SECONDS", 3600))
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", 5))
PARTICIPANT_STALE_SECONDS = int(os.getenv("PARTICIPANT_STALE_SECONDS", 120))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
