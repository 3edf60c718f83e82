import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = os.getenv("REDIS_PORT", 6379)
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = os.getenv("REDIS_DB", 0)

if REDIS_PASSWORD:
    REDIS_URL = f"redis://:{REDIS_PASSWORD}@{REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}"
else:
    REDIS_URL = f"redis://{REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}"

STORE_ENDPOINT = os.getenv("STORE_ENDPOINT", REDIS_URL)

HEARTBEAT_INTERVAL_MS = int(os.getenv("HEARTBEAT_INTERVAL_MS", 30000))
HEARTBEAT_MISS_LIMIT = int(os.getenv("HEARTBEAT_MISS_LIMIT", 3))
QUEUE_RETRY_MAX_ATTEMPTS = int(os.getenv("QUEUE_RETRY_MAX_ATTEMPTS", 5))
QUEUE_RETRY_BACKOFF_MS = int(os.getenv("QUEUE_RETRY_BACKOFF_MS", 100))
STORE_RETRY_MAX_ATTEMPTS = int(os.getenv("STORE_RETRY_MAX_ATTEMPTS", 3))
STORE_RETRY_BACKOFF_MS = int(os.getenv("STORE_RETRY_BACKOFF_MS", 100))
DRAIN_BATCH_SIZE = int(os.getenv("DRAIN_BATCH_SIZE", 100))

GATEWAY_INSTANCE_ID = os.getenv("GATEWAY_INSTANCE_ID", None)

ACCESS_TOKEN_SECRET = os.getenv("ACCESS_TOKEN_SECRET", "change-me")
ACCESS_TOKEN_ALGORITHM = os.getenv("ACCESS_TOKEN_ALGORITHM", "HS256")

# Close codes sent on the websocket
CLOSE_POLICY_VIOLATION = 1008
CLOSE_GOING_AWAY = 1001
