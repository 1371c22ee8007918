import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# "redis" fans out across processes, "memory" only within this process
RELAY_BACKEND = os.getenv("RELAY_BACKEND", "redis")
RELAY_RECONNECT_DELAY = float(os.getenv("RELAY_RECONNECT_DELAY", 1.0))

JWT_SECRET = os.getenv("JWT_SECRET", "your-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
TOKEN_TTL_HOURS = int(os.getenv("TOKEN_TTL_HOURS", 24))

MAX_MESSAGE_LENGTH = int(os.getenv("MAX_MESSAGE_LENGTH", 5000))

CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]

# WebSocket close codes
WS_CLOSE_SUPERSEDED = 4000
WS_CLOSE_UNAUTHENTICATED = 4001
WS_CLOSE_INVALID_TOKEN = 4002
WS_CLOSE_INTERNAL_ERROR = 1011
