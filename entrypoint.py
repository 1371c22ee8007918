import uvicorn
import os
from logging_config import setup_logging

# Setup logging before importing app
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)

from app import app
from constants import RELAY_BACKEND
from logging_config import get_logger

logger = get_logger(__name__)

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 3001))
    reload = os.getenv("RELOAD", "0").lower() in {"1", "true", "yes"}
    logger.info(f"Starting chat server on {host}:{port} (relay: {RELAY_BACKEND})")
    logger.info(f"WebSocket endpoint: ws://{host}:{port}/ws")
    uvicorn.run("app:app" if reload else app, host=host, port=port, reload=reload)
