from contextlib import asynccontextmanager
from datetime import datetime, timezone
import os

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from auth import IdentityVerifier
from backend import RedisBackend
from constants import CORS_ORIGINS, MAX_MESSAGE_LENGTH, RELAY_BACKEND
from logging_config import get_logger, setup_logging
from membership import RoomMembershipTracker
from message_router import MessageRouter
from presence import PresenceBroadcaster
from registry import ConnectionRegistry
from relay import InMemoryRelay, Relay, RedisRelay
from routers.auth import auth_router
from routers.dms import dms_router
from routers.rooms import rooms_router

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


def build_relay(kind: str = RELAY_BACKEND) -> Relay:
    if kind == "memory":
        logger.warning("Using in-memory relay: messages will not reach other server processes")
        return InMemoryRelay()
    return RedisRelay()


def create_app(store=None, relay: Relay = None, verifier: IdentityVerifier = None,
               max_message_length: int = MAX_MESSAGE_LENGTH) -> FastAPI:
    """Wire the chat core together.

    Registry, tracker and router are created per app so their lifetime is the
    process lifetime; the relay subscription is started and stopped by the
    lifespan handler.
    """
    store = store if store is not None else RedisBackend()
    relay = relay if relay is not None else build_relay()
    verifier = verifier or IdentityVerifier()

    registry = ConnectionRegistry()
    tracker = RoomMembershipTracker()
    presence = PresenceBroadcaster(registry)
    router = MessageRouter(store, relay, registry, tracker, verifier, max_message_length=max_message_length)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await store.ping()
        await router.start()
        logger.info("Chat server started")
        try:
            yield
        finally:
            logger.info("Shutting down gracefully...")
            await relay.close()
            await store.close()
            logger.info("Server closed successfully")

    app = FastAPI(lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.store = store
    app.state.relay = relay
    app.state.verifier = verifier
    app.state.registry = registry
    app.state.tracker = tracker
    app.state.presence = presence
    app.state.router = router

    app.include_router(auth_router)
    app.include_router(rooms_router)
    app.include_router(dms_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Chat WebSocket.

        The bearer token goes in the ``Authorization`` header or the ``token``
        query parameter.
        """
        await router.serve(websocket)

    logger.info("FastAPI application initialized")
    return app


app = create_app()
