"""Live connections on this process.

The registry is the only owner of ``Connection`` objects. Mutations never
suspend, so on a single event loop they are atomic; change notifications are
awaited after the mutation is complete.
"""
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from fastapi import WebSocket

from logging_config import get_logger
from schemas.frames import OnlineUser
from schemas.records import UserRecord

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class Connection:
    """One live WebSocket plus the user it belongs to and the rooms it joined."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.user: Optional[UserRecord] = None
        self.rooms: set[str] = set()
        self.state = ConnectionState.UNAUTHENTICATED
        self._send_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"<Connection user={self.user_id} state={self.state.value}>"

    @property
    def user_id(self) -> Optional[str]:
        return self.user.id if self.user else None

    @property
    def username(self) -> Optional[str]:
        return self.user.username if self.user else None

    def online_user(self) -> OnlineUser:
        return OnlineUser(
            id=self.user.id,
            username=self.user.username,
            age=self.user.age,
            sex=self.user.sex,
            country=self.user.country,
        )

    async def send_text(self, text: str) -> bool:
        if self.state is ConnectionState.CLOSED:
            return False
        async with self._send_lock:
            try:
                await self.websocket.send_text(text)
                return True
            except Exception as e:
                # Socket already gone; the receive loop will notice and clean up
                logger.warning(f"Error sending to connection {self.user_id}: {e}")
                return False

    async def send(self, frame) -> bool:
        return await self.send_text(frame.model_dump_json(by_alias=True))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.state is ConnectionState.CLOSED:
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"Error closing WebSocket for {self.user_id}: {e}")


@dataclass(frozen=True)
class RegistrationResult:
    connection: Connection
    replaced: Optional[Connection] = None


ChangeListener = Callable[[], Awaitable[None]]


class ConnectionRegistry:
    """Online user id -> connection, one open connection per user.

    A second connection for the same user replaces the first one (the caller
    is expected to close the replaced connection).
    """

    def __init__(self):
        self._connections: Dict[str, Connection] = {}
        self._listeners: List[ChangeListener] = []

    def __len__(self) -> int:
        return len(self._connections)

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    async def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                await listener()
            except Exception as e:
                logger.error(f"Registry change listener failed: {e}", exc_info=True)

    async def register(self, identity: str, connection: Connection) -> RegistrationResult:
        replaced = self._connections.get(identity)
        if replaced is connection:
            replaced = None
        self._connections[identity] = connection
        connection.state = ConnectionState.ACTIVE
        if replaced is not None:
            logger.info(f"User {identity} opened a new session, replacing the previous one")
        logger.debug(f"Registered connection for {identity} (online: {len(self._connections)})")
        await self._notify()
        return RegistrationResult(connection=connection, replaced=replaced)

    async def unregister(self, identity: str, connection: Connection) -> bool:
        """Remove ``identity`` only if it still maps to ``connection``."""
        if self._connections.get(identity) is not connection:
            logger.debug(f"Skipping unregister for {identity}: connection was already replaced")
            return False
        del self._connections[identity]
        logger.debug(f"Unregistered connection for {identity} (online: {len(self._connections)})")
        await self._notify()
        return True

    def lookup(self, identity: str) -> Optional[Connection]:
        return self._connections.get(identity)

    def connections(self) -> List[Connection]:
        return list(self._connections.values())

    def snapshot_all(self) -> List[OnlineUser]:
        return [connection.online_user() for connection in self._connections.values()]
