import asyncio

from logging_config import get_logger
from registry import ConnectionRegistry
from schemas.frames import OnlineUsersFrame, OnlineUsersPayload

logger = get_logger(__name__)


class PresenceBroadcaster:
    """Pushes the full online-user list to every local connection.

    Presence is global, not per room. Each change sends a full refresh rather
    than a delta.
    """

    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry
        registry.add_listener(self.broadcast)

    async def broadcast(self) -> int:
        users = self.registry.snapshot_all()
        targets = self.registry.connections()
        if not targets:
            return 0
        text = OnlineUsersFrame(payload=OnlineUsersPayload(users=users)).model_dump_json(by_alias=True)
        results = await asyncio.gather(*(connection.send_text(text) for connection in targets))
        logger.debug(f"Broadcasted presence ({len(users)} online) to {sum(results)}/{len(targets)} connections")
        return len(targets)
