from typing import Dict, List

from logging_config import get_logger
from registry import Connection

logger = get_logger(__name__)


class RoomMembershipTracker:
    """Which local connections are in which rooms.

    ``Connection.rooms`` is the per-connection view; the tracker keeps the
    reverse index so room fan-out does not have to scan every connection.
    """

    def __init__(self):
        self._rooms: Dict[str, Dict[int, Connection]] = {}

    def join(self, connection: Connection, room_id: str) -> int:
        """Add ``connection`` to ``room_id``; returns the local member count."""
        members = self._rooms.setdefault(room_id, {})
        if id(connection) in members:
            logger.debug(f"User {connection.user_id} already in room {room_id}")
        members[id(connection)] = connection
        connection.rooms.add(room_id)
        return len(members)

    def leave(self, connection: Connection, room_id: str) -> int:
        """Remove ``connection`` from ``room_id``; returns the local member count."""
        connection.rooms.discard(room_id)
        members = self._rooms.get(room_id)
        if not members:
            return 0
        members.pop(id(connection), None)
        if not members:
            del self._rooms[room_id]
            return 0
        return len(members)

    def leave_all(self, connection: Connection) -> List[str]:
        rooms = sorted(connection.rooms)
        for room_id in rooms:
            self.leave(connection, room_id)
        return rooms

    def is_member(self, connection: Connection, room_id: str) -> bool:
        return room_id in connection.rooms

    def members_of(self, room_id: str) -> List[Connection]:
        return list(self._rooms.get(room_id, {}).values())

    def member_count(self, room_id: str) -> int:
        return len(self._rooms.get(room_id, {}))
