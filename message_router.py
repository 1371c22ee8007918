"""WebSocket protocol handling and local fan-out.

One ``MessageRouter`` per process. It authenticates new sockets, runs the
per-connection frame loop, and is the relay subscriber that delivers
published envelopes to the matching local connections.
"""
import asyncio
from typing import get_args

from fastapi import WebSocket, WebSocketDisconnect

from auth import IdentityVerifier, extract_token
from constants import MAX_MESSAGE_LENGTH, WS_CLOSE_INTERNAL_ERROR, WS_CLOSE_SUPERSEDED
from errors import AuthError, AuthorizationError, ChatError, DependencyError, InvalidToken, ValidationError
from logging_config import get_logger
from membership import RoomMembershipTracker
from redis_keys import (
    CHANNEL_DIRECT_MESSAGE,
    CHANNEL_ROOM_MESSAGE,
    CHANNEL_USER_JOINED,
    CHANNEL_USER_LEFT,
    RELAY_CHANNELS,
    ROOM_CHANNELS,
)
from registry import Connection, ConnectionRegistry, ConnectionState
from relay import Relay
from schemas.frames import (
    DirectMessageFrame,
    DirectMessagePayload,
    InboundFrame,
    JoinRoomFrame,
    LeaveRoomFrame,
    MembershipPayload,
    MessageReceivedFrame,
    MessageReceivedPayload,
    RelayEnvelope,
    RoomUser,
    RoomUsersFrame,
    RoomUsersPayload,
    SendDirectMessageFrame,
    SendMessageFrame,
    UserJoinedFrame,
    UserLeftFrame,
    error_frame,
    parse_inbound,
)

logger = get_logger(__name__)

_HTML_ESCAPES = str.maketrans({
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#x27;",
    "/": "&#x2F;",
})


def sanitize_html(text: str) -> str:
    """Escape the HTML-significant characters ``& < > " ' /`` in a single pass."""
    return text.translate(_HTML_ESCAPES)


class MessageRouter:
    def __init__(
        self,
        store,
        relay: Relay,
        registry: ConnectionRegistry,
        tracker: RoomMembershipTracker,
        verifier: IdentityVerifier,
        max_message_length: int = MAX_MESSAGE_LENGTH,
    ):
        self.store = store
        self.relay = relay
        self.registry = registry
        self.tracker = tracker
        self.verifier = verifier
        self.max_message_length = max_message_length

        self._handlers = {
            JoinRoomFrame: self._join_room,
            LeaveRoomFrame: self._leave_room,
            SendMessageFrame: self._send_message,
            SendDirectMessageFrame: self._send_direct_message,
        }
        frame_types = set(get_args(get_args(InboundFrame)[0]))
        missing = frame_types - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for inbound frames: {sorted(t.__name__ for t in missing)}")

    async def start(self) -> None:
        await self.relay.subscribe(RELAY_CHANNELS, self.deliver)

    # Connection lifecycle

    async def authenticate(self, connection: Connection, token) -> bool:
        """Verify the credential and load the user; closes the socket on failure."""
        connection.state = ConnectionState.AUTHENTICATING
        try:
            identity = self.verifier.verify(token)
            user = await self.store.find_user(identity.user_id)
            if user is None:
                raise InvalidToken("Unknown user")
        except AuthError as e:
            logger.info(f"WebSocket connection rejected: {e.message}")
            await connection.close(code=e.close_code, reason=e.message)
            connection.state = ConnectionState.CLOSED
            return False
        except DependencyError:
            logger.error("WebSocket connection rejected: store unavailable during authentication")
            await connection.close(code=WS_CLOSE_INTERNAL_ERROR, reason="Internal server error")
            connection.state = ConnectionState.CLOSED
            return False
        connection.user = user
        return True

    async def connect(self, connection: Connection) -> None:
        result = await self.registry.register(connection.user_id, connection)
        if result.replaced is not None:
            await self._retire(result.replaced, connection)
        logger.info(f"User {connection.user_id} ({connection.username}) connected")

    async def _retire(self, replaced: Connection, successor: Connection) -> None:
        """Drop a superseded session's memberships and close its socket.

        Once CLOSED, the old socket's own ``disconnect`` does nothing, so it
        cannot announce USER_LEFT for rooms the new session is in.
        """
        replaced.state = ConnectionState.CLOSING
        for room_id in self.tracker.leave_all(replaced):
            if not self.tracker.is_member(successor, room_id):
                await self._publish_membership(CHANNEL_USER_LEFT, UserLeftFrame, replaced, room_id)
        await replaced.close(code=WS_CLOSE_SUPERSEDED, reason="Session replaced")
        replaced.state = ConnectionState.CLOSED

    async def disconnect(self, connection: Connection) -> None:
        if connection.state is ConnectionState.CLOSED:
            return
        connection.state = ConnectionState.CLOSING
        for room_id in self.tracker.leave_all(connection):
            await self._publish_membership(CHANNEL_USER_LEFT, UserLeftFrame, connection, room_id)
        await self.registry.unregister(connection.user_id, connection)
        connection.state = ConnectionState.CLOSED
        logger.info(f"User {connection.user_id} ({connection.username}) disconnected")

    async def serve(self, websocket: WebSocket) -> None:
        """Run one WebSocket from handshake to close.

        Frames from one connection are handled strictly one at a time: the
        next frame is not read until the previous handler has finished.
        """
        token = extract_token(websocket.headers.get("authorization"), websocket.query_params.get("token"))
        await websocket.accept()
        connection = Connection(websocket)
        if not await self.authenticate(connection, token):
            return

        await self.connect(connection)
        frame_count = 0
        try:
            while connection.state is ConnectionState.ACTIVE:
                data = await websocket.receive_text()
                frame_count += 1
                logger.debug(f"Received frame #{frame_count} from {connection.user_id}")
                await self.handle_frame(connection, data)
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected normally for {connection.user_id}")
        except Exception as e:
            if connection.state is ConnectionState.CLOSED:
                logger.debug(f"Receive loop for replaced session of {connection.user_id} ended: {e}")
            else:
                logger.error(f"WebSocket error for {connection.user_id}: {e}", exc_info=True)
        finally:
            # Close-time side effects must finish even if this task is cancelled
            await asyncio.shield(self.disconnect(connection))

    # Inbound frames

    async def handle_frame(self, connection: Connection, raw: str) -> None:
        """Handle one inbound frame; failures become ERROR frames, never a disconnect."""
        try:
            frame = parse_inbound(raw)
            if frame is None:
                return
            await self._handlers[type(frame)](connection, frame.payload)
        except DependencyError as e:
            logger.error(f"Dependency failure handling frame from {connection.user_id}: {e.message}")
            await connection.send(error_frame("Internal server error", e.code))
        except ChatError as e:
            logger.debug(f"Rejected frame from {connection.user_id}: {e.message}")
            await connection.send(error_frame(e.message, e.code))
        except Exception as e:
            logger.error(f"Error handling frame from {connection.user_id}: {e}", exc_info=True)
            await connection.send(error_frame("Internal server error"))

    def _clean_content(self, content: str) -> str:
        trimmed = content.strip()
        if not trimmed:
            raise ValidationError("Message cannot be empty")
        if len(trimmed) > self.max_message_length:
            raise ValidationError(f"Message too long (max {self.max_message_length} characters)")
        return sanitize_html(trimmed)

    async def _join_room(self, connection: Connection, payload) -> None:
        room_id = payload.room_id
        if not await self.store.room_exists(room_id):
            raise ValidationError("Room not found")

        member_count = self.tracker.join(connection, room_id)
        logger.info(f"User {connection.user_id} joined room {room_id} (local members: {member_count})")
        await self._publish_membership(CHANNEL_USER_JOINED, UserJoinedFrame, connection, room_id)

        users = [
            RoomUser(id=member.user_id, username=member.username)
            for member in self.tracker.members_of(room_id)
            if member is not connection
        ]
        await connection.send(RoomUsersFrame(payload=RoomUsersPayload(room_id=room_id, users=users)))

    async def _leave_room(self, connection: Connection, payload) -> None:
        self.tracker.leave(connection, payload.room_id)
        logger.info(f"User {connection.user_id} left room {payload.room_id}")
        await self._publish_membership(CHANNEL_USER_LEFT, UserLeftFrame, connection, payload.room_id)

    async def _send_message(self, connection: Connection, payload) -> None:
        content = self._clean_content(payload.content)
        if not self.tracker.is_member(connection, payload.room_id):
            raise AuthorizationError("Not in room")

        message = await self.store.persist_room_message(connection.user, payload.room_id, content, payload.image_url)
        frame = MessageReceivedFrame(payload=MessageReceivedPayload(message=message))
        await self.relay.publish(CHANNEL_ROOM_MESSAGE, RelayEnvelope(routing_key=payload.room_id, frame=frame))

    async def _send_direct_message(self, connection: Connection, payload) -> None:
        content = self._clean_content(payload.content)
        receiver_id = payload.receiver_id
        if await self.store.find_user(receiver_id) is None:
            raise ValidationError("User not found")
        if await self.store.is_blocked(receiver_id, connection.user_id):
            logger.info(f"Direct message from {connection.user_id} to {receiver_id} rejected: sender is blocked")
            raise AuthorizationError("You cannot message this user")

        message = await self.store.persist_direct_message(connection.user, receiver_id, content, payload.image_url)
        frame = DirectMessageFrame(payload=DirectMessagePayload(message=message))
        await self.relay.publish(CHANNEL_DIRECT_MESSAGE, RelayEnvelope(routing_key=receiver_id, frame=frame))
        if receiver_id != connection.user_id:
            await connection.send(frame)

    async def _publish_membership(self, channel: str, frame_cls, connection: Connection, room_id: str) -> None:
        frame = frame_cls(
            payload=MembershipPayload(
                user_id=connection.user_id,
                username=connection.username,
                room_id=room_id,
                member_count=self.tracker.member_count(room_id),
            )
        )
        await self.relay.publish(channel, RelayEnvelope(routing_key=room_id, frame=frame))

    # Relay delivery

    async def deliver(self, channel: str, envelope: RelayEnvelope) -> int:
        """Send a relayed frame to every local connection its routing key selects."""
        if channel in ROOM_CHANNELS:
            targets = self.tracker.members_of(envelope.routing_key)
        elif channel == CHANNEL_DIRECT_MESSAGE:
            receiver = self.registry.lookup(envelope.routing_key)
            targets = [receiver] if receiver is not None else []
        else:
            logger.warning(f"Ignoring envelope on unexpected channel {channel}")
            return 0

        if not targets:
            return 0
        text = envelope.frame.model_dump_json(by_alias=True)
        results = await asyncio.gather(*(target.send_text(text) for target in targets))
        logger.debug(f"Delivered {envelope.frame.type} for {envelope.routing_key} to {sum(results)}/{len(targets)} connections")
        return len(targets)
