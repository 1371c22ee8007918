"""WebSocket wire protocol.

Every frame is a JSON object ``{"type": ..., "payload": {...}}``. Inbound and
outbound frames are closed tagged unions keyed on ``type``.
"""
import json
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

import pydantic
from pydantic import Field, TypeAdapter

from errors import ValidationError
from schemas.base import CamelModel, FrozenCamelModel
from schemas.records import DirectMessageRecord, MessageRecord


class FrameType(str, Enum):
    # client -> server
    JOIN_ROOM = "JOIN_ROOM"
    LEAVE_ROOM = "LEAVE_ROOM"
    SEND_MESSAGE = "SEND_MESSAGE"
    SEND_DM = "SEND_DM"
    # reserved for WebRTC signaling, accepted and ignored for now
    WEBRTC_OFFER = "WEBRTC_OFFER"
    WEBRTC_ANSWER = "WEBRTC_ANSWER"
    WEBRTC_ICE_CANDIDATE = "WEBRTC_ICE_CANDIDATE"
    # server -> client
    MESSAGE_RECEIVED = "MESSAGE_RECEIVED"
    ONLINE_USERS = "ONLINE_USERS"
    USER_JOINED = "USER_JOINED"
    USER_LEFT = "USER_LEFT"
    ROOM_USERS = "ROOM_USERS"
    DM_RECEIVED = "DM_RECEIVED"
    ERROR = "ERROR"


INBOUND_TYPES = frozenset(t.value for t in (FrameType.JOIN_ROOM, FrameType.LEAVE_ROOM, FrameType.SEND_MESSAGE, FrameType.SEND_DM))
RESERVED_TYPES = frozenset(t.value for t in (FrameType.WEBRTC_OFFER, FrameType.WEBRTC_ANSWER, FrameType.WEBRTC_ICE_CANDIDATE))


# Inbound payloads

class RoomPayload(CamelModel):
    room_id: str = Field(min_length=1)


class SendMessagePayload(CamelModel):
    room_id: str = Field(min_length=1)
    content: str
    image_url: Optional[str] = None


class SendDirectMessagePayload(CamelModel):
    receiver_id: str = Field(min_length=1)
    content: str
    image_url: Optional[str] = None


class JoinRoomFrame(CamelModel):
    type: Literal["JOIN_ROOM"]
    payload: RoomPayload


class LeaveRoomFrame(CamelModel):
    type: Literal["LEAVE_ROOM"]
    payload: RoomPayload


class SendMessageFrame(CamelModel):
    type: Literal["SEND_MESSAGE"]
    payload: SendMessagePayload


class SendDirectMessageFrame(CamelModel):
    type: Literal["SEND_DM"]
    payload: SendDirectMessagePayload


InboundFrame = Annotated[
    Union[JoinRoomFrame, LeaveRoomFrame, SendMessageFrame, SendDirectMessageFrame],
    Field(discriminator="type"),
]
_inbound_adapter = TypeAdapter(InboundFrame)


def _describe(exc: pydantic.ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"Invalid payload: {location}: {first.get('msg')}" if location else f"Invalid payload: {first.get('msg')}"


def parse_inbound(raw: str):
    """Parse one inbound frame.

    Returns ``None`` for reserved frame kinds, raises ``ValidationError`` for
    anything that is not a well-formed known frame.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        raise ValidationError("Invalid JSON")
    if not isinstance(data, dict):
        raise ValidationError("Frame must be a JSON object")

    kind = data.get("type")
    if not isinstance(kind, str):
        raise ValidationError("Unknown message type")
    if kind in RESERVED_TYPES:
        return None
    if kind not in INBOUND_TYPES:
        raise ValidationError("Unknown message type")
    if not isinstance(data.get("payload"), dict):
        raise ValidationError("Frame payload must be an object")

    try:
        return _inbound_adapter.validate_python(data)
    except pydantic.ValidationError as exc:
        raise ValidationError(_describe(exc))


# Outbound payloads

class MessageReceivedPayload(FrozenCamelModel):
    message: MessageRecord


class DirectMessagePayload(FrozenCamelModel):
    message: DirectMessageRecord


class OnlineUser(FrozenCamelModel):
    id: str
    username: str
    age: Optional[int] = None
    sex: Optional[str] = None
    country: Optional[str] = None


class OnlineUsersPayload(FrozenCamelModel):
    users: List[OnlineUser]


class MembershipPayload(FrozenCamelModel):
    user_id: str
    username: str
    room_id: str
    member_count: int = 0


class RoomUser(FrozenCamelModel):
    id: str
    username: str


class RoomUsersPayload(FrozenCamelModel):
    room_id: str
    users: List[RoomUser]


class ErrorPayload(FrozenCamelModel):
    message: str
    code: str = "INTERNAL_ERROR"


class MessageReceivedFrame(FrozenCamelModel):
    type: Literal["MESSAGE_RECEIVED"] = "MESSAGE_RECEIVED"
    payload: MessageReceivedPayload


class DirectMessageFrame(FrozenCamelModel):
    type: Literal["DM_RECEIVED"] = "DM_RECEIVED"
    payload: DirectMessagePayload


class OnlineUsersFrame(FrozenCamelModel):
    type: Literal["ONLINE_USERS"] = "ONLINE_USERS"
    payload: OnlineUsersPayload


class UserJoinedFrame(FrozenCamelModel):
    type: Literal["USER_JOINED"] = "USER_JOINED"
    payload: MembershipPayload


class UserLeftFrame(FrozenCamelModel):
    type: Literal["USER_LEFT"] = "USER_LEFT"
    payload: MembershipPayload


class RoomUsersFrame(FrozenCamelModel):
    type: Literal["ROOM_USERS"] = "ROOM_USERS"
    payload: RoomUsersPayload


class ErrorFrame(FrozenCamelModel):
    type: Literal["ERROR"] = "ERROR"
    payload: ErrorPayload


OutboundFrame = Annotated[
    Union[
        MessageReceivedFrame,
        DirectMessageFrame,
        OnlineUsersFrame,
        UserJoinedFrame,
        UserLeftFrame,
        RoomUsersFrame,
        ErrorFrame,
    ],
    Field(discriminator="type"),
]


class RelayEnvelope(FrozenCamelModel):
    """What travels over the pub/sub relay: a frame plus where it should go."""

    routing_key: str
    frame: OutboundFrame


def error_frame(message: str, code: str = "INTERNAL_ERROR") -> ErrorFrame:
    return ErrorFrame(payload=ErrorPayload(message=message, code=code))
