from datetime import datetime
from typing import Optional

from schemas.base import FrozenCamelModel


class UserRecord(FrozenCamelModel):
    id: str
    username: str
    age: Optional[int] = None
    sex: Optional[str] = None
    country: Optional[str] = None
    created_at: datetime


class RoomRecord(FrozenCamelModel):
    id: str
    name: str
    created_at: datetime


class MessageRecord(FrozenCamelModel):
    id: str
    content: str
    user_id: str
    username: str
    room_id: str
    created_at: datetime
    image_url: Optional[str] = None


class UserSummary(FrozenCamelModel):
    id: str
    username: str
    age: Optional[int] = None
    sex: Optional[str] = None


class DirectMessageRecord(FrozenCamelModel):
    id: str
    content: str
    sender_id: str
    receiver_id: str
    sender: UserSummary
    receiver: UserSummary
    read: bool = False
    created_at: datetime
    image_url: Optional[str] = None
