from pydantic import BaseModel
from typing import Optional

from schemas.records import MessageRecord, RoomRecord


class CreateRoomRequest(BaseModel):
    name: Optional[str] = None

class RoomResponse(BaseModel):
    room: RoomRecord

class RoomListResponse(BaseModel):
    rooms: list[RoomRecord]

class RoomMessagesResponse(BaseModel):
    messages: list[MessageRecord]
