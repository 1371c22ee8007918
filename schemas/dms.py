from pydantic import BaseModel

from schemas.base import CamelModel
from schemas.records import DirectMessageRecord, UserSummary


class DirectMessagesResponse(BaseModel):
    messages: list[DirectMessageRecord]

class BlockedUsersResponse(CamelModel):
    blocked_users: list[UserSummary]

class SuccessResponse(BaseModel):
    success: bool = True
