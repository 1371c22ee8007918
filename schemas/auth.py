from typing import Literal, Optional

from pydantic import BaseModel, Field

from schemas.base import CamelModel
from schemas.records import UserRecord


class LoginRequest(BaseModel):
    username: str = Field(min_length=3, max_length=20, pattern=r"^[a-zA-Z0-9_-]+$")
    age: int = Field(ge=13, le=120)
    sex: Literal["F", "M"]
    country: str = Field(min_length=2, max_length=100)

class LoginResponse(BaseModel):
    token: str
    user: UserRecord

class VerifyResponse(BaseModel):
    user: UserRecord

class TokenClaims(CamelModel):
    user_id: str
    username: str
    exp: Optional[int] = None
