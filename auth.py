from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import pydantic
from fastapi import Header, HTTPException, Request
from jose import ExpiredSignatureError, JWTError, jwt

from constants import JWT_ALGORITHM, JWT_SECRET, TOKEN_TTL_HOURS
from errors import AuthError, InvalidToken, Unauthenticated
from logging_config import get_logger
from schemas.auth import TokenClaims

logger = get_logger(__name__)


@dataclass(frozen=True)
class UserIdentity:
    user_id: str
    username: str


def extract_token(authorization: Optional[str] = None, query_token: Optional[str] = None) -> Optional[str]:
    """Pick the bearer credential from the Authorization header or the ``token`` query parameter."""
    if authorization:
        scheme, _, value = authorization.strip().partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    if query_token and query_token.strip():
        return query_token.strip()
    return None


class IdentityVerifier:
    def __init__(self, secret: str = JWT_SECRET, algorithm: str = JWT_ALGORITHM, ttl_hours: int = TOKEN_TTL_HOURS):
        self.secret = secret
        self.algorithm = algorithm
        self.ttl = timedelta(hours=ttl_hours)

    def issue(self, user_id: str, username: str) -> str:
        expires_at = datetime.now(timezone.utc) + self.ttl
        claims = {"userId": user_id, "username": username, "exp": int(expires_at.timestamp())}
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)

    def verify(self, token: Optional[str]) -> UserIdentity:
        if not token:
            raise Unauthenticated()
        try:
            raw_claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
            claims = TokenClaims.model_validate(raw_claims)
        except ExpiredSignatureError:
            logger.debug("Rejected expired token")
            raise InvalidToken("Token expired")
        except (JWTError, pydantic.ValidationError) as e:
            logger.debug(f"Rejected token: {e}")
            raise InvalidToken()
        return UserIdentity(user_id=claims.user_id, username=claims.username)


def current_identity(request: Request, authorization: Optional[str] = Header(None)) -> UserIdentity:
    """FastAPI dependency for HTTP routes that require a bearer token."""
    verifier: IdentityVerifier = request.app.state.verifier
    try:
        return verifier.verify(extract_token(authorization))
    except AuthError as e:
        raise HTTPException(status_code=401, detail=e.message)
