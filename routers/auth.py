from fastapi import APIRouter, Depends, HTTPException, Request

from auth import UserIdentity, current_identity
from errors import StoreUnavailable
from logging_config import get_logger
from schemas.auth import LoginRequest, LoginResponse, VerifyResponse

logger = get_logger(__name__)

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])


@auth_router.post("/login", response_model=LoginResponse)
async def login(body: LoginRequest, request: Request):
    """Anonymous registration: claims a username and returns a bearer token."""
    logger.info(f"Login request for username {body.username} from {request.client.host if request.client else 'unknown'}")
    store = request.app.state.store
    try:
        user = await store.create_user(body.username, body.age, body.sex, body.country)
    except StoreUnavailable:
        raise HTTPException(status_code=500, detail="Internal server error")
    if user is None:
        logger.warning(f"Login failed: username {body.username} already exists")
        raise HTTPException(status_code=409, detail="Username already exists")

    token = request.app.state.verifier.issue(user.id, user.username)
    return LoginResponse(token=token, user=user)


@auth_router.get("/verify", response_model=VerifyResponse)
async def verify(request: Request, identity: UserIdentity = Depends(current_identity)):
    try:
        user = await request.app.state.store.find_user(identity.user_id)
    except StoreUnavailable:
        raise HTTPException(status_code=500, detail="Internal server error")
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return VerifyResponse(user=user)
