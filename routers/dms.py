from fastapi import APIRouter, Depends, HTTPException, Request

from auth import UserIdentity, current_identity
from errors import StoreUnavailable
from logging_config import get_logger
from schemas.dms import BlockedUsersResponse, DirectMessagesResponse, SuccessResponse

logger = get_logger(__name__)

dms_router = APIRouter(prefix="/api", tags=["direct messages"])


@dms_router.get("/dms", response_model=DirectMessagesResponse)
async def get_direct_messages(request: Request, identity: UserIdentity = Depends(current_identity)):
    try:
        messages = await request.app.state.store.get_direct_messages(identity.user_id, limit=100)
    except StoreUnavailable:
        raise HTTPException(status_code=500, detail="Internal server error")
    return DirectMessagesResponse(messages=messages)


@dms_router.get("/dms/{user_id}", response_model=DirectMessagesResponse)
async def get_conversation(user_id: str, request: Request, identity: UserIdentity = Depends(current_identity)):
    """Conversation with one user, oldest first. Incoming messages are marked read."""
    try:
        messages = await request.app.state.store.get_conversation(identity.user_id, user_id, limit=50)
    except StoreUnavailable:
        raise HTTPException(status_code=500, detail="Internal server error")
    return DirectMessagesResponse(messages=messages)


@dms_router.post("/users/{user_id}/block", response_model=SuccessResponse)
async def block_user(user_id: str, request: Request, identity: UserIdentity = Depends(current_identity)):
    if user_id == identity.user_id:
        raise HTTPException(status_code=400, detail="Cannot block yourself")
    try:
        await request.app.state.store.block_user(identity.user_id, user_id)
    except StoreUnavailable:
        raise HTTPException(status_code=500, detail="Internal server error")
    return SuccessResponse()


@dms_router.delete("/users/{user_id}/block", response_model=SuccessResponse)
async def unblock_user(user_id: str, request: Request, identity: UserIdentity = Depends(current_identity)):
    try:
        await request.app.state.store.unblock_user(identity.user_id, user_id)
    except StoreUnavailable:
        raise HTTPException(status_code=500, detail="Internal server error")
    return SuccessResponse()


@dms_router.get("/blocked-users", response_model=BlockedUsersResponse)
async def get_blocked_users(request: Request, identity: UserIdentity = Depends(current_identity)):
    try:
        blocked = await request.app.state.store.get_blocked_users(identity.user_id)
    except StoreUnavailable:
        raise HTTPException(status_code=500, detail="Internal server error")
    return BlockedUsersResponse(blocked_users=blocked)
