import re
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from auth import UserIdentity, current_identity
from errors import StoreUnavailable
from logging_config import get_logger
from schemas.rooms import CreateRoomRequest, RoomListResponse, RoomMessagesResponse, RoomResponse

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/api/rooms", tags=["rooms"])

ROOM_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9\s\-_]+$")
SQL_KEYWORD_PATTERN = re.compile(r"(union|select|insert|update|delete|drop|create|alter|exec|script)", re.IGNORECASE)
ROOM_ID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


def validate_room_name(name: Optional[str]) -> str:
    if not name or not isinstance(name, str):
        raise HTTPException(status_code=400, detail="Room name is required and must be a string")
    trimmed = name.strip()
    if len(trimmed) < 1 or len(trimmed) > 50:
        raise HTTPException(status_code=400, detail="Room name must be 1-50 characters long")
    if not ROOM_NAME_PATTERN.match(trimmed):
        raise HTTPException(
            status_code=400,
            detail="Room name can only contain letters, numbers, spaces, hyphens, and underscores",
        )
    if SQL_KEYWORD_PATTERN.search(trimmed):
        raise HTTPException(status_code=400, detail="Invalid room name")
    return trimmed


@rooms_router.get("", response_model=RoomListResponse)
async def list_rooms(request: Request, identity: UserIdentity = Depends(current_identity)):
    try:
        rooms = await request.app.state.store.list_rooms()
    except StoreUnavailable:
        raise HTTPException(status_code=500, detail="Failed to fetch rooms")
    return RoomListResponse(rooms=rooms)


@rooms_router.post("", response_model=RoomResponse)
async def get_or_create_room(room: CreateRoomRequest, request: Request, identity: UserIdentity = Depends(current_identity)):
    name = validate_room_name(room.name)
    try:
        record, created = await request.app.state.store.get_or_create_room(name)
    except StoreUnavailable:
        raise HTTPException(status_code=500, detail="Failed to create room")
    if created:
        logger.info(f"New room created: {name} ({record.id}) by {identity.username}")
    return RoomResponse(room=record)


@rooms_router.get("/{room_id}/messages", response_model=RoomMessagesResponse)
async def get_room_messages(
    room_id: str,
    request: Request,
    limit: str = Query("50", description="Number of messages, 1-100"),
    before: Optional[str] = Query(None, description="Only messages older than this ISO timestamp"),
    identity: UserIdentity = Depends(current_identity),
):
    """Message history for a room, oldest first."""
    if not ROOM_ID_PATTERN.match(room_id):
        raise HTTPException(status_code=400, detail="Invalid room ID format")

    try:
        limit_num = int(limit)
    except ValueError:
        limit_num = 0
    if limit_num < 1 or limit_num > 100:
        raise HTTPException(status_code=400, detail="Invalid limit (must be 1-100)")

    before_dt = None
    if before:
        try:
            before_dt = datetime.fromisoformat(before.replace("Z", "+00:00"))
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid date format for before parameter")

    try:
        messages = await request.app.state.store.get_room_messages(room_id, limit=limit_num, before=before_dt)
    except StoreUnavailable:
        raise HTTPException(status_code=500, detail="Failed to fetch messages")
    return RoomMessagesResponse(messages=messages)
