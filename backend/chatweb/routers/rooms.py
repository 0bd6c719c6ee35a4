"""
Chat room management routes.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from typing import List, Optional

from ..config import settings
from ..database import get_db
from ..models.enums import Status
from ..models.room import ChatRoom
from ..models.user import User
from ..schemas.room import RoomCreate, RoomUpdate, RoomResponse
from ..services.key_lease import is_eligible
from ..utils.security import get_current_user


router = APIRouter(prefix="/api/rooms", tags=["Rooms"])


async def _get_room(db: AsyncSession, user: User, room_id: int) -> ChatRoom:
    result = await db.execute(
        select(ChatRoom).filter(
            ChatRoom.user_id == user.id,
            ChatRoom.room_id == room_id,
            ChatRoom.status != Status.DELETED.value
        )
    )
    room = result.scalar_one_or_none()
    if not room:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Room not found"
        )
    return room


async def _apply_chat_model(request: Request, room: ChatRoom, user: User,
                           model: Optional[str]) -> None:
    """Set the room model and mirror the image and tool capabilities of a key serving it."""
    room.chat_model = model
    key = None
    if model:
        keys = await request.app.state.config_service.get_keys()
        key = next((k for k in keys if is_eligible(k, user.roles or [], model)), None)
    room.image_upload_enabled = bool(key and key.image_upload)
    room.tool_enabled = bool(key and key.tool_calls)


@router.get("", response_model=List[RoomResponse])
async def list_rooms(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """List the current user's rooms, newest first."""
    result = await db.execute(
        select(ChatRoom)
        .filter(
            ChatRoom.user_id == current_user.id,
            ChatRoom.status != Status.DELETED.value
        )
        .order_by(desc(ChatRoom.id))
    )
    return result.scalars().all()


@router.post("", response_model=RoomResponse, status_code=status.HTTP_201_CREATED)
async def create_room(
    room_data: RoomCreate,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Create a room under a client-generated id."""
    result = await db.execute(
        select(ChatRoom).filter(
            ChatRoom.user_id == current_user.id,
            ChatRoom.room_id == room_data.room_id
        )
    )
    if result.scalar_one_or_none():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Room already exists"
        )

    room = ChatRoom(
        user_id=current_user.id,
        room_id=room_data.room_id,
        title=room_data.title or "New Chat",
        using_context=True,
        max_context_count=settings.DEFAULT_MAX_CONTEXT_COUNT,
        search_enabled=False,
        think_enabled=False,
        status=Status.NORMAL.value,
    )
    await _apply_chat_model(request, room, current_user, room_data.chat_model)
    db.add(room)
    await db.commit()
    await db.refresh(room)
    return room


@router.put("/{room_id}", response_model=RoomResponse)
async def update_room(
    room_id: int,
    room_data: RoomUpdate,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Update room title, prompt or toggles."""
    room = await _get_room(db, current_user, room_id)

    changes = room_data.model_dump(exclude_unset=True)
    model = changes.pop("chat_model", None)
    for name, value in changes.items():
        if value is not None:
            setattr(room, name, value)
    if model is not None:
        await _apply_chat_model(request, room, current_user, model)

    await db.commit()
    await db.refresh(room)
    return room


@router.delete("/{room_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_room(
    room_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Soft-delete a room."""
    room = await _get_room(db, current_user, room_id)
    room.status = Status.DELETED.value
    await db.commit()
