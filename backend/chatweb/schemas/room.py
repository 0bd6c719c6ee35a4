"""
Chat room Pydantic schemas.
"""

from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


class RoomCreate(BaseModel):
    """Schema for creating a room."""
    room_id: int
    title: Optional[str] = Field("New Chat", max_length=200)
    chat_model: Optional[str] = None


class RoomUpdate(BaseModel):
    """Partial room settings update."""
    title: Optional[str] = Field(None, max_length=200)
    prompt: Optional[str] = None
    using_context: Optional[bool] = None
    max_context_count: Optional[int] = Field(None, ge=0, le=100)
    chat_model: Optional[str] = None
    search_enabled: Optional[bool] = None
    think_enabled: Optional[bool] = None


class RoomResponse(BaseModel):
    room_id: int
    title: str
    prompt: Optional[str] = None
    using_context: bool
    max_context_count: int
    chat_model: Optional[str] = None
    search_enabled: bool
    think_enabled: bool
    tool_enabled: bool
    image_upload_enabled: bool
    created_at: datetime

    class Config:
        from_attributes = True
