"""
Chat room database model.
"""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Boolean, Index, BigInteger
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..database import Base
from .enums import Status


class ChatRoom(Base):
    """Conversation container with per-room settings."""

    __tablename__ = "chat_rooms"

    __table_args__ = (
        Index("ix_chat_rooms_user_room", "user_id", "room_id", unique=True),
    )

    id = Column(Integer, primary_key=True, index=True)
    # client-generated identifier, unique per user
    room_id = Column(BigInteger, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    title = Column(String(200), default="New Chat")
    prompt = Column(Text, nullable=True)  # room system message
    using_context = Column(Boolean, default=True)
    max_context_count = Column(Integer, default=10)
    chat_model = Column(String(200), nullable=True)
    search_enabled = Column(Boolean, default=False)
    think_enabled = Column(Boolean, default=False)
    tool_enabled = Column(Boolean, default=False)
    image_upload_enabled = Column(Boolean, default=False)

    status = Column(Integer, default=Status.NORMAL.value)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), server_default=func.now())

    user = relationship("User", back_populates="rooms")
