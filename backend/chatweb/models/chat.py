"""
Chat turn and usage database models.
"""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Boolean, JSON, Float, BigInteger, Index
from sqlalchemy.sql import func

from ..database import Base
from .enums import Status


class ChatInfo(Base):
    """
    One conversational turn: the user's prompt and the assistant's answer.

    The turn is addressed as two message nodes. The response node uses
    ``message_id`` (the upstream response id once the answer is stored) and
    the prompt node uses ``prompt_<message_id>``.
    """

    __tablename__ = "chats"

    __table_args__ = (
        Index("ix_chats_room_uuid", "room_id", "uuid"),
    )

    id = Column(Integer, primary_key=True, index=True)
    room_id = Column(BigInteger, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    uuid = Column(BigInteger, nullable=False)  # client-generated turn id
    model = Column(String(200), nullable=True)

    prompt = Column(Text, nullable=False, default="")
    images = Column(JSON, default=list)

    search_query = Column(Text, nullable=True)
    search_results = Column(JSON, nullable=True)
    search_usage_time = Column(Float, nullable=True)

    reasoning = Column(Text, nullable=True)
    response = Column(Text, nullable=True)
    status = Column(Integer, default=Status.NORMAL.value)

    parent_message_id = Column(String(200), nullable=True)
    message_id = Column(String(200), nullable=True, index=True)

    prompt_tokens = Column(Integer, nullable=True)
    completion_tokens = Column(Integer, nullable=True)
    total_tokens = Column(Integer, nullable=True)
    estimated = Column(Boolean, nullable=True)

    # earlier answers archived by regenerate
    previous_response = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())


class ChatUsage(Base):
    """Token usage ledger, one row per completed generation."""

    __tablename__ = "chat_usage"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    room_id = Column(BigInteger, nullable=False)
    chat_id = Column(Integer, ForeignKey("chats.id", ondelete="CASCADE"), nullable=False)
    message_id = Column(String(200), nullable=True)
    model = Column(String(200), nullable=True)
    prompt_tokens = Column(Integer, default=0)
    completion_tokens = Column(Integer, default=0)
    total_tokens = Column(Integer, default=0)
    estimated = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
