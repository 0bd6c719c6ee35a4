"""
Backend credential and site configuration models.
"""

from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, JSON
from sqlalchemy.sql import func

from ..database import Base
from .enums import Status, ApiShape


class KeyConfig(Base):
    """Upstream API credential."""

    __tablename__ = "key_configs"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(500), nullable=False)
    key_model = Column(String(50), default=ApiShape.CHAT_COMPLETIONS.value)
    chat_models = Column(JSON, default=list)
    user_roles = Column(JSON, default=list)
    status = Column(Integer, default=Status.NORMAL.value)
    remark = Column(Text, nullable=True)
    base_url = Column(String(500), nullable=True)
    # model name -> display alias
    model_aliases = Column(JSON, default=dict)
    tool_calls = Column(Boolean, default=False)
    image_upload = Column(Boolean, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class SiteConfig(Base):
    """Administrative configuration stored as a single JSON document."""

    __tablename__ = "site_config"

    id = Column(Integer, primary_key=True)
    data = Column(JSON, default=dict)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), server_default=func.now())
