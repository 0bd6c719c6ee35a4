"""
Database models package.
"""

from .enums import Status, UserRole, ApiShape
from .user import User
from .room import ChatRoom
from .chat import ChatInfo, ChatUsage
from .key import KeyConfig, SiteConfig

__all__ = [
    "Status", "UserRole", "ApiShape",
    "User", "ChatRoom", "ChatInfo", "ChatUsage", "KeyConfig", "SiteConfig",
]
