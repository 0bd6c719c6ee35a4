"""
API Routers package.
"""

from .admin import router as admin_router
from .auth import router as auth_router
from .chat import router as chat_router
from .files import router as files_router
from .rooms import router as rooms_router

__all__ = [
    "admin_router",
    "auth_router",
    "chat_router",
    "files_router",
    "rooms_router"
]
