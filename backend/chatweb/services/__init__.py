"""
Services package.
"""

from .auth_service import AuthService
from .cancellation import CancellationRegistry
from .chat_service import ChatService
from .chat_store import ChatStore
from .config_service import ConfigService
from .file_service import FileService
from .key_lease import KeyLeaseManager

__all__ = [
    "AuthService",
    "CancellationRegistry",
    "ChatService",
    "ChatStore",
    "ConfigService",
    "FileService",
    "KeyLeaseManager",
]
