"""
Shared enumerations for persisted records.
"""

from enum import Enum, IntEnum


class Status(IntEnum):
    """Record status. Chat rows are never physically deleted, only flagged."""
    NORMAL = 0
    DELETED = 1
    PROMPT_DELETED = 2
    RESPONSE_DELETED = 3
    DISABLED = 6


class UserRole(str, Enum):
    ADMIN = "admin"
    USER = "user"
    GUEST = "guest"
    SUPPORT = "support"
    VIEWER = "viewer"
    CONTRIBUTOR = "contributor"
    DEVELOPER = "developer"
    TESTER = "tester"
    PARTNER = "partner"


class ApiShape(str, Enum):
    """Upstream API family a key talks to."""
    CHAT_COMPLETIONS = "ChatGPTAPI"
    RESPONSES = "ResponsesAPI"
    VLLM = "VLLM"
    VOLCENGINE = "Volcengine"
