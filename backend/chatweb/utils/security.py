"""
Password hashing, JWT tokens and the user dependencies built on them.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database import get_db
from ..models.enums import UserRole
from ..models.user import User
from ..schemas.user import TokenData

logger = logging.getLogger(__name__)

ACCESS = "access"
REFRESH = "refresh"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
bearer_scheme = HTTPBearer()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def _encode(claims: Dict[str, Any], lifetime: timedelta, token_type: str) -> str:
    payload = dict(claims)
    payload["exp"] = datetime.now(timezone.utc) + lifetime
    payload["type"] = token_type
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def create_access_token(claims: Dict[str, Any]) -> str:
    return _encode(claims, timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES), ACCESS)


def create_refresh_token(claims: Dict[str, Any]) -> str:
    return _encode(claims, timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS), REFRESH)


def decode_token(token: str, token_type: str = ACCESS) -> TokenData:
    """
    Validate a token and return its subject.

    Raises 401 when the signature, expiry, type or subject is wrong.
    """
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError as e:
        logger.debug("Rejected token: %s", e)
        raise _unauthorized("Could not validate credentials")

    if payload.get("type", ACCESS) != token_type:
        raise _unauthorized("Wrong token type")

    subject = payload.get("sub")
    try:
        user_id = int(subject)
    except (TypeError, ValueError):
        raise _unauthorized("Invalid token payload")

    return TokenData(user_id=user_id, username=payload.get("username"))


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db)
) -> User:
    """The active user named by the bearer token."""
    token_data = decode_token(credentials.credentials)
    user = await db.get(User, token_data.user_id)

    if user is None:
        raise _unauthorized("User not found")
    if not user.is_active:
        raise _unauthorized("User account is disabled")
    return user


async def get_admin_user(current_user: User = Depends(get_current_user)) -> User:
    if UserRole.ADMIN.value not in (current_user.roles or []):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="无权限 | No permission."
        )
    return current_user
