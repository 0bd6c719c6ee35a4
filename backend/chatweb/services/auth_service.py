"""
Account registration, login and token refresh.
"""

import logging
from typing import List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.enums import UserRole
from ..models.user import User
from ..schemas.user import Token, UserLogin, UserRegister
from ..utils.security import (
    REFRESH,
    create_access_token,
    create_refresh_token,
    decode_token,
    get_password_hash,
    verify_password,
)

logger = logging.getLogger(__name__)


class AuthService:
    """Service for authentication and user management."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _initial_roles(self) -> List[str]:
        # the first account administers the site
        user_count = (await self.db.execute(select(func.count(User.id)))).scalar_one()
        if user_count == 0:
            return [UserRole.ADMIN.value, UserRole.USER.value]
        return [UserRole.USER.value]

    async def register(self, user_data: UserRegister) -> User:
        email = user_data.email.lower()
        result = await self.db.execute(
            select(User).filter(or_(User.username == user_data.username, User.email == email))
        )
        existing = result.scalars().first()
        if existing is not None:
            if existing.username == user_data.username:
                raise ValueError("Username already registered")
            raise ValueError("Email already registered")

        user = User(
            username=user_data.username,
            email=email,
            hashed_password=get_password_hash(user_data.password),
            roles=await self._initial_roles(),
        )
        self.db.add(user)
        await self.db.commit()
        await self.db.refresh(user)
        logger.info("Registered user %s with roles %s", user.username, user.roles)
        return user

    async def authenticate(self, login_data: UserLogin) -> Optional[User]:
        """The user matching the credentials, or None."""
        result = await self.db.execute(select(User).filter(User.username == login_data.username))
        user = result.scalar_one_or_none()
        if user is None or not verify_password(login_data.password, user.hashed_password):
            return None
        return user

    def create_tokens(self, user: User) -> Token:
        claims = {"sub": str(user.id), "username": user.username}
        return Token(
            access_token=create_access_token(claims),
            refresh_token=create_refresh_token(claims)
        )

    async def refresh_tokens(self, refresh_token: str) -> Token:
        token_data = decode_token(refresh_token, token_type=REFRESH)
        user = await self.db.get(User, token_data.user_id)
        if user is None or not user.is_active:
            raise ValueError("Invalid refresh token")
        return self.create_tokens(user)
