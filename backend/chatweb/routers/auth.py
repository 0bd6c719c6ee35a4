"""
Authentication routes.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models.user import User
from ..schemas.user import RefreshTokenRequest, Token, UserLogin, UserRegister, UserResponse
from ..services.auth_service import AuthService
from ..utils.security import get_current_user


router = APIRouter(prefix="/api/auth", tags=["Authentication"])


def get_auth_service(db: AsyncSession = Depends(get_db)) -> AuthService:
    return AuthService(db)


@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def register(user_data: UserRegister, auth_service: AuthService = Depends(get_auth_service)):
    """Create an account. The first account on a new site gets the admin role."""
    try:
        return await auth_service.register(user_data)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/login", response_model=Token)
async def login(login_data: UserLogin, auth_service: AuthService = Depends(get_auth_service)):
    user = await auth_service.authenticate(login_data)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED,
                            detail="Incorrect username or password")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Account is disabled")
    return auth_service.create_tokens(user)


@router.post("/refresh", response_model=Token)
async def refresh_token(request: RefreshTokenRequest,
                        auth_service: AuthService = Depends(get_auth_service)):
    """Trade a refresh token for a new token pair."""
    try:
        return await auth_service.refresh_tokens(request.refresh_token)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))


@router.get("/me", response_model=UserResponse)
async def me(current_user: User = Depends(get_current_user)):
    return current_user
