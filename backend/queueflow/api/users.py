from fastapi import APIRouter, Depends, HTTPException, status, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession
from fastapi.security import OAuth2PasswordRequestForm
import logging

from queueflow.db.database import get_db_session
from queueflow.schemas.user import UserCreate, UserRead, TokenResponse
from queueflow.repositories.user import UserRepository
from queueflow.core.security import (
    get_password_hash,
    create_access_token,
    verify_password,
    ACCESS_TOKEN_EXPIRE_MINUTES,
)
from queueflow.core.config import settings
from queueflow.api.dependencies.users import COOKIE_NAME, get_current_active_user
from queueflow.models.user import User
from queueflow.rate_limiter import limiter

logger = logging.getLogger(__name__)

router = APIRouter()

COOKIE_MAX_AGE = ACCESS_TOKEN_EXPIRE_MINUTES * 60


def set_auth_cookie(response: Response, token: str, max_age: int = None):
    """Set httpOnly cookie with the access token."""
    response.set_cookie(
        key=COOKIE_NAME,
        value=f"Bearer {token}",
        httponly=True,
        secure=settings.ENVIRONMENT == "production",
        samesite="lax",
        max_age=max_age or COOKIE_MAX_AGE,
        path="/",
    )


@router.post("/register", response_model=UserRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
async def register_user(
    request: Request,
    user_in: UserCreate,
    db: AsyncSession = Depends(get_db_session),
):
    user_repo = UserRepository(db)
    if await user_repo.get_by_username(user_in.username):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username already registered")

    if await user_repo.get_by_email(user_in.email):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email already registered")

    user = await user_repo.create_user(user_in, get_password_hash(user_in.password))
    logger.info(f"Registered manager {user.username}")
    return user


@router.post("/login", response_model=TokenResponse)
@limiter.limit("10/minute")
async def login_for_access_token(
    request: Request,
    response: Response,
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: AsyncSession = Depends(get_db_session),
):
    user = await UserRepository(db).get_by_username(form_data.username)
    if not user or not verify_password(form_data.password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Inactive user")

    access_token, _, expires_in = create_access_token(data={"sub": user.username})
    set_auth_cookie(response, access_token, max_age=expires_in)

    return TokenResponse(access_token=access_token, user=UserRead.model_validate(user))


@router.post("/logout")
async def logout(response: Response):
    response.delete_cookie(key=COOKIE_NAME, path="/")
    return {"message": "Successfully logged out"}


@router.get("/me", response_model=UserRead)
async def read_current_user(current_user: User = Depends(get_current_active_user)):
    return current_user
