"""
exam_backend/routes/auth.py
Authentication routes: login, token refresh, logout, password change
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request
from jose import JWTError
from pydantic import BaseModel, EmailStr, Field
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from exam_backend import config
from exam_backend.database import get_db
from exam_backend.errors import ErrorCode, UnauthorizedError, BadRequestError
from exam_backend.orm.user import LoginLog, User
from exam_backend.security.auth import (
    TokenUser,
    create_access_token,
    create_refresh_token,
    decode_refresh_token,
    get_current_user,
    get_login_guard,
    get_token_blocklist,
)
from exam_backend.security.login_guard import LoginAttemptTracker, TokenBlocklist
from exam_backend.security.passwords import hash_password_async, verify_password_async

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])
limiter = Limiter(key_func=get_remote_address, enabled=config.RATE_LIMIT_ENABLED)

INVALID_CREDENTIALS = "Invalid credentials"


# ================= SCHEMAS =================

class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class RefreshRequest(BaseModel):
    refresh_token: str


class ChangePasswordRequest(BaseModel):
    email: EmailStr
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8, max_length=128)


# ================= HELPERS =================

async def _find_user(db: AsyncSession, email: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.email == email))
    return result.scalar_one_or_none()


async def _check_credentials(
    db: AsyncSession,
    login_guard: LoginAttemptTracker,
    email: str,
    password: str,
    ip_address: Optional[str] = None,
) -> User:
    """Lockout check, then password check. Failures count against the email."""
    login_guard.check(email)

    user = await _find_user(db, email)
    if user is None or not user.is_active or not await verify_password_async(password, user.password_hash):
        attempts = login_guard.record_failure(email)
        if user is not None:
            db.add(LoginLog(user_id=user.id, success=False, ip_address=ip_address))
            await db.commit()
        logger.warning(f"Failed login for {email} (attempt {attempts})")
        raise UnauthorizedError(INVALID_CREDENTIALS, ErrorCode.INVALID_CREDENTIALS)
    return user


def _user_summary(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "role": user.role.value,
        "name": user.name,
        "mustChangePassword": user.must_change_password,
    }


# ================= ROUTES =================

@router.post("/login")
@limiter.limit(config.LOGIN_RATE_LIMIT)
async def login(
    request: Request,  # Required by slowapi
    credentials: LoginRequest,
    db: AsyncSession = Depends(get_db),
    login_guard: LoginAttemptTracker = Depends(get_login_guard),
):
    email = credentials.email.strip().lower()
    ip_address = request.client.host if request.client else None
    user = await _check_credentials(db, login_guard, email, credentials.password, ip_address)

    login_guard.reset(email)
    user.last_login_at = datetime.utcnow()
    db.add(LoginLog(user_id=user.id, success=True, ip_address=ip_address))
    await db.commit()

    logger.info(f"User logged in: {email} ({user.role.value})")
    return {
        "accessToken": create_access_token(user),
        "refreshToken": create_refresh_token(user),
        "user": _user_summary(user),
    }


@router.post("/refresh-token")
async def refresh_token(body: RefreshRequest, db: AsyncSession = Depends(get_db)):
    try:
        payload = decode_refresh_token(body.refresh_token)
    except JWTError as e:
        logger.info(f"Refresh token rejected: {str(e)}")
        raise UnauthorizedError("Invalid refresh token", ErrorCode.AUTH_INVALID)

    user = await db.get(User, int(payload["userId"]))
    if user is None or not user.is_active:
        raise UnauthorizedError("Invalid refresh token", ErrorCode.AUTH_INVALID)
    return {"accessToken": create_access_token(user)}


@router.post("/logout")
async def logout(
    current_user: TokenUser = Depends(get_current_user),
    blocklist: TokenBlocklist = Depends(get_token_blocklist),
):
    if current_user.jti:
        blocklist.block(current_user.jti, float(current_user.exp) if current_user.exp else None)
    logger.info(f"User {current_user.user_id} logged out")
    return {"success": True, "message": "Logged out"}


@router.post("/change-password")
async def change_password(
    request: Request,
    body: ChangePasswordRequest,
    db: AsyncSession = Depends(get_db),
    login_guard: LoginAttemptTracker = Depends(get_login_guard),
):
    """
    Change a password with the current one as proof.

    Works without a bearer token so that students created with the default
    password can leave the must-change-password state.
    """
    if body.new_password == body.current_password:
        raise BadRequestError("New password must differ from the current one")

    email = body.email.strip().lower()
    ip_address = request.client.host if request.client else None
    user = await _check_credentials(db, login_guard, email, body.current_password, ip_address)

    user.password_hash = await hash_password_async(body.new_password)
    user.must_change_password = False
    await db.commit()
    login_guard.reset(email)

    logger.info(f"Password changed for user {user.id}")
    return {"success": True, "message": "Password updated"}


@router.get("/me")
async def me(
    current_user: TokenUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    user = await db.get(User, current_user.user_id)
    if user is None:
        raise UnauthorizedError("Invalid token", ErrorCode.AUTH_INVALID)
    return user.to_dict()
