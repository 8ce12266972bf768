"""
exam_backend/security/auth.py
JWT issuing and the bearer-token authentication dependency

Access and refresh tokens are signed with separate secrets. Claims:
    {userId, role, email, type, jti, exp}
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from exam_backend import config
from exam_backend.database import get_db
from exam_backend.errors import UnauthorizedError, ForbiddenError, ErrorCode
from exam_backend.orm.user import User, UserRole
from exam_backend.security.login_guard import LoginAttemptTracker, TokenBlocklist
from exam_backend.security.permissions import is_known_role

logger = logging.getLogger(__name__)

ALGORITHM = config.JWT_ALGORITHM

bearer_scheme = HTTPBearer(auto_error=False)


class TokenUser(BaseModel):
    """Identity attached to an authenticated request."""
    user_id: int
    role: str
    email: str
    jti: Optional[str] = None
    exp: Optional[int] = None

    @property
    def is_student(self) -> bool:
        return self.role == UserRole.student.value


# ================= TOKEN UTILS =================

def _build_claims(user: User, token_type: str, expires_delta: timedelta) -> dict:
    role = user.role.value if isinstance(user.role, UserRole) else str(user.role)
    return {
        "userId": user.id,
        "role": role,
        "email": user.email,
        "type": token_type,
        "jti": uuid.uuid4().hex,
        "exp": datetime.utcnow() + expires_delta,
    }


def create_access_token(user: User, expires_delta: Optional[timedelta] = None) -> str:
    claims = _build_claims(
        user, "access", expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    return jwt.encode(claims, config.JWT_SECRET_KEY, algorithm=ALGORITHM)


def create_refresh_token(user: User, expires_delta: Optional[timedelta] = None) -> str:
    claims = _build_claims(
        user, "refresh", expires_delta or timedelta(days=config.REFRESH_TOKEN_EXPIRE_DAYS)
    )
    return jwt.encode(claims, config.JWT_REFRESH_SECRET_KEY, algorithm=ALGORITHM)


def _decode(token: str, secret: str, expected_type: str) -> dict:
    payload = jwt.decode(token, secret, algorithms=[ALGORITHM])
    if payload.get("type") != expected_type:
        raise JWTError(f"Expected {expected_type} token")
    if payload.get("userId") is None or not payload.get("role"):
        raise JWTError("Token is missing identity claims")
    return payload


def decode_access_token(token: str) -> dict:
    """Verify signature, expiry and type of an access token. Raises JWTError."""
    return _decode(token, config.JWT_SECRET_KEY, "access")


def decode_refresh_token(token: str) -> dict:
    return _decode(token, config.JWT_REFRESH_SECRET_KEY, "refresh")


def unverified_email(token: str) -> Optional[str]:
    """Best-effort email claim from a token that failed verification."""
    try:
        return jwt.get_unverified_claims(token).get("email")
    except JWTError:
        return None


def token_user_from_claims(payload: dict) -> TokenUser:
    return TokenUser(
        user_id=int(payload["userId"]),
        role=payload["role"],
        email=payload.get("email", ""),
        jti=payload.get("jti"),
        exp=payload.get("exp"),
    )


# ================= SHARED STATE =================

def get_login_guard(request: Request) -> LoginAttemptTracker:
    return request.app.state.login_guard


def get_token_blocklist(request: Request) -> TokenBlocklist:
    return request.app.state.token_blocklist


# ================= DEPENDENCIES =================

async def check_student_account(db: AsyncSession, current_user: TokenUser) -> None:
    """Students must have an active account that is not waiting on a password change."""
    if not current_user.is_student:
        return
    result = await db.execute(
        select(User.must_change_password, User.is_active).where(User.id == current_user.user_id)
    )
    row = result.first()
    if row is None or not row.is_active:
        raise UnauthorizedError("Invalid token", ErrorCode.AUTH_INVALID)
    if row.must_change_password:
        raise ForbiddenError("Password change required", ErrorCode.PASSWORD_CHANGE_REQUIRED)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
    login_guard: LoginAttemptTracker = Depends(get_login_guard),
    blocklist: TokenBlocklist = Depends(get_token_blocklist),
) -> TokenUser:
    """
    Authenticate the request from its bearer token.

    - no token: 401 Authentication required
    - bad signature / expired / wrong type: 401 Invalid token
    - revoked by logout: 401 Token blocked
    - role outside the permission table: 403 Role not authorized
    - student still on a default password: 403 PASSWORD_CHANGE_REQUIRED

    401 failures count against the email carried by the token.
    """
    if credentials is None or not credentials.credentials:
        raise UnauthorizedError("Authentication required", ErrorCode.AUTH_REQUIRED)

    token = credentials.credentials
    try:
        payload = decode_access_token(token)
    except JWTError as e:
        email = unverified_email(token)
        if email:
            login_guard.record_failure(email)
        logger.info(f"Token verification failed: {str(e)}")
        raise UnauthorizedError("Invalid token", ErrorCode.AUTH_INVALID)

    current_user = token_user_from_claims(payload)

    if blocklist.is_blocked(current_user.jti):
        if current_user.email:
            login_guard.record_failure(current_user.email)
        raise UnauthorizedError("Token blocked", ErrorCode.TOKEN_BLOCKED)

    if not is_known_role(current_user.role):
        raise ForbiddenError("Role not authorized", ErrorCode.ROLE_NOT_AUTHORIZED)

    await check_student_account(db, current_user)
    return current_user
