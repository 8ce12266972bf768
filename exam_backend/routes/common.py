"""
exam_backend/routes/common.py
Shared route helpers: app.state service dependencies, ownership checks,
datetime normalization for request bodies and file responses.
"""
from datetime import datetime, timezone
from typing import Optional

from fastapi import Request
from fastapi.responses import Response

from exam_backend.errors import ForbiddenError
from exam_backend.realtime.notification_hub import NotificationHub
from exam_backend.security.auth import TokenUser
from exam_backend.services.anti_cheat_service import AntiCheatService
from exam_backend.services.cache_service import CacheService
from exam_backend.services.ml_service import MLService

PDF_MEDIA_TYPE = "application/pdf"
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
CSV_MEDIA_TYPE = "text/csv"


def get_cache(request: Request) -> CacheService:
    return request.app.state.cache


def get_hub(request: Request) -> NotificationHub:
    return request.app.state.notification_hub


def get_anti_cheat(request: Request) -> AntiCheatService:
    return request.app.state.anti_cheat


def get_ml(request: Request) -> MLService:
    return request.app.state.ml


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored timestamps are naive UTC; convert aware input to match."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def ensure_self_or_staff(current_user: TokenUser, user_id: int) -> None:
    """Students may only read their own data; staff may read anyone's."""
    if current_user.is_student and current_user.user_id != user_id:
        raise ForbiddenError("Students can only access their own data")


def file_response(content, media_type: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
