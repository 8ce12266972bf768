"""
exam_backend/routes/reports.py
Administrative reports under /api/reports
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from exam_backend.database import get_db
from exam_backend.errors import BadRequestError
from exam_backend.routes.common import CSV_MEDIA_TYPE, file_response, naive_utc
from exam_backend.security.auth import TokenUser
from exam_backend.security.permissions import Permission
from exam_backend.security.rbac import authorize
from exam_backend.services import report_service
from exam_backend.services.audit_service import get_audit_logs

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reports", tags=["Reports"])


def _date_range(start_date: Optional[datetime], end_date: Optional[datetime]):
    start_date, end_date = naive_utc(start_date), naive_utc(end_date)
    if start_date and end_date and end_date < start_date:
        raise BadRequestError("end_date must not be before start_date")
    return start_date, end_date


@router.get("/admin")
async def admin_report(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: TokenUser = Depends(authorize(Permission.GENERATE_REPORTS)),
):
    """Admin accounts with their successful logins in the range (default: last 30 days)."""
    start_date, end_date = _date_range(start_date, end_date)
    end_date = end_date or datetime.utcnow()
    start_date = start_date or end_date - timedelta(days=30)

    content = await report_service.admin_report(db, start_date, end_date)
    logger.info(f"Admin report generated by user {current_user.user_id}")
    return file_response(content, CSV_MEDIA_TYPE, "admin_report.csv")


@router.get("/audit-logs")
async def audit_logs(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    _: TokenUser = Depends(authorize(Permission.VIEW_AUDIT_LOGS)),
):
    start_date, end_date = _date_range(start_date, end_date)
    return await get_audit_logs(db, start_date, end_date, limit, offset)
