"""
exam_backend/services/audit_service.py
Persisted audit trail for administrative actions
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession

from exam_backend.orm.audit_log import AuditLog

logger = logging.getLogger(__name__)


async def log_action(
    db: AsyncSession,
    user_id: Optional[int],
    action_type: str,
    details: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """Append one audit entry and commit it."""
    entry = AuditLog(user_id=user_id, action_type=action_type, details=details or {})
    db.add(entry)
    await db.commit()
    logger.info(f"AUDIT user={user_id} action={action_type} details={details or {}}")
    return entry


async def get_audit_logs(
    db: AsyncSession,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    query = select(AuditLog)
    if start_date is not None:
        query = query.where(AuditLog.created_at >= start_date)
    if end_date is not None:
        query = query.where(AuditLog.created_at <= end_date)
    query = query.order_by(desc(AuditLog.created_at), desc(AuditLog.id)).limit(limit).offset(offset)
    result = await db.execute(query)
    return [entry.to_dict() for entry in result.scalars().all()]
