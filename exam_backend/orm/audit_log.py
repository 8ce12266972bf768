"""
exam_backend/orm/audit_log.py
Append-only record of administrative and security-relevant actions
"""
from sqlalchemy import Column, Integer, String, JSON, ForeignKey, Index

from exam_backend.orm.base import BaseModel, iso


class AuditLog(BaseModel):
    __tablename__ = "audit_logs"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    action_type = Column(String(100), nullable=False)
    details = Column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_audit_logs_created", "created_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action_type": self.action_type,
            "details": self.details,
            "created_at": iso(self.created_at),
        }
