"""
exam_backend/orm/monitoring.py
Anti-cheat monitoring records
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON, ForeignKey

from exam_backend.orm.base import BaseModel, iso


class MonitoringSession(BaseModel):
    __tablename__ = "monitoring_sessions"

    exam_session_id = Column(Integer, ForeignKey("exam_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    active = Column(Boolean, nullable=False, default=True)
    ended_at = Column(DateTime, nullable=True)
    suspicious = Column(Boolean, nullable=True)
    analysis = Column(JSON, nullable=True, comment="Last analyzer output")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "exam_session_id": self.exam_session_id,
            "user_id": self.user_id,
            "active": self.active,
            "started_at": iso(self.created_at),
            "ended_at": iso(self.ended_at),
            "suspicious": self.suspicious,
            "analysis": self.analysis,
        }


class MonitoringScreenshot(BaseModel):
    """Activity snapshot; only metadata is stored."""
    __tablename__ = "monitoring_screenshots"

    monitoring_id = Column(Integer, ForeignKey("monitoring_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    captured_at = Column(DateTime, nullable=False)
    active_window = Column(String(255), nullable=True)
