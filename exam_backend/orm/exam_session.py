"""
exam_backend/orm/exam_session.py
One student's attempt at an exam

Lifecycle:
    not_started -> in_progress <-> paused -> submitted -> graded

not_started sessions exist only when an exam is scheduled for a group.
At most one session per (exam, student) may be live (in_progress or paused);
the partial unique index below enforces this in the database so that two
concurrent starts cannot both succeed.
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Index, Enum as SQLEnum, text

from exam_backend.orm.base import BaseModel, iso


class ExamSessionStatus(str, Enum):
    not_started = "not_started"
    in_progress = "in_progress"
    paused = "paused"
    submitted = "submitted"
    graded = "graded"


LIVE_STATUSES = (ExamSessionStatus.in_progress, ExamSessionStatus.paused)
FINISHED_STATUSES = (ExamSessionStatus.submitted, ExamSessionStatus.graded)

_LIVE_PREDICATE = "status IN ('in_progress', 'paused')"


class ExamSession(BaseModel):
    __tablename__ = "exam_sessions"

    exam_id = Column(Integer, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False, index=True)
    student_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Login account of the student taking the exam"
    )
    schedule_id = Column(
        Integer,
        ForeignKey("exam_schedules.id", ondelete="SET NULL"),
        nullable=True,
        comment="Group schedule that opened this session, if any"
    )
    status = Column(
        SQLEnum(ExamSessionStatus),
        nullable=False,
        default=ExamSessionStatus.not_started,
        index=True
    )

    started_at = Column(DateTime, nullable=True)
    last_resumed_at = Column(DateTime, nullable=True, comment="Start of the current running interval")
    paused_at = Column(DateTime, nullable=True)
    submitted_at = Column(DateTime, nullable=True)
    elapsed_seconds = Column(Float, nullable=False, default=0.0, comment="Accumulated running time")

    score = Column(Float, nullable=True)
    max_score = Column(Float, nullable=True)
    percentage = Column(Float, nullable=True)
    grade = Column(String(1), nullable=True)
    performance = Column(String(30), nullable=True)
    curved_score = Column(Float, nullable=True)

    __table_args__ = (
        Index(
            "uq_exam_sessions_live",
            "exam_id",
            "student_id",
            unique=True,
            sqlite_where=text(_LIVE_PREDICATE),
            postgresql_where=text(_LIVE_PREDICATE),
        ),
    )

    def __repr__(self):
        return f"<ExamSession(id={self.id}, exam_id={self.exam_id}, student_id={self.student_id}, status={self.status})>"

    def running_seconds(self, now: datetime = None) -> float:
        """Elapsed time including the interval currently running, if any."""
        total = self.elapsed_seconds or 0.0
        if self.status == ExamSessionStatus.in_progress and self.last_resumed_at:
            now = now or datetime.utcnow()
            total += max(0.0, (now - self.last_resumed_at).total_seconds())
        return total

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "exam_id": self.exam_id,
            "student_id": self.student_id,
            "schedule_id": self.schedule_id,
            "status": self.status.value,
            "started_at": iso(self.started_at),
            "paused_at": iso(self.paused_at),
            "submitted_at": iso(self.submitted_at),
            "elapsed_seconds": round(self.running_seconds(), 2),
            "score": self.score,
            "max_score": self.max_score,
            "percentage": self.percentage,
            "grade": self.grade,
            "performance": self.performance,
            "curved_score": self.curved_score,
        }
