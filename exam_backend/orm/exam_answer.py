"""
exam_backend/orm/exam_answer.py
Submitted answers, manual reviews and grade appeals
"""
from enum import Enum
from sqlalchemy import Column, Integer, Text, Float, Boolean, ForeignKey, UniqueConstraint, Enum as SQLEnum

from exam_backend.orm.base import BaseModel, iso


class ExamAnswer(BaseModel):
    """
    One answer per (session, question).

    is_correct stays NULL for essays until a reviewer awards points.
    """
    __tablename__ = "exam_answers"

    session_id = Column(Integer, ForeignKey("exam_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    question_id = Column(Integer, ForeignKey("questions.id", ondelete="CASCADE"), nullable=False, index=True)
    answer = Column(Text, nullable=True)
    is_correct = Column(Boolean, nullable=True)
    points_awarded = Column(Float, nullable=False, default=0.0)
    reviewed = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("session_id", "question_id", name="uq_exam_answer_question"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "question_id": self.question_id,
            "answer": self.answer,
            "is_correct": self.is_correct,
            "points_awarded": self.points_awarded,
            "reviewed": self.reviewed,
        }


class AnswerReview(BaseModel):
    """Audit trail of manual point overrides."""
    __tablename__ = "answer_reviews"

    answer_id = Column(Integer, ForeignKey("exam_answers.id", ondelete="CASCADE"), nullable=False, index=True)
    reviewer_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    points = Column(Float, nullable=False)
    comments = Column(Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "answer_id": self.answer_id,
            "reviewer_id": self.reviewer_id,
            "points": self.points,
            "comments": self.comments,
            "created_at": iso(self.created_at),
        }


class AppealStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class GradeAppeal(BaseModel):
    __tablename__ = "grade_appeals"

    session_id = Column(Integer, ForeignKey("exam_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    student_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(SQLEnum(AppealStatus), nullable=False, default=AppealStatus.PENDING)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "student_id": self.student_id,
            "reason": self.reason,
            "status": self.status.value,
            "created_at": iso(self.created_at),
        }
