"""
exam_backend/orm/question.py
Question bank entries, classified by subject and subcategory
"""
from enum import Enum
from sqlalchemy import Column, Integer, String, Text, Float, JSON, ForeignKey, Index, Enum as SQLEnum

from exam_backend.orm.base import BaseModel, iso


class QuestionType(str, Enum):
    multiple_choice = "multiple_choice"
    true_false = "true_false"
    essay = "essay"


class Question(BaseModel):
    """
    A single question.

    subject_id / subcategory_id refer to the static subject catalog and are
    validated against it before a row is written.
    """
    __tablename__ = "questions"

    subject_id = Column(String(50), nullable=False, comment="Catalog subject key, e.g. 'math'")
    subcategory_id = Column(String(50), nullable=False, comment="Catalog subcategory key, e.g. 'algebra'")
    type = Column(SQLEnum(QuestionType), nullable=False)
    content = Column(Text, nullable=False)
    options = Column(JSON, nullable=True, comment="Answer options for objective questions")
    correct_answer = Column(Text, nullable=True, comment="Exact-match answer; empty for essays")
    points = Column(Float, nullable=False, default=1.0)
    difficulty = Column(Integer, nullable=False, default=3, comment="1 (easy) to 5 (hard)")
    explanation = Column(Text, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    __table_args__ = (
        Index("ix_questions_subject_subcategory", "subject_id", "subcategory_id"),
    )

    def to_dict(self, include_answer: bool = True) -> dict:
        data = {
            "id": self.id,
            "subject_id": self.subject_id,
            "subcategory_id": self.subcategory_id,
            "type": self.type.value if self.type else None,
            "content": self.content,
            "options": self.options or [],
            "points": self.points,
            "difficulty": self.difficulty,
            "created_by": self.created_by,
            "created_at": iso(self.created_at),
        }
        if include_answer:
            data["correct_answer"] = self.correct_answer
            data["explanation"] = self.explanation
        return data
