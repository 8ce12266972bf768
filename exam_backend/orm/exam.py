"""
exam_backend/orm/exam.py
Exams, their question assignments and reusable exam templates
"""
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, UniqueConstraint

from exam_backend.orm.base import BaseModel, iso


class Exam(BaseModel):
    __tablename__ = "exams"

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    subject_id = Column(String(50), nullable=False, index=True)
    duration_minutes = Column(Integer, nullable=False)
    start_date = Column(DateTime, nullable=True, comment="Window opens; NULL means always open")
    end_date = Column(DateTime, nullable=True, comment="Window closes; NULL means never")
    max_attempts = Column(Integer, nullable=False, default=1)
    template_id = Column(Integer, ForeignKey("exam_templates.id", ondelete="SET NULL"), nullable=True)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    def to_dict(self, questions=None) -> dict:
        data = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "subject_id": self.subject_id,
            "duration_minutes": self.duration_minutes,
            "start_date": iso(self.start_date),
            "end_date": iso(self.end_date),
            "max_attempts": self.max_attempts,
            "template_id": self.template_id,
            "created_at": iso(self.created_at),
        }
        if questions is not None:
            data["questions"] = questions
        return data


class ExamQuestion(BaseModel):
    """Assignment of a question to an exam, in display order."""
    __tablename__ = "exam_questions"

    exam_id = Column(Integer, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False, index=True)
    question_id = Column(Integer, ForeignKey("questions.id", ondelete="CASCADE"), nullable=False)
    position = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("exam_id", "question_id", name="uq_exam_question"),
    )


class ExamTemplate(BaseModel):
    """A named question pool that random exams are drawn from."""
    __tablename__ = "exam_templates"

    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    subject_id = Column(String(50), nullable=False)
    subcategory_id = Column(String(50), nullable=True)
    duration_minutes = Column(Integer, nullable=False, default=60)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    def to_dict(self, question_ids=None) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "subject_id": self.subject_id,
            "subcategory_id": self.subcategory_id,
            "duration_minutes": self.duration_minutes,
        }
        if question_ids is not None:
            data["question_ids"] = list(question_ids)
        return data


class TemplateQuestion(BaseModel):
    __tablename__ = "template_questions"

    template_id = Column(Integer, ForeignKey("exam_templates.id", ondelete="CASCADE"), nullable=False, index=True)
    question_id = Column(Integer, ForeignKey("questions.id", ondelete="CASCADE"), nullable=False)

    __table_args__ = (
        UniqueConstraint("template_id", "question_id", name="uq_template_question"),
    )
