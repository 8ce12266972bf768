"""
exam_backend/orm/student.py
Student profiles and groups used for bulk scheduling
"""
from sqlalchemy import Column, Integer, String, Text, Date, DateTime, ForeignKey, Table, UniqueConstraint

from exam_backend.orm.base import Base, BaseModel, iso


group_students = Table(
    "group_students",
    Base.metadata,
    Column("group_id", Integer, ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True),
    Column("student_id", Integer, ForeignKey("students.id", ondelete="CASCADE"), primary_key=True),
)


class Student(BaseModel):
    """Enrollment profile; user_id points at the student's login account."""
    __tablename__ = "students"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=False, unique=True, index=True)
    date_of_birth = Column(Date, nullable=False)
    phone = Column(String(30), nullable=True)
    address = Column(Text, nullable=True)
    grade_level = Column(String(20), nullable=True, index=True, comment="School grade used for class rankings")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "last_name": self.last_name,
            "email": self.email,
            "date_of_birth": iso(self.date_of_birth),
            "phone": self.phone,
            "address": self.address,
            "grade_level": self.grade_level,
            "created_at": iso(self.created_at),
        }


class Group(BaseModel):
    __tablename__ = "groups"

    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    course_id = Column(String(50), nullable=True)

    def to_dict(self, student_ids=None) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "course_id": self.course_id,
        }
        if student_ids is not None:
            data["student_ids"] = list(student_ids)
        return data


class ExamSchedule(BaseModel):
    """An exam opened to one group for a time window."""
    __tablename__ = "exam_schedules"

    exam_id = Column(Integer, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False, index=True)
    group_id = Column(Integer, ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("exam_id", "group_id", name="uq_exam_schedule_group"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "exam_id": self.exam_id,
            "group_id": self.group_id,
            "start_date": iso(self.start_date),
            "end_date": iso(self.end_date),
        }
