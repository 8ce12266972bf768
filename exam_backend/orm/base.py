"""
exam_backend/orm/base.py
Declarative base for the exam platform tables (users, students, groups,
questions, exams, sessions, monitoring, appeals and audit logs).

Every table gets an integer id plus naive UTC created/updated timestamps;
``iso`` is the one place datetimes are turned into API strings.
"""
from datetime import datetime
from sqlalchemy import Column, Integer, DateTime
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class BaseModel(Base):
    """Id and audit timestamps shared by every exam platform record."""
    __abstract__ = True

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, comment="Row insert time (UTC)")
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
        comment="Last write time (UTC)"
    )


def iso(value):
    """Serialize an optional datetime/date for API responses."""
    return value.isoformat() if value else None
