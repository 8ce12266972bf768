"""
exam_backend/services/student_service.py
Student enrollment

Enrolling a student creates both the profile and a login account with the
default password; the account must change its password before using any
protected route.
"""
import logging
from datetime import date
from typing import Any, Dict, List

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from exam_backend import config
from exam_backend.errors import BadRequestError, ErrorCode, NotFoundError
from exam_backend.orm.student import Student
from exam_backend.orm.user import User, UserRole
from exam_backend.security.passwords import hash_password_async

logger = logging.getLogger(__name__)


async def email_in_use(db: AsyncSession, email: str) -> bool:
    result = await db.execute(select(User.id).where(User.email == email))
    return result.first() is not None


async def create_student(db: AsyncSession, data: Dict[str, Any]) -> Student:
    email = data["email"].strip().lower()
    if data["date_of_birth"] > date.today():
        raise BadRequestError("date_of_birth cannot be in the future")
    if await email_in_use(db, email):
        raise BadRequestError("Email already registered", ErrorCode.DUPLICATE_EMAIL)

    user = User(
        name=f"{data['name']} {data['last_name']}",
        email=email,
        password_hash=await hash_password_async(config.DEFAULT_STUDENT_PASSWORD),
        role=UserRole.student,
        must_change_password=True,
    )
    db.add(user)
    try:
        await db.flush()
        student = Student(
            user_id=user.id,
            name=data["name"],
            last_name=data["last_name"],
            email=email,
            date_of_birth=data["date_of_birth"],
            phone=data.get("phone"),
            address=data.get("address"),
            grade_level=data.get("grade_level"),
        )
        db.add(student)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise BadRequestError("Email already registered", ErrorCode.DUPLICATE_EMAIL)

    await db.refresh(student)
    logger.info(f"Student {student.id} enrolled with user {user.id}")
    return student


async def list_students(db: AsyncSession) -> List[Dict[str, Any]]:
    result = await db.execute(select(Student).order_by(Student.last_name, Student.name))
    return [s.to_dict() for s in result.scalars().all()]


async def get_student(db: AsyncSession, student_id: int) -> Student:
    student = await db.get(Student, student_id)
    if student is None:
        raise NotFoundError("Student", student_id)
    return student
