"""
exam_backend/routes/students.py
Student enrollment routes under /api/students
"""
import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from exam_backend.database import get_db
from exam_backend.security.auth import TokenUser
from exam_backend.security.permissions import Permission
from exam_backend.security.rbac import authorize
from exam_backend.services import student_service
from exam_backend.services.audit_service import log_action

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/students", tags=["Students"])


class StudentCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    date_of_birth: date
    phone: Optional[str] = Field(None, max_length=30)
    address: Optional[str] = Field(None, max_length=255)
    grade_level: Optional[str] = Field(None, max_length=20)


@router.post("", status_code=201)
async def create_student(
    body: StudentCreate,
    db: AsyncSession = Depends(get_db),
    current_user: TokenUser = Depends(authorize(Permission.MANAGE_STUDENTS)),
):
    student = await student_service.create_student(db, body.model_dump())
    await log_action(db, current_user.user_id, "CREATE_STUDENT", {"student_id": student.id})
    return student.to_dict()


@router.get("")
async def list_students(
    db: AsyncSession = Depends(get_db),
    _: TokenUser = Depends(authorize(Permission.VIEW_STUDENTS)),
):
    return await student_service.list_students(db)


@router.get("/{student_id}")
async def get_student(
    student_id: int,
    db: AsyncSession = Depends(get_db),
    _: TokenUser = Depends(authorize(Permission.VIEW_STUDENTS)),
):
    student = await student_service.get_student(db, student_id)
    return student.to_dict()
