"""
exam_backend/routes/admin.py
Administration routes under /api/admin

Staff account management is reserved to super admins. Templates, groups,
scheduling and the dashboard are gated by permission.
"""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from exam_backend.database import get_db
from exam_backend.errors import BadRequestError
from exam_backend.routes.common import naive_utc
from exam_backend.security.auth import TokenUser
from exam_backend.security.permissions import Permission
from exam_backend.security.rbac import authorize, require_admin, require_super_admin
from exam_backend.services import admin_service
from exam_backend.services.audit_service import log_action

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


# ================= SCHEMAS =================

class AdminCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    role: str = "admin"


class AdminUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    email: Optional[EmailStr] = None
    role: Optional[str] = None
    is_active: Optional[bool] = None


class TemplateCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    subject_id: str
    subcategory_id: Optional[str] = None
    duration_minutes: int = Field(60, gt=0)
    question_ids: List[int] = []


class GenerateExamRequest(BaseModel):
    count: int = Field(10, ge=1, le=100)


class ScheduleRequest(BaseModel):
    exam_id: int
    group_id: int
    start_date: datetime
    end_date: datetime

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_dates(cls, value):
        return naive_utc(value)


class GroupCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    course_id: Optional[str] = None


class GroupMembers(BaseModel):
    student_ids: List[int]


# ================= STAFF ACCOUNTS =================

@router.get("")
async def list_admins(
    db: AsyncSession = Depends(get_db),
    _: TokenUser = Depends(require_super_admin),
):
    return await admin_service.list_admins(db)


@router.post("", status_code=201)
async def create_admin(
    body: AdminCreate,
    db: AsyncSession = Depends(get_db),
    current_user: TokenUser = Depends(require_super_admin),
):
    user = await admin_service.create_admin(db, body.name, body.email, body.password, body.role)
    await log_action(db, current_user.user_id, "CREATE_ADMIN", {"admin_id": user.id, "role": user.role.value})
    return user.to_dict()


@router.put("/{admin_id}")
async def update_admin(
    admin_id: int,
    body: AdminUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: TokenUser = Depends(require_super_admin),
):
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise BadRequestError("No changes provided")
    user = await admin_service.update_admin(db, admin_id, changes)
    await log_action(db, current_user.user_id, "UPDATE_ADMIN", {"admin_id": admin_id, "fields": sorted(changes)})
    return user.to_dict()


@router.delete("/{admin_id}")
async def delete_admin(
    admin_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: TokenUser = Depends(require_super_admin),
):
    if admin_id == current_user.user_id:
        raise BadRequestError("You cannot delete your own account")
    await admin_service.delete_admin(db, admin_id)
    await log_action(db, current_user.user_id, "DELETE_ADMIN", {"admin_id": admin_id})
    return {"success": True, "message": "Admin deleted"}


# ================= TEMPLATES & EXAMS =================

@router.post("/templates", status_code=201)
async def create_template(
    body: TemplateCreate,
    db: AsyncSession = Depends(get_db),
    current_user: TokenUser = Depends(authorize(Permission.MANAGE_CONTENT)),
):
    template = await admin_service.create_template(db, body.model_dump(), current_user.user_id)
    await log_action(db, current_user.user_id, "CREATE_TEMPLATE", {"template_id": template["id"]})
    return template


@router.post("/templates/{template_id}/exams", status_code=201)
async def generate_exam(
    template_id: int,
    body: GenerateExamRequest,
    db: AsyncSession = Depends(get_db),
    current_user: TokenUser = Depends(authorize(Permission.MANAGE_CONTENT)),
):
    exam = await admin_service.generate_exam_from_template(db, template_id, body.count, current_user.user_id)
    await log_action(db, current_user.user_id, "GENERATE_EXAM", {"template_id": template_id, "exam_id": exam["id"]})
    return exam


@router.post("/exams/schedule", status_code=201)
async def schedule_exam(
    body: ScheduleRequest,
    db: AsyncSession = Depends(get_db),
    current_user: TokenUser = Depends(authorize(Permission.MANAGE_COURSES)),
):
    schedule = await admin_service.schedule_exam(db, body.exam_id, body.group_id, body.start_date, body.end_date)
    await log_action(db, current_user.user_id, "SCHEDULE_EXAM", {
        "exam_id": body.exam_id,
        "group_id": body.group_id,
        "sessions_created": schedule["sessions_created"],
    })
    return schedule


# ================= GROUPS =================

@router.post("/groups", status_code=201)
async def create_group(
    body: GroupCreate,
    db: AsyncSession = Depends(get_db),
    current_user: TokenUser = Depends(authorize(Permission.MANAGE_STUDENTS)),
):
    group = await admin_service.create_group(db, body.name, body.description, body.course_id)
    await log_action(db, current_user.user_id, "CREATE_GROUP", {"group_id": group.id})
    return group.to_dict(student_ids=[])


@router.post("/groups/{group_id}/students")
async def assign_students(
    group_id: int,
    body: GroupMembers,
    db: AsyncSession = Depends(get_db),
    current_user: TokenUser = Depends(authorize(Permission.MANAGE_STUDENTS)),
):
    group = await admin_service.assign_students_to_group(db, group_id, body.student_ids)
    await log_action(db, current_user.user_id, "ASSIGN_STUDENTS", {"group_id": group_id, "count": len(group["student_ids"])})
    return group


# ================= DASHBOARD =================

@router.get("/dashboard/stats")
async def dashboard_stats(
    db: AsyncSession = Depends(get_db),
    _: TokenUser = Depends(require_admin),
):
    return await admin_service.get_dashboard_stats(db)
