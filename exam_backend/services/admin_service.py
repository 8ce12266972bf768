"""
exam_backend/services/admin_service.py
Administration: staff accounts, exam templates, groups, scheduling, dashboard
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func, delete, insert
from sqlalchemy.ext.asyncio import AsyncSession

from exam_backend.errors import BadRequestError, ErrorCode, NotFoundError
from exam_backend.orm.audit_log import AuditLog
from exam_backend.orm.exam import Exam, ExamTemplate, TemplateQuestion
from exam_backend.orm.exam_answer import ExamAnswer
from exam_backend.orm.exam_session import ExamSession, ExamSessionStatus, FINISHED_STATUSES
from exam_backend.orm.question import Question, QuestionType
from exam_backend.orm.student import ExamSchedule, Group, Student, group_students
from exam_backend.orm.user import ADMIN_ROLES, User, UserRole
from exam_backend.security.passwords import hash_password_async
from exam_backend.services import exam_service, question_service
from exam_backend.services.subject_service import validate_subject, validate_subject_pair

logger = logging.getLogger(__name__)

STAFF_ROLES = (UserRole.super_admin, UserRole.admin, UserRole.teacher)


# ================= STAFF ACCOUNTS =================

async def list_admins(db: AsyncSession) -> List[Dict[str, Any]]:
    result = await db.execute(select(User).where(User.role.in_(ADMIN_ROLES)).order_by(User.id))
    return [u.to_dict() for u in result.scalars().all()]


def _staff_role(role: str) -> UserRole:
    try:
        parsed = UserRole(role)
    except ValueError:
        parsed = None
    if parsed not in STAFF_ROLES:
        raise BadRequestError("Invalid role", details={"allowed": [r.value for r in STAFF_ROLES]})
    return parsed


async def create_admin(db: AsyncSession, name: str, email: str, password: str, role: str) -> User:
    parsed_role = _staff_role(role)
    email = email.strip().lower()
    existing = await db.execute(select(User.id).where(User.email == email))
    if existing.first() is not None:
        raise BadRequestError("Email already exists", ErrorCode.DUPLICATE_EMAIL)

    user = User(
        name=name,
        email=email,
        password_hash=await hash_password_async(password),
        role=parsed_role,
        must_change_password=False,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    logger.info(f"Staff account {user.id} created with role {parsed_role.value}")
    return user


async def _get_admin(db: AsyncSession, admin_id: int) -> User:
    user = await db.get(User, admin_id)
    if user is None or user.role not in ADMIN_ROLES:
        raise NotFoundError("Admin", admin_id)
    return user


async def update_admin(db: AsyncSession, admin_id: int, changes: Dict[str, Any]) -> User:
    user = await _get_admin(db, admin_id)
    if changes.get("email"):
        email = changes["email"].strip().lower()
        if email != user.email:
            clash = await db.execute(select(User.id).where(User.email == email))
            if clash.first() is not None:
                raise BadRequestError("Email already exists", ErrorCode.DUPLICATE_EMAIL)
            user.email = email
    if changes.get("name"):
        user.name = changes["name"]
    if changes.get("role"):
        user.role = _staff_role(changes["role"])
    if changes.get("is_active") is not None:
        user.is_active = changes["is_active"]
    await db.commit()
    await db.refresh(user)
    return user


async def delete_admin(db: AsyncSession, admin_id: int) -> None:
    user = await _get_admin(db, admin_id)
    await db.delete(user)
    await db.commit()
    logger.info(f"Admin {admin_id} deleted")


# ================= TEMPLATES =================

async def create_template(db: AsyncSession, data: Dict[str, Any], created_by: Optional[int]) -> Dict[str, Any]:
    if data.get("subcategory_id"):
        validate_subject_pair(data["subject_id"], data["subcategory_id"])
    else:
        validate_subject(data["subject_id"])

    question_ids = list(dict.fromkeys(data.get("question_ids") or []))
    if question_ids:
        result = await db.execute(
            select(Question.id).where(Question.id.in_(question_ids), Question.subject_id == data["subject_id"])
        )
        found = set(result.scalars().all())
        missing = [qid for qid in question_ids if qid not in found]
        if missing:
            raise BadRequestError("Some questions do not exist for this subject", details={"question_ids": missing})

    template = ExamTemplate(
        name=data["name"],
        description=data.get("description"),
        subject_id=data["subject_id"],
        subcategory_id=data.get("subcategory_id"),
        duration_minutes=data.get("duration_minutes") or 60,
        created_by=created_by,
    )
    db.add(template)
    await db.flush()
    for question_id in question_ids:
        db.add(TemplateQuestion(template_id=template.id, question_id=question_id))
    await db.commit()
    await db.refresh(template)
    return template.to_dict(question_ids=question_ids)


async def generate_exam_from_template(
    db: AsyncSession,
    template_id: int,
    count: int,
    created_by: Optional[int],
) -> Dict[str, Any]:
    """Create an exam with `count` random questions from the template pool (or its subject)."""
    template = await db.get(ExamTemplate, template_id)
    if template is None:
        raise NotFoundError("Template", template_id)

    pool = await db.execute(select(TemplateQuestion.question_id).where(TemplateQuestion.template_id == template_id))
    pool_ids = list(pool.scalars().all())
    if pool_ids:
        result = await db.execute(
            select(Question.id).where(Question.id.in_(pool_ids)).order_by(func.random()).limit(count)
        )
        question_ids = list(result.scalars().all())
    else:
        questions = await question_service.random_questions(db, template.subject_id, template.subcategory_id, count)
        question_ids = [q.id for q in questions]

    if not question_ids:
        raise BadRequestError("No questions available for this template")

    exam = await exam_service.create_exam(db, {
        "title": f"{template.name} - {datetime.utcnow().isoformat(timespec='seconds')}",
        "description": template.description,
        "subject_id": template.subject_id,
        "duration_minutes": template.duration_minutes,
        "question_ids": question_ids,
        "template_id": template.id,
    }, created_by)
    return await exam_service.get_exam(db, exam.id, include_answers=True)


# ================= GROUPS =================

async def create_group(db: AsyncSession, name: str, description: Optional[str], course_id: Optional[str]) -> Group:
    group = Group(name=name, description=description, course_id=course_id)
    db.add(group)
    await db.commit()
    await db.refresh(group)
    return group


async def _get_group(db: AsyncSession, group_id: int) -> Group:
    group = await db.get(Group, group_id)
    if group is None:
        raise NotFoundError("Group", group_id)
    return group


async def group_member_ids(db: AsyncSession, group_id: int) -> List[int]:
    result = await db.execute(
        select(group_students.c.student_id)
        .where(group_students.c.group_id == group_id)
        .order_by(group_students.c.student_id)
    )
    return list(result.scalars().all())


async def assign_students_to_group(db: AsyncSession, group_id: int, student_ids: List[int]) -> Dict[str, Any]:
    """Replace the group's membership with student_ids."""
    group = await _get_group(db, group_id)
    ids = list(dict.fromkeys(student_ids))
    if ids:
        result = await db.execute(select(Student.id).where(Student.id.in_(ids)))
        found = set(result.scalars().all())
        missing = [sid for sid in ids if sid not in found]
        if missing:
            raise BadRequestError("Some students do not exist", details={"student_ids": missing})

    await db.execute(delete(group_students).where(group_students.c.group_id == group_id))
    if ids:
        await db.execute(insert(group_students), [{"group_id": group_id, "student_id": sid} for sid in ids])
    await db.commit()
    logger.info(f"Group {group_id} membership replaced: {len(ids)} students")
    return group.to_dict(student_ids=ids)


async def schedule_exam(
    db: AsyncSession,
    exam_id: int,
    group_id: int,
    start_date: datetime,
    end_date: datetime,
) -> Dict[str, Any]:
    """Open an exam to a group; each member without a pending session gets a not_started one."""
    if end_date <= start_date:
        raise BadRequestError("end_date must be after start_date")
    await exam_service.get_exam_or_404(db, exam_id)
    await _get_group(db, group_id)

    existing = await db.execute(
        select(ExamSchedule).where(ExamSchedule.exam_id == exam_id, ExamSchedule.group_id == group_id)
    )
    schedule = existing.scalars().first()
    if schedule is None:
        schedule = ExamSchedule(exam_id=exam_id, group_id=group_id, start_date=start_date, end_date=end_date)
        db.add(schedule)
    else:
        schedule.start_date = start_date
        schedule.end_date = end_date
    await db.flush()

    members = await db.execute(
        select(Student.user_id)
        .join(group_students, group_students.c.student_id == Student.id)
        .where(group_students.c.group_id == group_id)
    )
    user_ids = list(members.scalars().all())

    pending = await db.execute(
        select(ExamSession.student_id).where(
            ExamSession.exam_id == exam_id,
            ExamSession.student_id.in_(user_ids),
            ExamSession.status == ExamSessionStatus.not_started,
        )
    )
    already = set(pending.scalars().all())
    created = 0
    for user_id in user_ids:
        if user_id in already:
            continue
        db.add(ExamSession(
            exam_id=exam_id,
            student_id=user_id,
            schedule_id=schedule.id,
            status=ExamSessionStatus.not_started,
            elapsed_seconds=0.0,
        ))
        created += 1
    await db.commit()
    await db.refresh(schedule)
    logger.info(f"Exam {exam_id} scheduled for group {group_id}: {created} sessions created")
    return {**schedule.to_dict(), "sessions_created": created}


# ================= DASHBOARD =================

async def get_dashboard_stats(db: AsyncSession) -> Dict[str, Any]:
    total_exams = (await db.execute(select(func.count(Exam.id)))).scalar() or 0
    total_students = (await db.execute(select(func.count(Student.id)))).scalar() or 0
    pending_reviews = (await db.execute(
        select(func.count(ExamAnswer.id))
        .join(Question, Question.id == ExamAnswer.question_id)
        .join(ExamSession, ExamSession.id == ExamAnswer.session_id)
        .where(
            Question.type == QuestionType.essay,
            ExamAnswer.reviewed.is_(False),
            ExamSession.status.in_(FINISHED_STATUSES),
        )
    )).scalar() or 0
    recent = await db.execute(select(AuditLog).order_by(AuditLog.id.desc()).limit(10))

    return {
        "total_exams": total_exams,
        "active_exams": await exam_service.count_active_exams(db),
        "total_students": total_students,
        "pending_reviews": pending_reviews,
        "recent_activity": [entry.to_dict() for entry in recent.scalars().all()],
    }
