"""
exam_backend/routes/questions.py
Question bank routes under /api/questions
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from exam_backend.database import get_db
from exam_backend.realtime.notification_hub import NotificationHub, create_notification
from exam_backend.routes.common import ensure_self_or_staff, get_cache, get_hub, get_ml
from exam_backend.security.auth import TokenUser, get_current_user
from exam_backend.security.permissions import Permission
from exam_backend.security.rbac import authorize, require_student
from exam_backend.services import question_service
from exam_backend.services.cache_service import CacheService, questions_key
from exam_backend.services.ml_service import MLService, get_class_ranking

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/questions", tags=["Questions"])


class QuestionCreate(BaseModel):
    subject_id: str
    subcategory_id: str
    type: str
    content: str = Field(..., min_length=1)
    options: Optional[List[str]] = None
    correct_answer: Optional[str] = None
    points: float
    difficulty: int = 3
    explanation: Optional[str] = None


class CheckAnswerRequest(BaseModel):
    question_id: int
    answer: str


async def create_and_announce(
    db: AsyncSession,
    cache: CacheService,
    hub: NotificationHub,
    data: dict,
    created_by: int,
) -> dict:
    """Create a question, drop the cached listing and notify topic subscribers."""
    question = await question_service.create_question(db, data, created_by)
    await cache.delete(questions_key(question.subject_id, question.subcategory_id))
    topic = f"questions/{question.subject_id}/{question.subcategory_id}"
    await hub.notify_subscribers(
        topic,
        create_notification(
            "new_question",
            "New question available",
            {"question_id": question.id, "subject_id": question.subject_id, "subcategory_id": question.subcategory_id},
        ),
    )
    return question.to_dict()


@router.post("", status_code=201)
async def create_question(
    body: QuestionCreate,
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache),
    hub: NotificationHub = Depends(get_hub),
    current_user: TokenUser = Depends(authorize(Permission.MANAGE_CONTENT)),
):
    return await create_and_announce(db, cache, hub, body.model_dump(), current_user.user_id)


@router.get("/adaptive/{student_id}/{topic}")
async def adaptive_question(
    student_id: int,
    topic: str,
    db: AsyncSession = Depends(get_db),
    ml: MLService = Depends(get_ml),
    current_user: TokenUser = Depends(get_current_user),
):
    ensure_self_or_staff(current_user, student_id)
    return await question_service.adaptive_question(db, ml, student_id, topic)


@router.post("/check-answer")
async def check_answer(
    body: CheckAnswerRequest,
    db: AsyncSession = Depends(get_db),
    ml: MLService = Depends(get_ml),
    current_user: TokenUser = Depends(require_student),
):
    return await question_service.check_answer(db, ml, current_user.user_id, body.question_id, body.answer)


@router.get("/badges/{student_id}")
async def get_badges(
    student_id: int,
    ml: MLService = Depends(get_ml),
    current_user: TokenUser = Depends(get_current_user),
):
    ensure_self_or_staff(current_user, student_id)
    return {"student_id": student_id, "badges": ml.get_badges(student_id)}


@router.get("/ranking/class/{grade}")
async def class_ranking(
    grade: str,
    db: AsyncSession = Depends(get_db),
    _: TokenUser = Depends(get_current_user),
):
    return {"grade": grade, "ranking": await get_class_ranking(db, grade)}


@router.get("/{student_id}/patterns")
async def learning_patterns(
    student_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: TokenUser = Depends(get_current_user),
):
    ensure_self_or_staff(current_user, student_id)
    return await question_service.learning_patterns(db, student_id)


@router.get("/{student_id}/{question_id}/performance")
async def question_performance(
    student_id: int,
    question_id: int,
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache),
    current_user: TokenUser = Depends(get_current_user),
):
    ensure_self_or_staff(current_user, student_id)
    return await question_service.question_performance(db, cache, student_id, question_id)


@router.get("/{question_id}")
async def get_question(
    question_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: TokenUser = Depends(get_current_user),
):
    question = await question_service.get_question(db, question_id)
    return question.to_dict(include_answer=not current_user.is_student)
