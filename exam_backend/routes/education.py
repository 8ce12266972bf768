"""
exam_backend/routes/education.py
Education routes under /api/education

Groups:
- subjects and the question bank
- exams and the exam session lifecycle
- evaluations (scores, curve, reviews, appeals, analytics)
- anti-cheat monitoring
- reports, badges and ranking
- cache and notification maintenance
"""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Query, UploadFile
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from exam_backend.database import get_db
from exam_backend.errors import BadRequestError, ForbiddenError
from exam_backend.realtime.notification_hub import NotificationHub, create_notification
from exam_backend.routes.common import (
    PDF_MEDIA_TYPE,
    XLSX_MEDIA_TYPE,
    ensure_self_or_staff,
    file_response,
    get_anti_cheat,
    get_cache,
    get_hub,
    get_ml,
    naive_utc,
)
from exam_backend.routes.questions import QuestionCreate, CheckAnswerRequest, create_and_announce
from exam_backend.security.auth import TokenUser, get_current_user
from exam_backend.security.permissions import Permission
from exam_backend.security.rbac import authorize, require_admin, require_student
from exam_backend.services import evaluation_service, exam_service, question_service, report_service
from exam_backend.services.anti_cheat_service import AntiCheatService
from exam_backend.services.cache_service import CacheService, questions_key
from exam_backend.services.ml_service import MLService, get_class_ranking
from exam_backend.services.subject_service import get_available_subjects

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/education", tags=["Education"])


# ================= SCHEMAS =================

class ExamCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    subject_id: str
    duration_minutes: int = Field(..., gt=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    max_attempts: int = Field(1, ge=1)
    question_ids: List[int] = []

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_dates(cls, value):
        return naive_utc(value)


class QuestionAssignment(BaseModel):
    question_ids: List[int] = Field(..., min_length=1)


class SubmittedAnswer(BaseModel):
    question_id: int
    answer: Optional[str] = None


class SubmitRequest(BaseModel):
    answers: List[SubmittedAnswer] = []


class ReviewRequest(BaseModel):
    answer_id: int
    points: float
    comments: Optional[str] = None


class AppealRequest(BaseModel):
    session_id: int
    reason: str = Field(..., min_length=1)


class CurveRequest(BaseModel):
    target_mean: Optional[float] = Field(None, ge=0, le=100)
    target_std: Optional[float] = Field(None, gt=0)


class ScreenshotRequest(BaseModel):
    active_window: Optional[str] = None
    captured_at: Optional[datetime] = None

    @field_validator("captured_at")
    @classmethod
    def normalize_captured_at(cls, value):
        return naive_utc(value)


class NotificationRequest(BaseModel):
    type: str = "announcement"
    message: str = Field(..., min_length=1)
    data: Optional[dict] = None
    user_id: Optional[int] = None
    topic: Optional[str] = None


# ================= SUBJECTS & QUESTIONS =================

@router.get("/subjects")
async def list_subjects(_: TokenUser = Depends(get_current_user)):
    return get_available_subjects()


@router.get("/questions")
async def list_questions(
    subject_id: str = Query(...),
    subcategory_id: str = Query(...),
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache),
    current_user: TokenUser = Depends(get_current_user),
):
    questions = await question_service.list_questions(db, cache, subject_id, subcategory_id)
    if current_user.is_student:
        for question in questions:
            question.pop("correct_answer", None)
            question.pop("explanation", None)
    return questions


@router.post("/questions", status_code=201)
async def create_question(
    body: QuestionCreate,
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache),
    hub: NotificationHub = Depends(get_hub),
    current_user: TokenUser = Depends(authorize(Permission.MANAGE_CONTENT)),
):
    return await create_and_announce(db, cache, hub, body.model_dump(), current_user.user_id)


@router.post("/questions/import")
async def import_questions(
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache),
    current_user: TokenUser = Depends(authorize(Permission.MANAGE_CONTENT)),
):
    raw = await file.read()
    try:
        content = raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise BadRequestError("CSV file must be UTF-8 encoded")

    results = await question_service.import_questions_csv(db, content, current_user.user_id)
    for key in {(r["subject_id"], r["subcategory_id"]) for r in results if r.get("subject_id")}:
        await cache.delete(questions_key(*key))
    return {
        "imported": sum(1 for r in results if r["success"]),
        "failed": sum(1 for r in results if not r["success"]),
        "results": results,
    }


@router.get("/questions/template")
async def import_template(_: TokenUser = Depends(get_current_user)):
    return {"columns": question_service.CSV_TEMPLATE.split(","), "option_separator": question_service.CSV_OPTION_SEPARATOR}


@router.get("/questions/search")
async def search_questions(
    subject_id: Optional[str] = None,
    subcategory_id: Optional[str] = None,
    difficulty: Optional[int] = Query(None, ge=1, le=5),
    type: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: TokenUser = Depends(get_current_user),
):
    questions = await question_service.search_questions(
        db, subject_id, subcategory_id, difficulty, type, search, limit
    )
    return [q.to_dict(include_answer=not current_user.is_student) for q in questions]


@router.get("/questions/stats")
async def subject_statistics(
    subject_id: str = Query(...),
    db: AsyncSession = Depends(get_db),
    _: TokenUser = Depends(get_current_user),
):
    return await question_service.get_subject_statistics(db, subject_id)


@router.get("/questions/random-exam")
async def random_exam(
    subject_id: str = Query(...),
    subcategory_id: Optional[str] = None,
    count: int = Query(10, ge=1, le=100),
    difficulty: Optional[int] = Query(None, ge=1, le=5),
    db: AsyncSession = Depends(get_db),
    current_user: TokenUser = Depends(get_current_user),
):
    questions = await question_service.random_questions(db, subject_id, subcategory_id, count, difficulty)
    return [q.to_dict(include_answer=not current_user.is_student) for q in questions]


@router.get("/questions/recommendations")
async def recommended_questions(
    subject_id: str = Query(...),
    subcategory_id: str = Query(...),
    db: AsyncSession = Depends(get_db),
    ml: MLService = Depends(get_ml),
    hub: NotificationHub = Depends(get_hub),
    current_user: TokenUser = Depends(require_student),
):
    recommendation = await question_service.recommended_questions(
        db, ml, current_user.user_id, subject_id, subcategory_id
    )
    await hub.notify_user(
        current_user.user_id,
        create_notification(
            "recommendation",
            "New recommended questions",
            {"subject_id": subject_id, "subcategory_id": subcategory_id,
             "count": len(recommendation["questions"])},
        ),
    )
    return recommendation


@router.get("/questions/adaptive")
async def adaptive_question(
    topic: str = Query(...),
    db: AsyncSession = Depends(get_db),
    ml: MLService = Depends(get_ml),
    current_user: TokenUser = Depends(require_student),
):
    return await question_service.adaptive_question(db, ml, current_user.user_id, topic)


@router.post("/questions/check-answer")
async def check_answer(
    body: CheckAnswerRequest,
    db: AsyncSession = Depends(get_db),
    ml: MLService = Depends(get_ml),
    current_user: TokenUser = Depends(require_student),
):
    return await question_service.check_answer(db, ml, current_user.user_id, body.question_id, body.answer)


@router.get("/questions/{student_id}/patterns")
async def learning_patterns(
    student_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: TokenUser = Depends(get_current_user),
):
    ensure_self_or_staff(current_user, student_id)
    return await question_service.learning_patterns(db, student_id)


@router.get("/questions/{student_id}/{question_id}/performance")
async def question_performance(
    student_id: int,
    question_id: int,
    db: AsyncSession = Depends(get_db),
    cache: CacheService = Depends(get_cache),
    current_user: TokenUser = Depends(get_current_user),
):
    ensure_self_or_staff(current_user, student_id)
    return await question_service.question_performance(db, cache, student_id, question_id)


@router.get("/questions/{question_id}")
async def get_question(
    question_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: TokenUser = Depends(get_current_user),
):
    question = await question_service.get_question(db, question_id)
    return question.to_dict(include_answer=not current_user.is_student)


# ================= CACHE & NOTIFICATIONS =================

@router.post("/cache/flush")
async def flush_cache(
    cache: CacheService = Depends(get_cache),
    current_user: TokenUser = Depends(require_admin),
):
    removed = await cache.flush()
    logger.info(f"Cache flushed by user {current_user.user_id}: {removed} keys")
    return {"success": removed >= 0, "removed": removed}


@router.post("/notifications")
async def send_notification(
    body: NotificationRequest,
    hub: NotificationHub = Depends(get_hub),
    _: TokenUser = Depends(require_admin),
):
    """Send to one user, to a topic's subscribers, or to everyone connected."""
    notification = create_notification(body.type, body.message, body.data)
    if body.user_id is not None:
        delivered = int(await hub.notify_user(body.user_id, notification))
    elif body.topic:
        delivered = await hub.notify_subscribers(body.topic, notification)
    else:
        delivered = await hub.notify_all(notification)
    return {"notification": notification, "delivered": delivered}


# ================= EXAMS =================

@router.post("/exams", status_code=201)
async def create_exam(
    body: ExamCreate,
    db: AsyncSession = Depends(get_db),
    current_user: TokenUser = Depends(authorize(Permission.MANAGE_CONTENT)),
):
    exam = await exam_service.create_exam(db, body.model_dump(), current_user.user_id)
    return await exam_service.get_exam(db, exam.id, include_answers=True)


@router.get("/exams")
async def list_exams(
    subject_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    _: TokenUser = Depends(get_current_user),
):
    return await exam_service.list_exams(db, subject_id)


@router.get("/exams/{exam_id}")
async def get_exam(
    exam_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: TokenUser = Depends(get_current_user),
):
    return await exam_service.get_exam(db, exam_id, include_answers=not current_user.is_student)


@router.post("/exams/{exam_id}/questions")
async def assign_questions(
    exam_id: int,
    body: QuestionAssignment,
    db: AsyncSession = Depends(get_db),
    _: TokenUser = Depends(authorize(Permission.MANAGE_CONTENT)),
):
    return await exam_service.assign_questions(db, exam_id, body.question_ids)


@router.post("/exams/{exam_id}/start")
async def start_exam(
    exam_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: TokenUser = Depends(require_student),
):
    session = await exam_service.start_exam(db, exam_id, current_user.user_id)
    exam = await exam_service.get_exam(db, exam_id)
    return {"session": session.to_dict(), "exam": exam}


@router.post("/exams/{session_id}/pause")
async def pause_exam(
    session_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: TokenUser = Depends(require_student),
):
    session = await exam_service.pause_exam(db, session_id, current_user.user_id)
    return session.to_dict()


@router.post("/exams/{session_id}/resume")
async def resume_exam(
    session_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: TokenUser = Depends(require_student),
):
    session = await exam_service.resume_exam(db, session_id, current_user.user_id)
    return session.to_dict()


@router.post("/exams/{session_id}/submit")
async def submit_exam(
    session_id: int,
    body: SubmitRequest,
    db: AsyncSession = Depends(get_db),
    anti_cheat: AntiCheatService = Depends(get_anti_cheat),
    current_user: TokenUser = Depends(require_student),
):
    result = await exam_service.submit_exam(
        db, session_id, current_user.user_id, [a.model_dump() for a in body.answers]
    )
    await anti_cheat.stop_monitoring(db, session_id)
    return result


@router.get("/sessions")
async def my_sessions(
    db: AsyncSession = Depends(get_db),
    current_user: TokenUser = Depends(require_student),
):
    return await exam_service.list_student_sessions(db, current_user.user_id)


# ================= EVALUATIONS =================

@router.get("/evaluations/{session_id}/score")
async def get_score(
    session_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: TokenUser = Depends(get_current_user),
):
    return await evaluation_service.get_score(db, session_id, current_user.user_id, current_user.is_student)


@router.post("/evaluations/{exam_id}/gaussian")
async def apply_gaussian_curve(
    exam_id: int,
    body: Optional[CurveRequest] = None,
    db: AsyncSession = Depends(get_db),
    _: TokenUser = Depends(authorize(Permission.MANAGE_GRADES)),
):
    kwargs = {}
    if body is not None:
        kwargs = {k: v for k, v in body.model_dump().items() if v is not None}
    sessions = await evaluation_service.apply_gaussian_curve(db, exam_id, **kwargs)
    return {"exam_id": exam_id, "sessions": sessions}


@router.post("/evaluations/review")
async def review_question(
    body: ReviewRequest,
    db: AsyncSession = Depends(get_db),
    current_user: TokenUser = Depends(authorize(Permission.MANAGE_GRADES)),
):
    return await evaluation_service.review_open_question(
        db, body.answer_id, body.points, body.comments, current_user.user_id
    )


@router.post("/evaluations/appeal", status_code=201)
async def grade_appeal(
    body: AppealRequest,
    db: AsyncSession = Depends(get_db),
    current_user: TokenUser = Depends(require_student),
):
    appeal = await evaluation_service.handle_grade_appeal(db, body.session_id, body.reason, current_user.user_id)
    return appeal.to_dict()


@router.get("/evaluations/{exam_id}/analytics")
async def performance_analytics(
    exam_id: int,
    db: AsyncSession = Depends(get_db),
    _: TokenUser = Depends(authorize(Permission.VIEW_ANALYTICS)),
):
    return await evaluation_service.get_performance_analytics(db, exam_id)


# ================= MONITORING =================

@router.post("/monitoring/{session_id}/start", status_code=201)
async def start_monitoring(
    session_id: int,
    db: AsyncSession = Depends(get_db),
    anti_cheat: AntiCheatService = Depends(get_anti_cheat),
    current_user: TokenUser = Depends(require_student),
):
    monitor = await anti_cheat.start_monitoring(db, session_id, current_user.user_id)
    return monitor.to_dict()


@router.post("/monitoring/{session_id}/stop")
async def stop_monitoring(
    session_id: int,
    db: AsyncSession = Depends(get_db),
    anti_cheat: AntiCheatService = Depends(get_anti_cheat),
    current_user: TokenUser = Depends(get_current_user),
):
    session = await evaluation_service.get_session(db, session_id)
    ensure_self_or_staff(current_user, session.student_id)
    monitor = await anti_cheat.stop_monitoring(db, session_id)
    return {"stopped": monitor is not None, "monitoring": monitor.to_dict() if monitor else None}


@router.post("/monitoring/{session_id}/screenshots", status_code=201)
async def take_screenshot(
    session_id: int,
    body: ScreenshotRequest,
    db: AsyncSession = Depends(get_db),
    anti_cheat: AntiCheatService = Depends(get_anti_cheat),
    current_user: TokenUser = Depends(require_student),
):
    session = await evaluation_service.get_session(db, session_id)
    if session.student_id != current_user.user_id:
        raise ForbiddenError("This exam session does not belong to you")
    return await anti_cheat.take_screenshot(db, session_id, body.active_window, body.captured_at)


@router.get("/monitoring/{session_id}/analysis")
async def analyze_monitoring(
    session_id: int,
    db: AsyncSession = Depends(get_db),
    anti_cheat: AntiCheatService = Depends(get_anti_cheat),
    _: TokenUser = Depends(authorize(Permission.VIEW_ANALYTICS)),
):
    return await anti_cheat.analyze_session(db, session_id)


# ================= REPORTS =================

@router.get("/reports/students/{student_id}/exams/{exam_id}")
async def student_exam_report(
    student_id: int,
    exam_id: int,
    db: AsyncSession = Depends(get_db),
    _: TokenUser = Depends(authorize(Permission.VIEW_ANALYTICS)),
):
    content = await report_service.student_exam_report(db, student_id, exam_id)
    return file_response(content, PDF_MEDIA_TYPE, f"reporte_{student_id}_{exam_id}.pdf")


@router.get("/reports/students/{student_id}/history")
async def student_history_report(
    student_id: int,
    db: AsyncSession = Depends(get_db),
    _: TokenUser = Depends(authorize(Permission.VIEW_ANALYTICS)),
):
    content = await report_service.student_history_report(db, student_id)
    return file_response(content, PDF_MEDIA_TYPE, f"historial_{student_id}.pdf")


@router.get("/reports/groups/{group_id}/exams/{exam_id}")
async def group_report(
    group_id: int,
    exam_id: int,
    db: AsyncSession = Depends(get_db),
    _: TokenUser = Depends(authorize(Permission.VIEW_ANALYTICS)),
):
    content = await report_service.group_report(db, group_id, exam_id)
    return file_response(content, XLSX_MEDIA_TYPE, f"grupo_{group_id}_examen_{exam_id}.xlsx")


@router.get("/reports/exams/{exam_id}/performance")
async def performance_chart(
    exam_id: int,
    db: AsyncSession = Depends(get_db),
    _: TokenUser = Depends(authorize(Permission.VIEW_ANALYTICS)),
):
    content = await report_service.performance_chart(db, exam_id)
    return file_response(content, PDF_MEDIA_TYPE, f"rendimiento_{exam_id}.pdf")


# ================= BADGES & RANKING =================

@router.get("/badges/{student_id}")
async def get_badges(
    student_id: int,
    ml: MLService = Depends(get_ml),
    current_user: TokenUser = Depends(get_current_user),
):
    ensure_self_or_staff(current_user, student_id)
    return {"student_id": student_id, "badges": ml.get_badges(student_id)}


@router.get("/ranking/{grade}")
async def class_ranking(
    grade: str,
    db: AsyncSession = Depends(get_db),
    _: TokenUser = Depends(get_current_user),
):
    return {"grade": grade, "ranking": await get_class_ranking(db, grade)}
