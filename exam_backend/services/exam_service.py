"""
exam_backend/services/exam_service.py
Exam CRUD and the exam session lifecycle

Session transitions:
    start   : (no live session) not_started | new  -> in_progress
    pause   : in_progress                          -> paused
    resume  : paused                               -> in_progress
    submit  : in_progress | paused                 -> submitted -> graded

Every transition is applied with a conditional UPDATE on the status read
beforehand, so two racing requests cannot both move the same session.
Live-session uniqueness per (exam, student) is backed by a partial unique
index; an IntegrityError on start means another start won the race.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from exam_backend.errors import BadRequestError, ErrorCode, InvalidStateError, NotFoundError
from exam_backend.orm.exam import Exam, ExamQuestion
from exam_backend.orm.exam_answer import ExamAnswer
from exam_backend.orm.exam_session import (
    ExamSession, ExamSessionStatus, FINISHED_STATUSES, LIVE_STATUSES,
)
from exam_backend.orm.question import Question
from exam_backend.orm.student import ExamSchedule
from exam_backend.services.evaluation_service import calculate_score, grade_answer, load_exam_questions
from exam_backend.services.subject_service import validate_subject

logger = logging.getLogger(__name__)

INVALID_SESSION_STATE = "Session not found or invalid state"

TRANSITIONS = {
    "pause": ((ExamSessionStatus.in_progress,), ExamSessionStatus.paused),
    "resume": ((ExamSessionStatus.paused,), ExamSessionStatus.in_progress),
    "submit": ((ExamSessionStatus.in_progress, ExamSessionStatus.paused), ExamSessionStatus.submitted),
}


def can_transition(action: str, status: ExamSessionStatus) -> bool:
    allowed_from, _ = TRANSITIONS[action]
    return status in allowed_from


# ================= EXAMS =================

async def _ensure_questions(db: AsyncSession, question_ids: Iterable[int], subject_id: str) -> List[int]:
    ids = list(dict.fromkeys(question_ids))
    if not ids:
        return []
    result = await db.execute(select(Question.id, Question.subject_id).where(Question.id.in_(ids)))
    found = {row.id: row.subject_id for row in result.all()}
    missing = [qid for qid in ids if qid not in found]
    if missing:
        raise BadRequestError("Some questions do not exist", details={"missing_question_ids": missing})
    foreign = [qid for qid in ids if found[qid] != subject_id]
    if foreign:
        raise BadRequestError(
            "Questions must belong to the exam subject",
            details={"subject_id": subject_id, "question_ids": foreign},
        )
    return ids


async def _append_questions(db: AsyncSession, exam_id: int, question_ids: List[int]) -> int:
    existing = await db.execute(
        select(ExamQuestion.question_id, ExamQuestion.position).where(ExamQuestion.exam_id == exam_id)
    )
    rows = existing.all()
    assigned = {row.question_id for row in rows}
    position = max((row.position for row in rows), default=-1) + 1
    added = 0
    for question_id in question_ids:
        if question_id in assigned:
            continue
        db.add(ExamQuestion(exam_id=exam_id, question_id=question_id, position=position))
        position += 1
        added += 1
    return added


async def create_exam(db: AsyncSession, data: Dict[str, Any], created_by: Optional[int]) -> Exam:
    validate_subject(data["subject_id"])
    start_date, end_date = data.get("start_date"), data.get("end_date")
    if start_date and end_date and end_date <= start_date:
        raise BadRequestError("end_date must be after start_date")

    question_ids = await _ensure_questions(db, data.get("question_ids") or [], data["subject_id"])
    exam = Exam(
        title=data["title"],
        description=data.get("description"),
        subject_id=data["subject_id"],
        duration_minutes=data["duration_minutes"],
        start_date=start_date,
        end_date=end_date,
        max_attempts=data.get("max_attempts") or 1,
        template_id=data.get("template_id"),
        created_by=created_by,
    )
    db.add(exam)
    await db.flush()
    await _append_questions(db, exam.id, question_ids)
    await db.commit()
    await db.refresh(exam)
    logger.info(f"Exam {exam.id} created with {len(question_ids)} questions")
    return exam


async def get_exam_or_404(db: AsyncSession, exam_id: int) -> Exam:
    exam = await db.get(Exam, exam_id)
    if exam is None:
        raise NotFoundError("Exam", exam_id)
    return exam


async def get_exam(db: AsyncSession, exam_id: int, include_answers: bool = False) -> Dict[str, Any]:
    exam = await get_exam_or_404(db, exam_id)
    questions = await load_exam_questions(db, exam_id)
    return exam.to_dict(questions=[q.to_dict(include_answer=include_answers) for q in questions])


async def list_exams(db: AsyncSession, subject_id: Optional[str] = None) -> List[Dict[str, Any]]:
    query = select(Exam).order_by(Exam.id.desc())
    if subject_id:
        query = query.where(Exam.subject_id == subject_id)
    result = await db.execute(query)
    return [exam.to_dict() for exam in result.scalars().all()]


async def assign_questions(db: AsyncSession, exam_id: int, question_ids: List[int]) -> Dict[str, Any]:
    exam = await get_exam_or_404(db, exam_id)
    ids = await _ensure_questions(db, question_ids, exam.subject_id)
    added = await _append_questions(db, exam.id, ids)
    await db.commit()
    logger.info(f"Assigned {added} new questions to exam {exam_id}")
    return await get_exam(db, exam_id, include_answers=True)


# ================= SESSIONS =================

async def _get_owned_session(db: AsyncSession, session_id: int, student_id: int) -> ExamSession:
    result = await db.execute(
        select(ExamSession).where(ExamSession.id == session_id, ExamSession.student_id == student_id)
    )
    session = result.scalars().first()
    if session is None:
        raise InvalidStateError(INVALID_SESSION_STATE, code=ErrorCode.INVALID_STATE)
    return session


async def _compare_and_set(db: AsyncSession, session: ExamSession, action: str, values: Dict[str, Any]) -> None:
    """Move the session only if its status is still the one we read."""
    allowed_from, target = TRANSITIONS[action]
    if session.status not in allowed_from:
        raise InvalidStateError(
            INVALID_SESSION_STATE,
            details={"status": session.status.value, "action": action},
        )
    result = await db.execute(
        update(ExamSession)
        .where(ExamSession.id == session.id, ExamSession.status == session.status)
        .values(status=target, updated_at=datetime.utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise InvalidStateError(INVALID_SESSION_STATE, details={"action": action})


def _check_window(start_date: Optional[datetime], end_date: Optional[datetime], now: datetime) -> None:
    if start_date and now < start_date:
        raise InvalidStateError("Exam is not open yet", details={"start_date": start_date.isoformat()})
    if end_date and now > end_date:
        raise InvalidStateError("Exam window has closed", details={"end_date": end_date.isoformat()})


async def start_exam(db: AsyncSession, exam_id: int, student_id: int, now: Optional[datetime] = None) -> ExamSession:
    """Open a session for the student; reuses a scheduled not_started session when one exists."""
    now = now or datetime.utcnow()
    exam = await get_exam_or_404(db, exam_id)
    _check_window(exam.start_date, exam.end_date, now)

    result = await db.execute(
        select(ExamSession)
        .where(ExamSession.exam_id == exam_id, ExamSession.student_id == student_id)
        .order_by(ExamSession.id)
    )
    sessions = list(result.scalars().all())

    if any(s.status in LIVE_STATUSES for s in sessions):
        raise InvalidStateError(
            INVALID_SESSION_STATE,
            details={"reason": "An active session already exists for this exam"},
        )

    finished = sum(1 for s in sessions if s.status in FINISHED_STATUSES)
    if finished >= exam.max_attempts:
        raise InvalidStateError(
            "Maximum number of attempts reached",
            code=ErrorCode.MAX_ATTEMPTS_REACHED,
            details={"max_attempts": exam.max_attempts},
        )

    pending = next((s for s in sessions if s.status == ExamSessionStatus.not_started), None)
    if pending is not None and pending.schedule_id is not None:
        schedule = await db.get(ExamSchedule, pending.schedule_id)
        if schedule is not None:
            _check_window(schedule.start_date, schedule.end_date, now)

    try:
        if pending is not None:
            result = await db.execute(
                update(ExamSession)
                .where(ExamSession.id == pending.id, ExamSession.status == ExamSessionStatus.not_started)
                .values(
                    status=ExamSessionStatus.in_progress,
                    started_at=now,
                    last_resumed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                raise InvalidStateError(INVALID_SESSION_STATE)
            session_id = pending.id
        else:
            session = ExamSession(
                exam_id=exam_id,
                student_id=student_id,
                status=ExamSessionStatus.in_progress,
                started_at=now,
                last_resumed_at=now,
                elapsed_seconds=0.0,
            )
            db.add(session)
            await db.flush()
            session_id = session.id
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.warning(f"Concurrent start rejected for exam {exam_id}, student {student_id}")
        raise InvalidStateError(
            INVALID_SESSION_STATE,
            details={"reason": "An active session already exists for this exam"},
        )

    session = await db.get(ExamSession, session_id, populate_existing=True)
    logger.info(f"Session {session.id} started: exam {exam_id}, student {student_id}")
    return session


async def pause_exam(db: AsyncSession, session_id: int, student_id: int, now: Optional[datetime] = None) -> ExamSession:
    now = now or datetime.utcnow()
    session = await _get_owned_session(db, session_id, student_id)
    elapsed = session.running_seconds(now)
    await _compare_and_set(db, session, "pause", {
        "elapsed_seconds": elapsed,
        "paused_at": now,
        "last_resumed_at": None,
    })
    await db.commit()
    await db.refresh(session)
    logger.info(f"Session {session.id} paused after {elapsed:.1f}s")
    return session


async def resume_exam(db: AsyncSession, session_id: int, student_id: int, now: Optional[datetime] = None) -> ExamSession:
    now = now or datetime.utcnow()
    session = await _get_owned_session(db, session_id, student_id)
    await _compare_and_set(db, session, "resume", {
        "last_resumed_at": now,
        "paused_at": None,
    })
    await db.commit()
    await db.refresh(session)
    logger.info(f"Session {session.id} resumed")
    return session


async def submit_exam(
    db: AsyncSession,
    session_id: int,
    student_id: int,
    answers: List[Dict[str, Any]],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Store answers, grade them and finish the session in one transaction."""
    now = now or datetime.utcnow()
    session = await _get_owned_session(db, session_id, student_id)
    if not can_transition("submit", session.status):
        raise InvalidStateError(
            INVALID_SESSION_STATE,
            details={"status": session.status.value, "action": "submit"},
        )

    questions = {q.id: q for q in await load_exam_questions(db, session.exam_id)}
    submitted: Dict[int, Optional[str]] = {}
    for item in answers:
        question_id = item["question_id"]
        if question_id not in questions:
            raise BadRequestError(
                "Answer references a question that is not part of this exam",
                details={"question_id": question_id},
            )
        submitted[question_id] = item.get("answer")

    elapsed = session.running_seconds(now)
    await _compare_and_set(db, session, "submit", {
        "elapsed_seconds": elapsed,
        "submitted_at": now,
        "last_resumed_at": None,
    })

    existing = await db.execute(select(ExamAnswer).where(ExamAnswer.session_id == session.id))
    stored = {a.question_id: a for a in existing.scalars().all()}
    for question_id, value in submitted.items():
        is_correct, points = grade_answer(questions[question_id], value)
        answer = stored.get(question_id)
        if answer is None:
            answer = ExamAnswer(session_id=session.id, question_id=question_id)
            db.add(answer)
        answer.answer = value
        answer.is_correct = is_correct
        answer.points_awarded = points
        answer.reviewed = False
    await db.flush()

    await db.refresh(session)
    await calculate_score(db, session)
    await db.commit()
    await db.refresh(session)

    stored_answers = await db.execute(
        select(ExamAnswer).where(ExamAnswer.session_id == session.id).order_by(ExamAnswer.question_id)
    )
    data = session.to_dict()
    data["answers"] = [a.to_dict() for a in stored_answers.scalars().all()]
    return data


async def list_student_sessions(db: AsyncSession, student_id: int) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(ExamSession).where(ExamSession.student_id == student_id).order_by(ExamSession.id.desc())
    )
    return [s.to_dict() for s in result.scalars().all()]


async def count_active_exams(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """Exams whose window is open now or that have a live session."""
    now = now or datetime.utcnow()
    open_window = (
        ((Exam.start_date.is_(None)) | (Exam.start_date <= now))
        & ((Exam.end_date.is_(None)) | (Exam.end_date >= now))
    )
    live = select(ExamSession.exam_id).where(ExamSession.status.in_(LIVE_STATUSES))
    result = await db.execute(
        select(func.count(Exam.id)).where(open_window | Exam.id.in_(live))
    )
    return result.scalar() or 0
