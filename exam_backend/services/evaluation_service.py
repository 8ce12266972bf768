"""
exam_backend/services/evaluation_service.py
Scoring, manual review, grade curving, appeals and exam analytics

Grading rules:
- objective answers are correct on exact match with the stored answer
  (surrounding whitespace ignored), earning the question's full points
- essay answers earn nothing until a reviewer awards points
- percentage = earned / max * 100 over every question assigned to the exam
- letter grade bands apply to the unrounded percentage:
  A >= 90, B >= 80, C >= 70, D >= 60, otherwise F
"""
import logging
import math
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from exam_backend import config
from exam_backend.errors import BadRequestError, ForbiddenError, InvalidStateError, NotFoundError
from exam_backend.orm.exam import Exam, ExamQuestion
from exam_backend.orm.exam_answer import AnswerReview, AppealStatus, ExamAnswer, GradeAppeal
from exam_backend.orm.exam_session import ExamSession, ExamSessionStatus, FINISHED_STATUSES
from exam_backend.orm.question import Question, QuestionType

logger = logging.getLogger(__name__)

# (lower bound, grade, performance label), highest band first
GRADE_BANDS: Tuple[Tuple[float, str, str], ...] = (
    (90.0, "A", "Excelente"),
    (80.0, "B", "Muy Bueno"),
    (70.0, "C", "Bueno"),
    (60.0, "D", "Regular"),
)
FAILING_GRADE = ("F", "Insuficiente")


def letter_grade(percentage: float) -> str:
    for lower_bound, grade, _ in GRADE_BANDS:
        if percentage >= lower_bound:
            return grade
    return FAILING_GRADE[0]


def performance_label(percentage: float) -> str:
    for lower_bound, _, label in GRADE_BANDS:
        if percentage >= lower_bound:
            return label
    return FAILING_GRADE[1]


def answers_match(submitted: Optional[str], correct: Optional[str]) -> bool:
    if submitted is None or correct is None:
        return False
    return str(submitted).strip() == str(correct).strip()


def grade_answer(question: Question, submitted: Optional[str]) -> Tuple[Optional[bool], float]:
    """(is_correct, points) for one answer; essays stay ungraded."""
    if question.type == QuestionType.essay:
        return None, 0.0
    is_correct = answers_match(submitted, question.correct_answer)
    return is_correct, (float(question.points) if is_correct else 0.0)


def percentage_of(earned: float, maximum: float) -> float:
    if maximum <= 0:
        return 0.0
    return earned / maximum * 100.0


def apply_result(session: ExamSession, earned: float, maximum: float) -> None:
    raw = percentage_of(earned, maximum)
    session.score = round(earned, 2)
    session.max_score = round(maximum, 2)
    session.percentage = round(raw, 2)
    session.grade = letter_grade(raw)
    session.performance = performance_label(raw)


async def load_exam_questions(db: AsyncSession, exam_id: int) -> List[Question]:
    """Questions assigned to an exam, in position order."""
    result = await db.execute(
        select(Question)
        .join(ExamQuestion, ExamQuestion.question_id == Question.id)
        .where(ExamQuestion.exam_id == exam_id)
        .order_by(ExamQuestion.position, ExamQuestion.id)
    )
    return list(result.scalars().all())


async def load_session_answers(db: AsyncSession, session_id: int) -> List[ExamAnswer]:
    result = await db.execute(
        select(ExamAnswer).where(ExamAnswer.session_id == session_id).order_by(ExamAnswer.question_id)
    )
    return list(result.scalars().all())


async def calculate_score(db: AsyncSession, session: ExamSession) -> ExamSession:
    """Recompute totals from stored answers and mark the session graded. Does not commit."""
    questions = await load_exam_questions(db, session.exam_id)
    answers = {a.question_id: a for a in await load_session_answers(db, session.id)}
    maximum = sum(float(q.points) for q in questions)
    earned = sum(answers[q.id].points_awarded for q in questions if q.id in answers)

    apply_result(session, earned, maximum)
    session.status = ExamSessionStatus.graded
    logger.info(
        f"Session {session.id} graded: {session.score}/{session.max_score} "
        f"({session.percentage}%) grade={session.grade}"
    )
    return session


async def get_session(db: AsyncSession, session_id: int) -> ExamSession:
    session = await db.get(ExamSession, session_id)
    if session is None:
        raise NotFoundError("Exam session", session_id)
    return session


async def get_score(db: AsyncSession, session_id: int, user_id: int, is_student: bool) -> Dict[str, Any]:
    session = await get_session(db, session_id)
    if is_student and session.student_id != user_id:
        raise ForbiddenError("This exam session does not belong to you")
    if session.status != ExamSessionStatus.graded:
        raise InvalidStateError("Session has not been graded yet", details={"status": session.status.value})
    answers = await load_session_answers(db, session.id)
    data = session.to_dict()
    data["answers"] = [a.to_dict() for a in answers]
    return data


async def review_open_question(
    db: AsyncSession,
    answer_id: int,
    points: float,
    comments: Optional[str],
    reviewer_id: int,
) -> Dict[str, Any]:
    """Award points to an answer by hand, record the review and re-score the session."""
    answer = await db.get(ExamAnswer, answer_id)
    if answer is None:
        raise NotFoundError("Answer", answer_id)
    question = await db.get(Question, answer.question_id)
    session = await get_session(db, answer.session_id)
    if session.status not in FINISHED_STATUSES:
        raise InvalidStateError("Answers can only be reviewed after submission")
    if points < 0 or points > float(question.points):
        raise BadRequestError(
            "points must be between 0 and the question's value",
            details={"max_points": question.points},
        )

    answer.points_awarded = float(points)
    answer.is_correct = points >= float(question.points)
    answer.reviewed = True
    review = AnswerReview(answer_id=answer.id, reviewer_id=reviewer_id, points=float(points), comments=comments)
    db.add(review)
    await calculate_score(db, session)
    await db.commit()
    logger.info(f"Answer {answer.id} reviewed by user {reviewer_id}: {points} points")
    return {"review": review.to_dict(), "answer": answer.to_dict(), "session": session.to_dict()}


def curve_scores(
    percentages: List[float],
    target_mean: float = config.CURVE_TARGET_MEAN,
    target_std: float = config.CURVE_TARGET_STD,
) -> List[float]:
    """Map scores onto a normal target distribution, clamped to [0, 100]."""
    if not percentages:
        return []
    mean = sum(percentages) / len(percentages)
    std = math.sqrt(sum((p - mean) ** 2 for p in percentages) / len(percentages))
    if std == 0:
        return list(percentages)
    return [
        round(min(100.0, max(0.0, target_mean + (p - mean) / std * target_std)), 2)
        for p in percentages
    ]


async def apply_gaussian_curve(
    db: AsyncSession,
    exam_id: int,
    target_mean: float = config.CURVE_TARGET_MEAN,
    target_std: float = config.CURVE_TARGET_STD,
) -> List[Dict[str, Any]]:
    if await db.get(Exam, exam_id) is None:
        raise NotFoundError("Exam", exam_id)
    result = await db.execute(
        select(ExamSession)
        .where(ExamSession.exam_id == exam_id, ExamSession.status == ExamSessionStatus.graded)
        .order_by(ExamSession.id)
    )
    sessions = list(result.scalars().all())
    curved = curve_scores([s.percentage or 0.0 for s in sessions], target_mean, target_std)
    for session, value in zip(sessions, curved):
        session.curved_score = value
    await db.commit()
    logger.info(f"Gaussian curve applied to {len(sessions)} sessions of exam {exam_id}")
    return [
        {
            "session_id": s.id,
            "student_id": s.student_id,
            "percentage": s.percentage,
            "curved_score": s.curved_score,
            "curved_grade": letter_grade(s.curved_score),
        }
        for s in sessions
    ]


async def handle_grade_appeal(db: AsyncSession, session_id: int, reason: str, student_id: int) -> GradeAppeal:
    session = await get_session(db, session_id)
    if session.student_id != student_id:
        raise ForbiddenError("This exam session does not belong to you")
    if session.status != ExamSessionStatus.graded:
        raise InvalidStateError("Only graded sessions can be appealed")
    appeal = GradeAppeal(session_id=session.id, student_id=student_id, reason=reason, status=AppealStatus.PENDING)
    db.add(appeal)
    await db.commit()
    await db.refresh(appeal)
    logger.info(f"Grade appeal {appeal.id} filed for session {session_id}")
    return appeal


async def get_performance_analytics(db: AsyncSession, exam_id: int) -> Dict[str, Any]:
    if await db.get(Exam, exam_id) is None:
        raise NotFoundError("Exam", exam_id)

    sessions_result = await db.execute(
        select(ExamSession.percentage)
        .where(ExamSession.exam_id == exam_id, ExamSession.status == ExamSessionStatus.graded)
    )
    percentages = [p or 0.0 for p in sessions_result.scalars().all()]
    average = sum(percentages) / len(percentages) if percentages else 0.0
    std = math.sqrt(sum((p - average) ** 2 for p in percentages) / len(percentages)) if percentages else 0.0

    answers_result = await db.execute(
        select(ExamAnswer, Question)
        .join(Question, Question.id == ExamAnswer.question_id)
        .join(ExamSession, ExamSession.id == ExamAnswer.session_id)
        .where(ExamSession.exam_id == exam_id, ExamSession.status == ExamSessionStatus.graded)
    )
    topics: Dict[str, Dict[str, float]] = {}
    questions: Dict[int, Dict[str, Any]] = {}
    for answer, question in answers_result.all():
        topic = topics.setdefault(question.subcategory_id, {"earned": 0.0, "possible": 0.0})
        topic["earned"] += answer.points_awarded
        topic["possible"] += float(question.points)

        entry = questions.setdefault(question.id, {"question_id": question.id, "answered": 0, "correct": 0})
        entry["answered"] += 1
        if answer.is_correct:
            entry["correct"] += 1

    return {
        "exam_id": exam_id,
        "graded_sessions": len(percentages),
        "average_score": round(average, 2),
        "standard_deviation": round(std, 2),
        "topic_performance": {
            topic: round(percentage_of(v["earned"], v["possible"]), 2) for topic, v in topics.items()
        },
        "question_difficulty": [
            {**q, "success_rate": round(q["correct"] / q["answered"], 4) if q["answered"] else 0.0}
            for q in sorted(questions.values(), key=lambda q: q["question_id"])
        ],
    }
