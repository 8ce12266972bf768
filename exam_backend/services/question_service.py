"""
exam_backend/services/question_service.py
Question bank: creation, lookup, search, CSV import and adaptive selection
"""
import csv
import io
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func, and_, case
from sqlalchemy.ext.asyncio import AsyncSession

from exam_backend.errors import BadRequestError, NotFoundError, APIError
from exam_backend.orm.question import Question, QuestionType
from exam_backend.orm.exam_answer import ExamAnswer
from exam_backend.orm.exam_session import ExamSession
from exam_backend.services.cache_service import CacheService, questions_key, performance_key
from exam_backend.services.evaluation_service import answers_match
from exam_backend.services.ml_service import MLService, difficulty_level, predict_difficulty
from exam_backend.services.subject_service import validate_subject, validate_subject_pair

logger = logging.getLogger(__name__)

CSV_TEMPLATE = "subjectId,subcategoryId,type,content,options,correctAnswer,points,difficulty,explanation"
CSV_OPTION_SEPARATOR = "|"

REQUIRED_FIELDS = ("subject_id", "subcategory_id", "type", "content", "points")
RECOMMENDATION_LIMIT = 5


def validate_question_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Check a question payload and return it normalized.

    Raises BadRequestError on missing fields, an unknown subject/subcategory
    pair, or an answer that cannot be graded for the question type.
    """
    missing = [f for f in REQUIRED_FIELDS if data.get(f) in (None, "")]
    if missing:
        raise BadRequestError("Missing required fields", details={"missing": missing})

    validate_subject_pair(data["subject_id"], data["subcategory_id"])

    try:
        question_type = QuestionType(data["type"])
    except ValueError:
        raise BadRequestError(
            "Invalid question type",
            details={"type": data["type"], "allowed": [t.value for t in QuestionType]},
        )

    try:
        points = float(data["points"])
        difficulty = int(data["difficulty"]) if data.get("difficulty") is not None else 3
    except (TypeError, ValueError):
        raise BadRequestError("points and difficulty must be numeric")
    if points <= 0:
        raise BadRequestError("points must be greater than zero", details={"points": points})

    if not 1 <= difficulty <= 5:
        raise BadRequestError("difficulty must be between 1 and 5", details={"difficulty": difficulty})

    options = list(data.get("options") or [])
    correct_answer = data.get("correct_answer")
    if isinstance(correct_answer, str):
        correct_answer = correct_answer.strip()

    if question_type == QuestionType.multiple_choice:
        if len(options) < 2:
            raise BadRequestError("multiple_choice questions need at least two options")
        if not correct_answer or correct_answer not in [str(o).strip() for o in options]:
            raise BadRequestError("correct_answer must be one of the options")
    elif question_type == QuestionType.true_false:
        if str(correct_answer).lower() not in ("true", "false"):
            raise BadRequestError("true_false questions need 'true' or 'false' as correct_answer")
        correct_answer = str(correct_answer).lower()
        options = options or ["true", "false"]
    else:
        correct_answer = correct_answer or None

    return {
        "subject_id": data["subject_id"],
        "subcategory_id": data["subcategory_id"],
        "type": question_type,
        "content": data["content"],
        "options": options,
        "correct_answer": correct_answer,
        "points": points,
        "difficulty": difficulty,
        "explanation": data.get("explanation"),
    }


async def create_question(db: AsyncSession, data: Dict[str, Any], created_by: Optional[int]) -> Question:
    fields = validate_question_data(data)
    question = Question(**fields, created_by=created_by)
    db.add(question)
    await db.commit()
    await db.refresh(question)
    logger.info(f"Question {question.id} created in {question.subject_id}/{question.subcategory_id}")
    return question


async def get_question(db: AsyncSession, question_id: int) -> Question:
    question = await db.get(Question, question_id)
    if question is None:
        raise NotFoundError("Question", question_id)
    return question


async def list_questions(
    db: AsyncSession,
    cache: CacheService,
    subject_id: str,
    subcategory_id: str,
) -> List[Dict[str, Any]]:
    """Questions of one subcategory, served from cache when available."""
    validate_subject_pair(subject_id, subcategory_id)
    key = questions_key(subject_id, subcategory_id)
    cached = await cache.get(key)
    if cached is not None:
        return cached

    result = await db.execute(
        select(Question)
        .where(Question.subject_id == subject_id, Question.subcategory_id == subcategory_id)
        .order_by(Question.id)
    )
    questions = [q.to_dict() for q in result.scalars().all()]
    await cache.set(key, questions)
    return questions


async def search_questions(
    db: AsyncSession,
    subject_id: Optional[str] = None,
    subcategory_id: Optional[str] = None,
    difficulty: Optional[int] = None,
    question_type: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = 10,
) -> List[Question]:
    conditions = []
    if subject_id:
        conditions.append(Question.subject_id == subject_id)
    if subcategory_id:
        conditions.append(Question.subcategory_id == subcategory_id)
    if difficulty is not None:
        conditions.append(Question.difficulty == difficulty)
    if question_type:
        try:
            conditions.append(Question.type == QuestionType(question_type))
        except ValueError:
            raise BadRequestError(
                "Invalid question type",
                details={"type": question_type, "allowed": [t.value for t in QuestionType]},
            )
    if search:
        conditions.append(Question.content.ilike(f"%{search}%"))

    query = select(Question)
    if conditions:
        query = query.where(and_(*conditions))
    result = await db.execute(query.order_by(Question.id.desc()).limit(limit))
    return list(result.scalars().all())


def _row_to_question_data(row: Dict[str, str]) -> Dict[str, Any]:
    options = row.get("options") or ""
    return {
        "subject_id": (row.get("subjectId") or "").strip(),
        "subcategory_id": (row.get("subcategoryId") or "").strip(),
        "type": (row.get("type") or "").strip(),
        "content": (row.get("content") or "").strip(),
        "options": [o.strip() for o in options.split(CSV_OPTION_SEPARATOR) if o.strip()],
        "correct_answer": row.get("correctAnswer"),
        "points": (row.get("points") or "").strip() or None,
        "difficulty": (row.get("difficulty") or "").strip() or None,
        "explanation": row.get("explanation") or None,
    }


async def import_questions_csv(db: AsyncSession, content: str, created_by: Optional[int]) -> List[Dict[str, Any]]:
    """
    Import questions row by row.

    Each row is committed on its own; a bad row is reported and skipped
    without rolling back rows that were already imported.
    """
    reader = csv.DictReader(io.StringIO(content))
    missing_columns = set(CSV_TEMPLATE.split(",")) - set(reader.fieldnames or [])
    if missing_columns:
        raise BadRequestError(
            "CSV header does not match the template",
            details={"template": CSV_TEMPLATE, "missing_columns": sorted(missing_columns)},
        )

    results = []
    for line_number, row in enumerate(reader, start=2):
        try:
            question = await create_question(db, _row_to_question_data(row), created_by)
            results.append({
                "row": line_number,
                "success": True,
                "id": question.id,
                "subject_id": question.subject_id,
                "subcategory_id": question.subcategory_id,
            })
        except APIError as e:
            await db.rollback()
            results.append({"row": line_number, "success": False, "error": e.message})
        except (TypeError, ValueError) as e:
            await db.rollback()
            results.append({"row": line_number, "success": False, "error": f"Invalid value: {str(e)}"})

    imported = sum(1 for r in results if r["success"])
    logger.info(f"CSV import finished: {imported}/{len(results)} rows imported")
    return results


async def get_subject_statistics(db: AsyncSession, subject_id: str) -> Dict[str, Any]:
    validate_subject(subject_id)
    result = await db.execute(
        select(
            func.count(Question.id),
            func.avg(Question.points),
            func.min(Question.points),
            func.max(Question.points),
        ).where(Question.subject_id == subject_id)
    )
    total, average, minimum, maximum = result.one()

    type_rows = await db.execute(
        select(Question.type, func.count(Question.id))
        .where(Question.subject_id == subject_id)
        .group_by(Question.type)
    )
    return {
        "subject_id": subject_id,
        "total_questions": total or 0,
        "average_points": round(float(average), 2) if average is not None else 0.0,
        "min_points": minimum or 0,
        "max_points": maximum or 0,
        "question_types": {qtype.value: count for qtype, count in type_rows.all()},
    }


async def random_questions(
    db: AsyncSession,
    subject_id: str,
    subcategory_id: Optional[str] = None,
    count: int = 10,
    difficulty: Optional[int] = None,
) -> List[Question]:
    if subcategory_id:
        validate_subject_pair(subject_id, subcategory_id)
    else:
        validate_subject(subject_id)

    query = select(Question).where(Question.subject_id == subject_id)
    if subcategory_id:
        query = query.where(Question.subcategory_id == subcategory_id)
    if difficulty is not None:
        query = query.where(Question.difficulty == difficulty)
    result = await db.execute(query.order_by(func.random()).limit(count))
    return list(result.scalars().all())


async def recommended_questions(
    db: AsyncSession,
    ml: MLService,
    student_id: int,
    subject_id: str,
    subcategory_id: str,
) -> Dict[str, Any]:
    """Up to five questions within one difficulty step of the student's level."""
    validate_subject_pair(subject_id, subcategory_id)
    performance = await ml.topic_performance(student_id, subcategory_id)
    level = difficulty_level(predict_difficulty(performance))

    result = await db.execute(
        select(Question)
        .where(
            Question.subject_id == subject_id,
            Question.subcategory_id == subcategory_id,
            Question.difficulty.between(level - 1, level + 1),
        )
        .order_by(func.random())
        .limit(RECOMMENDATION_LIMIT)
    )
    return {
        "performance": performance,
        "difficulty_level": level,
        "questions": [q.to_dict(include_answer=False) for q in result.scalars().all()],
    }


async def adaptive_question(db: AsyncSession, ml: MLService, student_id: int, topic: str) -> Dict[str, Any]:
    """Predicted difficulty for a subcategory plus the closest matching question."""
    content = await ml.get_adaptive_content(student_id, topic)
    level = content["difficulty_level"]
    result = await db.execute(
        select(Question)
        .where(Question.subcategory_id == topic)
        .order_by(func.abs(Question.difficulty - level), func.random())
        .limit(1)
    )
    question = result.scalars().first()
    content["next_question"] = question.to_dict(include_answer=False) if question else None
    return content


async def check_answer(
    db: AsyncSession,
    ml: MLService,
    student_id: int,
    question_id: int,
    answer: str,
) -> Dict[str, Any]:
    question = await get_question(db, question_id)
    if question.type == QuestionType.essay:
        raise BadRequestError("Essay answers are graded by manual review")
    is_correct = answers_match(answer, question.correct_answer)
    profile = await ml.record_answer(student_id, question.subcategory_id, is_correct)
    return {
        "question_id": question.id,
        "is_correct": is_correct,
        "correct_answer": question.correct_answer,
        "explanation": question.explanation,
        "profile": profile,
    }


async def question_performance(
    db: AsyncSession,
    cache: CacheService,
    student_id: int,
    question_id: int,
) -> Dict[str, Any]:
    key = performance_key(student_id, question_id)
    cached = await cache.get(key)
    if cached is not None:
        return cached

    await get_question(db, question_id)
    result = await db.execute(
        select(ExamAnswer.is_correct, ExamAnswer.points_awarded)
        .join(ExamSession, ExamSession.id == ExamAnswer.session_id)
        .where(ExamSession.student_id == student_id, ExamAnswer.question_id == question_id)
    )
    rows = result.all()
    graded = [r for r in rows if r.is_correct is not None]
    correct = sum(1 for r in graded if r.is_correct)
    analysis = {
        "student_id": student_id,
        "question_id": question_id,
        "attempts": len(rows),
        "correct": correct,
        "accuracy": round(correct / len(graded), 4) if graded else None,
        "average_points": round(sum(r.points_awarded for r in rows) / len(rows), 2) if rows else None,
    }
    await cache.set(key, analysis)
    return analysis


async def learning_patterns(db: AsyncSession, student_id: int) -> Dict[str, Any]:
    """Per-subcategory accuracy across graded answers, split into strengths and weaknesses."""
    result = await db.execute(
        select(
            Question.subcategory_id,
            func.count(ExamAnswer.id),
            func.sum(case((ExamAnswer.is_correct.is_(True), 1), else_=0)),
        )
        .join(Question, Question.id == ExamAnswer.question_id)
        .join(ExamSession, ExamSession.id == ExamAnswer.session_id)
        .where(ExamSession.student_id == student_id, ExamAnswer.is_correct.is_not(None))
        .group_by(Question.subcategory_id)
    )
    by_topic = {}
    for subcategory_id, answered, correct in result.all():
        by_topic[subcategory_id] = {
            "answered": answered,
            "correct": int(correct or 0),
            "accuracy": round(int(correct or 0) / answered, 4) if answered else 0.0,
        }
    return {
        "student_id": student_id,
        "topics": by_topic,
        "strengths": sorted(t for t, v in by_topic.items() if v["accuracy"] > 0.8),
        "weaknesses": sorted(t for t, v in by_topic.items() if v["accuracy"] < 0.5),
    }
