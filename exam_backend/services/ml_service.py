"""
exam_backend/services/ml_service.py
Recommendation stubs

Student profiles are kept in memory per process. Difficulty prediction and
content recommendations are fixed formulas / constants standing in for a
trained model.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func, desc
from sqlalchemy.ext.asyncio import AsyncSession

from exam_backend.orm.exam_session import ExamSession, ExamSessionStatus
from exam_backend.orm.student import Student

logger = logging.getLogger(__name__)

STRENGTH_THRESHOLD = 0.8
WEAKNESS_THRESHOLD = 0.5

DEFAULT_RECOMMENDATIONS = [
    {"topic": "Matemáticas", "difficulty": 0.7},
    {"topic": "Comunicación", "difficulty": 0.6},
]

BADGES = [
    {"id": 1, "name": "Iniciante", "description": "Completó el primer tema"},
    {"id": 2, "name": "Experto", "description": "Excelente rendimiento en matemáticas"},
]


def predict_difficulty(performance: float) -> float:
    """Map a 0..1 performance score to a 0.1..0.9 difficulty."""
    return performance * 0.8 + 0.1


def difficulty_level(predicted: float) -> int:
    """Convert a 0..1 difficulty to the 1-5 question scale."""
    return max(1, min(5, int(round(1 + predicted * 4))))


class MLService:
    def __init__(self):
        self._profiles: Dict[int, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _new_profile() -> Dict[str, Any]:
        return {"performance": {}, "strengths": [], "weaknesses": []}

    async def get_student_profile(self, student_id: int) -> Dict[str, Any]:
        async with self._lock:
            profile = self._profiles.setdefault(student_id, self._new_profile())
            return {
                "performance": dict(profile["performance"]),
                "strengths": list(profile["strengths"]),
                "weaknesses": list(profile["weaknesses"]),
            }

    async def update_student_profile(self, student_id: int, performance: Dict[str, float]) -> Dict[str, Any]:
        """Merge topic scores (0..1) and re-derive strengths and weaknesses."""
        async with self._lock:
            profile = self._profiles.setdefault(student_id, self._new_profile())
            profile["performance"].update(performance)
            for topic, score in performance.items():
                if topic in profile["strengths"]:
                    profile["strengths"].remove(topic)
                if topic in profile["weaknesses"]:
                    profile["weaknesses"].remove(topic)
                if score > STRENGTH_THRESHOLD:
                    profile["strengths"].append(topic)
                elif score < WEAKNESS_THRESHOLD:
                    profile["weaknesses"].append(topic)
        return await self.get_student_profile(student_id)

    async def record_answer(self, student_id: int, topic: str, correct: bool, weight: float = 0.3) -> Dict[str, Any]:
        """Nudge a topic score toward 1 or 0 after an answer."""
        profile = await self.get_student_profile(student_id)
        current = profile["performance"].get(topic, 0.5)
        target = 1.0 if correct else 0.0
        updated = round(current + (target - current) * weight, 4)
        return await self.update_student_profile(student_id, {topic: updated})

    async def topic_performance(self, student_id: int, topic: str) -> float:
        profile = await self.get_student_profile(student_id)
        return profile["performance"].get(topic, 0.0)

    async def get_adaptive_content(self, student_id: int, topic: str) -> Dict[str, Any]:
        performance = await self.topic_performance(student_id, topic)
        difficulty = predict_difficulty(performance)
        return {
            "topic": topic,
            "performance": performance,
            "difficulty": round(difficulty, 4),
            "difficulty_level": difficulty_level(difficulty),
            "recommendations": [dict(r) for r in DEFAULT_RECOMMENDATIONS],
        }

    def get_badges(self, student_id: int) -> List[Dict[str, Any]]:
        return [dict(b) for b in BADGES]


async def get_class_ranking(db: AsyncSession, grade_level: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
    """Students ordered by their average graded percentage."""
    average = func.avg(func.coalesce(ExamSession.curved_score, ExamSession.percentage)).label("average")
    query = (
        select(Student.id, Student.name, Student.last_name, Student.user_id, average)
        .join(ExamSession, ExamSession.student_id == Student.user_id)
        .where(ExamSession.status == ExamSessionStatus.graded)
        .group_by(Student.id, Student.name, Student.last_name, Student.user_id)
        .order_by(desc("average"), Student.id)
        .limit(limit)
    )
    if grade_level is not None:
        query = query.where(Student.grade_level == grade_level)

    result = await db.execute(query)
    ranking = []
    for position, row in enumerate(result.all(), start=1):
        ranking.append({
            "position": position,
            "student_id": row.id,
            "user_id": row.user_id,
            "name": f"{row.name} {row.last_name}",
            "score": round(float(row.average or 0.0), 2),
        })
    return ranking
