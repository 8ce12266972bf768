"""
exam_backend/services/anti_cheat_service.py
Exam activity monitoring

The service keeps one in-memory map of user_id -> monitored exam session.
A user may be monitored on a single session at a time. Screenshot metadata
is persisted and scored by a pluggable ScreenshotAnalyzer; the default
heuristic is a placeholder, not a security control.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession

from exam_backend.errors import ErrorCode, ForbiddenError, InvalidStateError, NotFoundError
from exam_backend.orm.exam_session import ExamSession
from exam_backend.orm.monitoring import MonitoringScreenshot, MonitoringSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Screenshot:
    captured_at: datetime
    active_window: Optional[str]


class ScreenshotAnalyzer(ABC):
    @abstractmethod
    def analyze(self, screenshots: Sequence[Screenshot]) -> Dict[str, Any]:
        """Return {"suspicious": bool, "patterns": [...], ...}."""


class PatternHeuristicAnalyzer(ScreenshotAnalyzer):
    """Flags rapid captures and active-window switches between consecutive screenshots."""

    def __init__(self, quick_change_seconds: float = 1.0, max_patterns: int = 3):
        self.quick_change_seconds = quick_change_seconds
        self.max_patterns = max_patterns

    def analyze(self, screenshots: Sequence[Screenshot]) -> Dict[str, Any]:
        ordered = sorted(screenshots, key=lambda s: s.captured_at)
        patterns = []
        windows: Dict[str, int] = {}
        for shot in ordered:
            key = shot.active_window or "unknown"
            windows[key] = windows.get(key, 0) + 1

        for current, following in zip(ordered, ordered[1:]):
            gap = (following.captured_at - current.captured_at).total_seconds()
            if gap < self.quick_change_seconds:
                patterns.append({"type": "QUICK_CHANGE", "timestamp": current.captured_at.isoformat()})
            if current.active_window != following.active_window:
                patterns.append({"type": "WINDOW_CHANGE", "timestamp": current.captured_at.isoformat()})

        return {
            "suspicious": len(patterns) > self.max_patterns,
            "patterns": patterns,
            "frequency": windows,
            "screenshots": len(ordered),
        }


class AntiCheatService:
    def __init__(self, analyzer: Optional[ScreenshotAnalyzer] = None):
        self.analyzer = analyzer or PatternHeuristicAnalyzer()
        self.active_sessions: Dict[int, int] = {}
        self._lock = asyncio.Lock()

    async def _active_monitor(self, db: AsyncSession, exam_session_id: int) -> Optional[MonitoringSession]:
        result = await db.execute(
            select(MonitoringSession)
            .where(MonitoringSession.exam_session_id == exam_session_id, MonitoringSession.active.is_(True))
            .order_by(desc(MonitoringSession.id))
        )
        return result.scalars().first()

    async def start_monitoring(self, db: AsyncSession, exam_session_id: int, user_id: int) -> MonitoringSession:
        exam_session = await db.get(ExamSession, exam_session_id)
        if exam_session is None:
            raise NotFoundError("Exam session", exam_session_id)
        if exam_session.student_id != user_id:
            raise ForbiddenError("This exam session does not belong to you")

        async with self._lock:
            if user_id in self.active_sessions:
                logger.warning(
                    f"User {user_id} tried to monitor session {exam_session_id} "
                    f"while session {self.active_sessions[user_id]} is active"
                )
                raise InvalidStateError("Multiple sessions detected", code=ErrorCode.MULTIPLE_SESSIONS)
            self.active_sessions[user_id] = exam_session_id

        try:
            monitor = MonitoringSession(exam_session_id=exam_session_id, user_id=user_id, active=True)
            db.add(monitor)
            await db.commit()
            await db.refresh(monitor)
        except Exception:
            async with self._lock:
                self.active_sessions.pop(user_id, None)
            raise
        logger.info(f"Monitoring started for session {exam_session_id}, user {user_id}")
        return monitor

    async def stop_monitoring(self, db: AsyncSession, exam_session_id: int) -> Optional[MonitoringSession]:
        async with self._lock:
            for user_id in [u for u, s in self.active_sessions.items() if s == exam_session_id]:
                del self.active_sessions[user_id]

        monitor = await self._active_monitor(db, exam_session_id)
        if monitor is None:
            return None
        monitor.active = False
        monitor.ended_at = datetime.utcnow()
        await db.commit()
        logger.info(f"Monitoring stopped for session {exam_session_id}")
        return monitor

    async def take_screenshot(
        self,
        db: AsyncSession,
        exam_session_id: int,
        active_window: Optional[str] = None,
        captured_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        monitor = await self._active_monitor(db, exam_session_id)
        if monitor is None:
            raise InvalidStateError("Session is not being monitored")
        shot = MonitoringScreenshot(
            monitoring_id=monitor.id,
            captured_at=captured_at or datetime.utcnow(),
            active_window=active_window,
        )
        db.add(shot)
        await db.commit()
        return {
            "id": shot.id,
            "monitoring_id": monitor.id,
            "captured_at": shot.captured_at.isoformat(),
            "active_window": shot.active_window,
        }

    async def analyze_session(self, db: AsyncSession, exam_session_id: int) -> Dict[str, Any]:
        result = await db.execute(
            select(MonitoringSession)
            .where(MonitoringSession.exam_session_id == exam_session_id)
            .order_by(desc(MonitoringSession.id))
        )
        monitor = result.scalars().first()
        if monitor is None:
            raise NotFoundError("Monitoring session for exam session", exam_session_id)

        shots = await db.execute(
            select(MonitoringScreenshot)
            .where(MonitoringScreenshot.monitoring_id == monitor.id)
            .order_by(MonitoringScreenshot.captured_at)
        )
        screenshots: List[Screenshot] = [
            Screenshot(captured_at=s.captured_at, active_window=s.active_window) for s in shots.scalars().all()
        ]
        analysis = self.analyzer.analyze(screenshots)
        monitor.analysis = analysis
        monitor.suspicious = bool(analysis.get("suspicious"))
        await db.commit()
        if monitor.suspicious:
            logger.warning(f"Suspicious activity detected in exam session {exam_session_id}")
        data = monitor.to_dict()
        data["multiple_sessions"] = await self.detect_multiple_sessions(monitor.user_id)
        if data["multiple_sessions"]:
            logger.warning(f"Exam session {exam_session_id} is monitored for more than one user")
        return data

    async def detect_multiple_sessions(self, user_id: int) -> bool:
        """True if another user is monitored on the same exam session as user_id."""
        async with self._lock:
            session_id = self.active_sessions.get(user_id)
            if session_id is None:
                return False
            return any(u != user_id and s == session_id for u, s in self.active_sessions.items())
