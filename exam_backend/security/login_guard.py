"""
exam_backend/security/login_guard.py
Process-wide credential abuse state

LoginAttemptTracker counts failed authentications per email. Once an email
reaches the threshold, every further attempt is refused until the lockout
window has passed since the last failure; the counter then starts over.

TokenBlocklist remembers access tokens revoked by logout until they expire.

One instance of each lives on app.state. Both are guarded by a threading.Lock
so they stay consistent under threaded servers as well as the event loop.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from exam_backend import config
from exam_backend.errors import RateLimitError, ErrorCode

logger = logging.getLogger(__name__)

LOCKOUT_MESSAGE = "Account locked. Please wait {minutes} minutes or contact support"


@dataclass
class _Attempts:
    count: int
    last_failure: float


class LoginAttemptTracker:
    def __init__(
        self,
        max_attempts: int = config.MAX_LOGIN_ATTEMPTS,
        lockout_seconds: float = config.LOCKOUT_MINUTES * 60,
        support_contact: str = config.SUPPORT_CONTACT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self.support_contact = support_contact
        self._clock = clock
        self._attempts: Dict[str, _Attempts] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(email: str) -> str:
        return email.strip().lower()

    def failures(self, email: str) -> int:
        with self._lock:
            entry = self._attempts.get(self._key(email))
            return entry.count if entry else 0

    def check(self, email: str) -> None:
        """Raise RateLimitError if the email is locked out."""
        key = self._key(email)
        with self._lock:
            entry = self._attempts.get(key)
            if entry is None or entry.count < self.max_attempts:
                return
            elapsed = self._clock() - entry.last_failure
            if elapsed >= self.lockout_seconds:
                del self._attempts[key]
                logger.info(f"Lockout expired for {key}")
                return
            retry_after = int(self.lockout_seconds - elapsed) + 1

        logger.warning(f"Login refused for locked account {key}")
        minutes = max(1, int(round(self.lockout_seconds / 60)))
        raise RateLimitError(
            message=LOCKOUT_MESSAGE.format(minutes=minutes),
            retry_after=retry_after,
            code=ErrorCode.ACCOUNT_LOCKED,
            details={"support": self.support_contact},
        )

    def record_failure(self, email: str) -> int:
        key = self._key(email)
        with self._lock:
            now = self._clock()
            entry = self._attempts.get(key)
            if entry is not None and now - entry.last_failure >= self.lockout_seconds:
                entry = None
            if entry is None:
                entry = _Attempts(count=0, last_failure=now)
                self._attempts[key] = entry
            entry.count += 1
            entry.last_failure = now
            count = entry.count
        if count >= self.max_attempts:
            logger.warning(f"Account {key} locked after {count} failed attempts")
        return count

    def reset(self, email: str) -> None:
        with self._lock:
            self._attempts.pop(self._key(email), None)


class TokenBlocklist:
    """Revoked token ids (jti) mapped to their expiry timestamp."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._blocked: Dict[str, float] = {}
        self._lock = threading.Lock()

    def block(self, jti: str, expires_at: Optional[float] = None) -> None:
        with self._lock:
            now = self._clock()
            self._blocked = {k: exp for k, exp in self._blocked.items() if exp > now}
            self._blocked[jti] = expires_at if expires_at is not None else float("inf")

    def is_blocked(self, jti: Optional[str]) -> bool:
        if not jti:
            return False
        with self._lock:
            return jti in self._blocked
