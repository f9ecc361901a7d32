"""
Per-username throttling of failed logins.

One tracker is built in create_app() and shared through
app.extensions["login_attempts"]. State is process-local and is lost on restart.
"""
from __future__ import annotations

import math
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass
class LoginAttemptRecord:
    count: int
    last_attempt: datetime


@dataclass(frozen=True)
class LimitCheck:
    allowed: bool
    retry_after_minutes: int | None = None


class LoginAttemptTracker:
    """
    Sliding-window lockout: every failure, including one made while already
    locked out, moves the lockout expiry forward.
    """

    def __init__(
        self,
        max_failed_attempts: int = 5,
        lockout_duration: timedelta = timedelta(minutes=15),
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        if max_failed_attempts < 1:
            raise ValueError("max_failed_attempts must be at least 1")
        if lockout_duration <= timedelta(0):
            raise ValueError("lockout_duration must be positive")
        self.max_failed_attempts = max_failed_attempts
        self.lockout_duration = lockout_duration
        self._clock = clock
        self._records: dict[str, LoginAttemptRecord] = {}
        self._lock = threading.Lock()

    def check_limits(self, username: str) -> LimitCheck:
        now = self._clock()
        with self._lock:
            record = self._records.get(username)
            if record is None:
                return LimitCheck(allowed=True)

            elapsed = now - record.last_attempt
            if elapsed > self.lockout_duration:
                del self._records[username]
                return LimitCheck(allowed=True)

            if record.count >= self.max_failed_attempts:
                remaining = self.lockout_duration - elapsed
                return LimitCheck(
                    allowed=False,
                    retry_after_minutes=math.ceil(remaining.total_seconds() / 60),
                )
            return LimitCheck(allowed=True)

    def record_failure(self, username: str) -> None:
        now = self._clock()
        with self._lock:
            record = self._records.get(username)
            if record is None or now - record.last_attempt > self.lockout_duration:
                self._records[username] = LoginAttemptRecord(count=1, last_attempt=now)
            else:
                record.count += 1
                record.last_attempt = now

    def clear_failures(self, username: str) -> None:
        with self._lock:
            self._records.pop(username, None)

    def failure_count(self, username: str) -> int:
        with self._lock:
            record = self._records.get(username)
            return record.count if record else 0
