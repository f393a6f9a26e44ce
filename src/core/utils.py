"""Time, id and call-guard helpers shared by services and pollers."""
from __future__ import annotations

import threading
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Deque, Optional

from core.logging_config import get_logger

LOGGER = get_logger(__name__)

# Anything returning an aware "now"; pollers and sweeps take one so tests can
# move time without sleeping.
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Aware UTC now; the default Clock."""
    return datetime.now(timezone.utc)


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (SQLite reads them back that way) as UTC."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def generate_conversation_id() -> str:
    return uuid.uuid4().hex


class CircuitBreaker:
    """
    Stops hammering an alert channel that keeps failing.

    ``closed`` lets calls through. ``failure_threshold`` failures in a row
    open it; after ``recovery_timeout`` seconds it goes ``half_open`` and
    lets ``half_open_max_calls`` trial calls through. A trial success closes it,
    a trial failure opens it again.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        half_open_max_calls: int = 1,
        clock: Clock = utcnow,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock
        self._lock = threading.Lock()

        self.state = self.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.half_open_calls = 0

    def _transition(self, state: str, why: str) -> None:
        log = LOGGER.warning if state == self.OPEN else LOGGER.info
        log(f"Circuit {self.name}: {self.state} -> {state} ({why})")
        self.state = state

    def can_execute(self) -> bool:
        with self._lock:
            if self.state == self.CLOSED:
                return True
            if self.state == self.HALF_OPEN:
                return self.half_open_calls < self.half_open_max_calls

            cooled_down = (
                self.last_failure_time is not None
                and (self._clock() - self.last_failure_time).total_seconds() >= self.recovery_timeout
            )
            if cooled_down:
                self._transition(self.HALF_OPEN, "recovery timeout elapsed")
                self.half_open_calls = 0
            return cooled_down

    def record_success(self) -> None:
        with self._lock:
            if self.state == self.HALF_OPEN:
                self.half_open_calls += 1
                if self.half_open_calls >= self.half_open_max_calls:
                    self._transition(self.CLOSED, "trial call succeeded")
            self.failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = self._clock()
            if self.state == self.HALF_OPEN:
                self._transition(self.OPEN, "trial call failed")
            elif self.state == self.CLOSED and self.failure_count >= self.failure_threshold:
                self._transition(self.OPEN, f"{self.failure_count} failures")


class RateLimiter:
    """At most ``max_calls`` per sliding ``period_seconds`` window."""

    def __init__(self, max_calls: int, period_seconds: int, clock: Clock = utcnow):
        self.max_calls = max_calls
        self.period_seconds = period_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self.calls: Deque[datetime] = deque()

    def _prune(self) -> None:
        now = self._clock()
        while self.calls and (now - self.calls[0]).total_seconds() >= self.period_seconds:
            self.calls.popleft()

    def can_proceed(self) -> bool:
        with self._lock:
            self._prune()
            return len(self.calls) < self.max_calls

    def record_call(self) -> None:
        with self._lock:
            self.calls.append(self._clock())


__all__ = [
    "Clock",
    "utcnow",
    "ensure_aware",
    "generate_conversation_id",
    "CircuitBreaker",
    "RateLimiter",
]
