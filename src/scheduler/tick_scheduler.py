"""Tick scheduling for pollers.

Pollers never sleep on their own thread; each tick schedules the next one as a
one-shot job keyed by conversation. Production runs the jobs on an APScheduler
``BackgroundScheduler``; tests drive a ``ManualTickScheduler`` against a
``ManualClock``.
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

from core.logging_config import get_logger
from core.utils import Clock, utcnow

LOGGER = get_logger(__name__)

TickFunc = Callable[[], None]


class TickScheduler(ABC):
    """Runs one-shot callbacks after a delay, at most one pending per key."""

    @abstractmethod
    def schedule(self, key: str, delay_seconds: float, func: TickFunc) -> None:
        """Run ``func`` after ``delay_seconds``, replacing any pending run for ``key``."""

    @abstractmethod
    def cancel(self, key: str) -> None:
        """Drop the pending run for ``key``, if any."""

    @abstractmethod
    def is_scheduled(self, key: str) -> bool:
        ...

    def shutdown(self) -> None:
        return None


class APSchedulerTickScheduler(TickScheduler):
    """
    Tick scheduler on an APScheduler ``BackgroundScheduler``.

    Each key maps to a date-triggered job ``poller:<key>``. ``max_instances=1``
    and ``coalesce`` keep a late job from running twice.
    """

    JOB_PREFIX = "poller:"

    def __init__(self, scheduler: Optional[BackgroundScheduler] = None, clock: Clock = utcnow):
        self._owns_scheduler = scheduler is None
        self.scheduler = scheduler or BackgroundScheduler()
        self.clock = clock
        if not self.scheduler.running:
            self.scheduler.start()

    def _job_id(self, key: str) -> str:
        return f"{self.JOB_PREFIX}{key}"

    def schedule(self, key: str, delay_seconds: float, func: TickFunc) -> None:
        run_date = self.clock() + timedelta(seconds=max(delay_seconds, 0))
        self.scheduler.add_job(
            func,
            trigger="date",
            run_date=run_date,
            id=self._job_id(key),
            name=f"Poll {key}",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
        )

    def cancel(self, key: str) -> None:
        try:
            self.scheduler.remove_job(self._job_id(key))
        except JobLookupError:
            pass

    def is_scheduled(self, key: str) -> bool:
        return self.scheduler.get_job(self._job_id(key)) is not None

    def shutdown(self) -> None:
        if self._owns_scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=True)


class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or utcnow()
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float = 0, minutes: float = 0, hours: float = 0) -> datetime:
        with self._lock:
            self._now += timedelta(seconds=seconds, minutes=minutes, hours=hours)
            return self._now

    def set(self, when: datetime) -> None:
        with self._lock:
            self._now = when


class ManualTickScheduler(TickScheduler):
    """
    Deterministic scheduler: nothing runs until ``run_due`` is called.

    Usage:
        clock = ManualClock()
        ticks = ManualTickScheduler(clock)
        registry.start(conversation_id)
        ticks.run_due()              # first tick
        clock.advance(seconds=5)
        ticks.run_due()              # next tick
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or utcnow
        self._jobs: Dict[str, Tuple[datetime, TickFunc]] = {}
        self._lock = threading.Lock()

    def schedule(self, key: str, delay_seconds: float, func: TickFunc) -> None:
        with self._lock:
            self._jobs[key] = (self.clock() + timedelta(seconds=max(delay_seconds, 0)), func)

    def cancel(self, key: str) -> None:
        with self._lock:
            self._jobs.pop(key, None)

    def is_scheduled(self, key: str) -> bool:
        with self._lock:
            return key in self._jobs

    def due_at(self, key: str) -> Optional[datetime]:
        with self._lock:
            job = self._jobs.get(key)
        return job[0] if job else None

    def pending(self) -> List[str]:
        with self._lock:
            return sorted(self._jobs)

    def run_due(self) -> int:
        """Run every job due by now, once each; returns how many ran."""
        now = self.clock()
        with self._lock:
            due = sorted(
                ((when, key, func) for key, (when, func) in self._jobs.items() if when <= now),
                key=lambda item: item[0],
            )
            for _, key, _ in due:
                del self._jobs[key]
        for _, _, func in due:
            func()
        return len(due)

    def run_next(self, key: str) -> bool:
        """Run ``key``'s pending job now regardless of its due time."""
        with self._lock:
            job = self._jobs.pop(key, None)
        if job is None:
            return False
        job[1]()
        return True


__all__ = [
    "TickScheduler",
    "APSchedulerTickScheduler",
    "ManualClock",
    "ManualTickScheduler",
]
