"""Engine wiring and the standalone scheduler process.

``build_engine`` assembles the long-lived objects of one process (provider,
notifier, tick scheduler, monitoring registry, timeout service) around a
single APScheduler ``BackgroundScheduler``, which also hosts the timeout
sweep and nudge jobs.
"""
from __future__ import annotations

import signal
import sys
import time
from dataclasses import dataclass
from typing import Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.config import Settings, get_settings
from core.db import get_session_factory
from core.events import EventEmitter
from core.logging_config import get_logger, setup_logging
from core.utils import Clock, utcnow
from messaging.dm_client import get_dm_client
from messaging.provider import MessagingProvider
from scheduler.jobs import run_nudge_job, run_timeout_sweep
from scheduler.registry import MonitoringRegistry
from scheduler.tick_scheduler import APSchedulerTickScheduler, TickScheduler
from services.notification import NotificationService
from services.timeouts import SessionFactory, TimeoutService

LOGGER = get_logger(__name__)
SETTINGS = get_settings()

POLLER_THREADS = 20

# Global engine instance
_engine: Optional["FunnelEngine"] = None


@dataclass
class FunnelEngine:
    """Everything a running process needs to drive conversations."""

    settings: Settings
    session_factory: SessionFactory
    provider: MessagingProvider
    events: EventEmitter
    notifier: NotificationService
    ticks: TickScheduler
    registry: MonitoringRegistry
    timeouts: TimeoutService
    scheduler: Optional[BackgroundScheduler] = None

    def shutdown(self) -> None:
        self.registry.stop_all()
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=True)
        self.ticks.shutdown()
        self.notifier.shutdown()
        self.provider.close()


def build_engine(
    settings: Optional[Settings] = None,
    session_factory: Optional[SessionFactory] = None,
    provider: Optional[MessagingProvider] = None,
    ticks: Optional[TickScheduler] = None,
    events: Optional[EventEmitter] = None,
    notifier: Optional[NotificationService] = None,
    clock: Clock = utcnow,
) -> FunnelEngine:
    """
    Assemble an engine; any collaborator may be injected.

    When no tick scheduler is given, a ``BackgroundScheduler`` is created and
    started for poller ticks and reused for the periodic jobs.
    """
    settings = settings or SETTINGS
    session_factory = session_factory or get_session_factory()
    provider = provider or get_dm_client()
    events = events or EventEmitter()
    notifier = notifier or NotificationService(settings=settings, events=events)

    scheduler = None
    if ticks is None:
        scheduler = BackgroundScheduler(executors={"default": ThreadPoolExecutor(POLLER_THREADS)})
        ticks = APSchedulerTickScheduler(scheduler, clock=clock)

    registry = MonitoringRegistry(
        session_factory,
        provider,
        ticks,
        events=events,
        notifier=notifier,
        clock=clock,
        settings=settings,
    )
    timeouts = TimeoutService(session_factory, provider, events, clock=clock, settings=settings)

    return FunnelEngine(
        settings=settings,
        session_factory=session_factory,
        provider=provider,
        events=events,
        notifier=notifier,
        ticks=ticks,
        registry=registry,
        timeouts=timeouts,
        scheduler=scheduler,
    )


def add_periodic_jobs(engine: FunnelEngine) -> None:
    """Register the timeout sweep and nudge jobs on the engine's scheduler."""
    if engine.scheduler is None:
        LOGGER.warning("Engine has no background scheduler, periodic jobs not registered")
        return

    engine.scheduler.add_job(
        run_timeout_sweep,
        IntervalTrigger(minutes=engine.settings.timeout_sweep_interval_minutes),
        kwargs={"timeouts": engine.timeouts},
        id="timeout_sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        name="Conversation Timeout Sweep",
    )
    engine.scheduler.add_job(
        run_nudge_job,
        IntervalTrigger(minutes=engine.settings.nudge_sweep_interval_minutes),
        kwargs={"timeouts": engine.timeouts},
        id="nudges",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        name="Reminder Nudges",
    )


def start_engine(engine: Optional[FunnelEngine] = None, restore: Optional[bool] = None) -> FunnelEngine:
    """
    Start the process-wide engine with its periodic jobs.

    Args:
        engine: Engine to start; built from settings when omitted.
        restore: Restart pollers for active conversations. Defaults to
            RESTORE_ON_STARTUP.

    Returns:
        The running engine.
    """
    global _engine

    if _engine is not None:
        LOGGER.warning("Engine is already running")
        return _engine

    _engine = engine or build_engine()
    add_periodic_jobs(_engine)

    if restore is None:
        restore = _engine.settings.restore_on_startup
    if restore:
        _engine.registry.restore()

    job_count = len(_engine.scheduler.get_jobs()) if _engine.scheduler is not None else 0
    LOGGER.info("Engine started with %d scheduled jobs.", job_count)
    return _engine


def get_engine() -> Optional[FunnelEngine]:
    return _engine


def stop_engine() -> None:
    """Stop all pollers and the scheduler gracefully."""
    global _engine

    if _engine is not None:
        LOGGER.info("Stopping engine...")
        _engine.shutdown()
        _engine = None
        LOGGER.info("Engine stopped.")
    else:
        LOGGER.warning("Engine is not running")


def _signal_handler(signum: int, frame: object) -> None:
    """Handle shutdown signals."""
    LOGGER.info("Received signal %d, shutting down...", signum)
    stop_engine()
    sys.exit(0)


def run_scheduler_blocking() -> None:
    """
    Start the engine and block until interrupted.

    This is the main entry point for running pollers and sweeps as a standalone process.
    """
    setup_logging(level=SETTINGS.log_level, json_format=SETTINGS.log_format == "json")

    # Register signal handlers for graceful shutdown
    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    LOGGER.info("Starting DM Funnel Engine scheduler...")
    LOGGER.info("Environment: %s, Dry Run: %s", SETTINGS.environment, SETTINGS.dry_run)

    start_engine()

    try:
        # Keep main thread alive
        while True:
            time.sleep(60)
    except (KeyboardInterrupt, SystemExit):
        stop_engine()
        LOGGER.info("Scheduler shutdown complete.")


if __name__ == "__main__":
    run_scheduler_blocking()
