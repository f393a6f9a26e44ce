"""Scheduler module: per-conversation pollers and periodic sweeps."""
from __future__ import annotations

from .jobs import run_nudge_job, run_timeout_sweep
from .poller import ConversationPoller, PollerState, PollerStatus
from .registry import MonitoringRegistry
from .runner import (
    FunnelEngine,
    build_engine,
    get_engine,
    run_scheduler_blocking,
    start_engine,
    stop_engine,
)
from .tick_scheduler import (
    APSchedulerTickScheduler,
    ManualClock,
    ManualTickScheduler,
    TickScheduler,
)

__all__ = [
    "run_nudge_job",
    "run_timeout_sweep",
    "ConversationPoller",
    "PollerState",
    "PollerStatus",
    "MonitoringRegistry",
    "FunnelEngine",
    "build_engine",
    "get_engine",
    "run_scheduler_blocking",
    "start_engine",
    "stop_engine",
    "APSchedulerTickScheduler",
    "ManualClock",
    "ManualTickScheduler",
    "TickScheduler",
]
