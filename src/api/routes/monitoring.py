"""Monitoring routes: poller registry status and manual sweeps."""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from api.deps import get_funnel_engine, get_registry
from core.logging_config import get_logger
from scheduler.jobs import run_nudge_job, run_timeout_sweep
from scheduler.registry import MonitoringRegistry
from scheduler.runner import FunnelEngine

router = APIRouter()
LOGGER = get_logger(__name__)


@router.get("")
def monitoring_status(registry: MonitoringRegistry = Depends(get_registry)) -> Dict[str, Any]:
    """Every running poller with its state, last tick and failures."""
    return registry.summary()


@router.post("/restore")
def restore_monitoring(registry: MonitoringRegistry = Depends(get_registry)) -> Dict[str, Any]:
    """Start pollers for all active external conversations not yet monitored."""
    started = registry.restore()
    return {"started": started, "count": len(started)}


@router.post("/sweep")
def sweep_timeouts(engine: FunnelEngine = Depends(get_funnel_engine)) -> Dict[str, Any]:
    """Run the inactivity timeout sweep now."""
    return run_timeout_sweep(engine.timeouts)


@router.post("/nudges")
def send_nudges(engine: FunnelEngine = Depends(get_funnel_engine)) -> Dict[str, Any]:
    """Send due reminder nudges now."""
    return run_nudge_job(engine.timeouts)
