"""Scheduled job definitions for the DM funnel engine."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from core.config import get_settings
from core.db import get_session_factory
from core.events import EventEmitter
from core.logging_config import get_logger
from messaging.dm_client import get_dm_client
from services.timeouts import TimeoutService

LOGGER = get_logger(__name__)
SETTINGS = get_settings()


def _job_id(job_type: str) -> str:
    return f"{job_type}_{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}"


def _default_timeouts() -> TimeoutService:
    return TimeoutService(get_session_factory(), get_dm_client(), EventEmitter(), settings=SETTINGS)


def run_timeout_sweep(timeouts: Optional[TimeoutService] = None) -> Dict[str, Any]:
    """
    Abandon every active conversation past the inactivity ceiling.

    Runs whether or not a poller is alive for the conversation.

    Args:
        timeouts: Service to run with; built from settings when omitted.

    Returns:
        Sweep result summary.
    """
    job_id = _job_id("timeout_sweep")
    LOGGER.info("[%s] Starting timeout sweep", job_id)

    try:
        result = (timeouts or _default_timeouts()).sweep()
        LOGGER.info(
            "[%s] Timeout sweep complete: checked=%d, abandoned=%d",
            job_id,
            result.checked,
            len(result.affected),
        )
        return {
            "job_id": job_id,
            "job_type": "timeout_sweep",
            "success": not result.errors,
            "result": result.to_dict(),
        }
    except Exception as e:
        LOGGER.exception("[%s] Timeout sweep failed: %s", job_id, e)
        return {
            "job_id": job_id,
            "job_type": "timeout_sweep",
            "success": False,
            "error": str(e),
        }


def run_nudge_job(timeouts: Optional[TimeoutService] = None) -> Dict[str, Any]:
    """
    Send due reminder nudges.

    Args:
        timeouts: Service to run with; built from settings when omitted.

    Returns:
        Nudge result summary.
    """
    job_id = _job_id("nudges")
    LOGGER.debug("[%s] Starting nudge job", job_id)

    try:
        result = (timeouts or _default_timeouts()).send_due_nudges()
        if result.affected:
            LOGGER.info("[%s] Nudges sent: %d", job_id, len(result.affected))
        return {
            "job_id": job_id,
            "job_type": "nudges",
            "success": not result.errors,
            "result": result.to_dict(),
        }
    except Exception as e:
        LOGGER.exception("[%s] Nudge job failed: %s", job_id, e)
        return {
            "job_id": job_id,
            "job_type": "nudges",
            "success": False,
            "error": str(e),
        }


__all__ = ["run_timeout_sweep", "run_nudge_job"]
