"""Health check routes with dependency verification."""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.orm import Session

from api.deps import get_readonly_db
from core.config import get_settings
from core.logging_config import get_logger
from core.utils import utcnow

router = APIRouter()
LOGGER = get_logger(__name__)
SETTINGS = get_settings()


@router.get("/")
async def health_check() -> Dict[str, Any]:
    """Basic health check - always returns OK."""
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "dry_run": SETTINGS.dry_run,
        "environment": SETTINGS.environment,
    }


@router.get("/detailed")
def detailed_health_check(
    request: Request,
    db: Session = Depends(get_readonly_db),
) -> Dict[str, Any]:
    """Detailed health check including database, provider and pollers."""
    status = "healthy"
    checks: Dict[str, Any] = {}

    # Database check
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = {"status": "healthy", "connected": True}
    except Exception as e:
        LOGGER.error(f"Database health check failed: {e}")
        status = "unhealthy"
        checks["database"] = {"status": "unhealthy", "error": str(e)}

    checks["dm_provider"] = {
        "configured": SETTINGS.is_provider_configured(),
        "dry_run": SETTINGS.dry_run,
    }
    checks["alerts"] = {
        "slack": SETTINGS.is_slack_enabled(),
        "sms": SETTINGS.is_twilio_enabled(),
    }

    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        status = "degraded" if status == "healthy" else status
        checks["engine"] = {"status": "stopped"}
    else:
        checks["engine"] = {"status": "running", "pollers": len(engine.registry.list())}

    return {
        "status": status,
        "timestamp": utcnow().isoformat(),
        "checks": checks,
        "enabled_services": SETTINGS.get_enabled_services(),
    }
