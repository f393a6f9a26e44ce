"""FastAPI application: engine lifespan, error mapping and routers."""
from __future__ import annotations

import os
import sys

# Add src/ to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, Optional, Tuple, Type

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import get_settings
from core.exceptions import (
    ConfigurationError,
    ConversationConflictError,
    ConversationNotFoundError,
    FunnelEngineError,
    FunnelNotFoundError,
    HandoffError,
    MessagingProviderError,
    ProviderUnavailableError,
    RateLimitError,
    ScriptError,
)
from core.logging_config import get_logger, setup_logging
from api.routes import chat, conversations, health, monitoring, webhooks
from scheduler.runner import FunnelEngine, start_engine, stop_engine

LOGGER = get_logger(__name__)
SETTINGS = get_settings()

# Resolved along the exception's MRO, so a subclass entry wins over its base
ERROR_RESPONSES: Dict[Type[FunnelEngineError], Tuple[int, str]] = {
    ConversationNotFoundError: (404, "conversation_not_found"),
    FunnelNotFoundError: (404, "funnel_not_found"),
    ConversationConflictError: (409, "conflict"),
    ScriptError: (422, "script_error"),
    HandoffError: (422, "handoff_error"),
    RateLimitError: (429, "rate_limit_exceeded"),
    ProviderUnavailableError: (503, "provider_unavailable"),
    MessagingProviderError: (502, "provider_error"),
    ConfigurationError: (500, "configuration_error"),
    FunnelEngineError: (500, "application_error"),
}


def _prepare_database() -> None:
    """Create missing tables on startup; a broken database is logged, not fatal."""
    from core.db import init_db, validate_database

    db_status = validate_database()
    if db_status["status"] == "error":
        LOGGER.error(
            "Database unavailable, API starting without it",
            extra={"extra_data": {"errors": db_status["errors"]}},
        )
        return
    if db_status["status"] == "missing_tables":
        created = init_db()["tables_created"]
        LOGGER.info("Created missing tables", extra={"extra_data": {"created": created}})


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Start the engine (pollers, timeout sweep, nudges) unless one was injected.

    An injected engine belongs to the caller and is left running on shutdown.
    """
    setup_logging(level=SETTINGS.log_level, json_format=SETTINGS.log_format == "json")

    if SETTINGS.dry_run:
        LOGGER.info("DRY_RUN enabled: DMs and alerts are logged, not sent")
    else:
        LOGGER.warning("LIVE MODE: DMs will be sent to real users")

    owns_engine = getattr(app.state, "engine", None) is None
    if owns_engine:
        _prepare_database()
        app.state.engine = start_engine()

    LOGGER.info(
        "API started",
        extra={"extra_data": {
            "environment": SETTINGS.environment,
            "services": SETTINGS.get_enabled_services(),
            "owns_engine": owns_engine,
        }},
    )

    yield

    if owns_engine:
        stop_engine()
        app.state.engine = None
    LOGGER.info("API stopped")


async def _handle_engine_error(request: Request, exc: FunnelEngineError) -> JSONResponse:
    status_code, error = next(
        ERROR_RESPONSES[cls] for cls in type(exc).__mro__ if cls in ERROR_RESPONSES
    )
    log = LOGGER.error if status_code >= 500 else LOGGER.warning
    log(
        f"{error}: {exc}",
        exc_info=status_code == 500,
        extra={"extra_data": {"path": request.url.path, "status": status_code}},
    )

    # Internal configuration details stay in the log
    message = "Service misconfiguration" if isinstance(exc, ConfigurationError) else str(exc)
    response = JSONResponse(status_code=status_code, content={"error": error, "message": message})
    retry_after = getattr(exc, "retry_after", None)
    if retry_after:
        response.headers["Retry-After"] = str(int(retry_after))
    return response


def create_app(engine: Optional[FunnelEngine] = None) -> FastAPI:
    """
    Build the API.

    Args:
        engine: Engine to serve; the lifespan starts the process engine when omitted.
    """
    application = FastAPI(
        title="DM Funnel Engine",
        description="Scripted DM funnel conversations with polling, escalation and handoff",
        version="1.0.0",
        lifespan=lifespan,
    )
    application.state.engine = engine

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for exc_class in ERROR_RESPONSES:
        application.add_exception_handler(exc_class, _handle_engine_error)

    application.include_router(health.router, prefix="/health", tags=["Health"])
    application.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
    application.include_router(conversations.router, prefix="/conversations", tags=["Conversations"])
    application.include_router(monitoring.router, prefix="/monitoring", tags=["Monitoring"])
    application.include_router(chat.router, tags=["Chat"])

    return application


app = create_app()
