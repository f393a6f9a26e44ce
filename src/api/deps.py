"""Dependencies for FastAPI routes: database sessions and the running engine."""
from __future__ import annotations

from typing import Generator

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from core.db import SessionLocal
from scheduler.registry import MonitoringRegistry
from scheduler.runner import FunnelEngine


def get_db(request: Request) -> Generator[Session, None, None]:
    """
    FastAPI dependency that provides a database session.

    Uses the engine's session factory when one is attached to the app, so
    routes and pollers share a database.

    Yields:
        SQLAlchemy Session instance.
    """
    engine = getattr(request.app.state, "engine", None)
    if engine is not None:
        with engine.session_factory() as db:
            yield db
        return

    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_readonly_db(request: Request) -> Generator[Session, None, None]:
    """
    FastAPI dependency that provides a read-only database session.

    Yields:
        SQLAlchemy Session instance (read-only mode).
    """
    engine = getattr(request.app.state, "engine", None)
    if engine is not None:
        with engine.session_factory() as db:
            try:
                yield db
            finally:
                db.rollback()
        return

    db = SessionLocal()
    try:
        yield db
    finally:
        db.rollback()
        db.close()


def get_funnel_engine(request: Request) -> FunnelEngine:
    """The engine started by the app lifespan (or injected by tests)."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine is not running")
    return engine


def get_registry(engine: FunnelEngine = Depends(get_funnel_engine)) -> MonitoringRegistry:
    return engine.registry


__all__ = ["get_db", "get_readonly_db", "get_funnel_engine", "get_registry"]
