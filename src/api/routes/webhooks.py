"""Webhook routes for inbound platform events."""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from api.deps import get_db, get_funnel_engine
from core.logging_config import get_logger
from scheduler.runner import FunnelEngine
from services.user_join import handle_user_joined

router = APIRouter()
LOGGER = get_logger(__name__)


class UserJoinedEvent(BaseModel):
    """A user joined an experience and should enter its DM funnel."""
    user_id: str = Field(..., min_length=1)
    experience_id: str = Field(..., min_length=1)
    funnel_id: Optional[int] = None


@router.post("/user-joined")
def user_joined_webhook(
    event: UserJoinedEvent,
    db: Session = Depends(get_db),
    engine: FunnelEngine = Depends(get_funnel_engine),
) -> Dict[str, Any]:
    """
    Start a DM funnel conversation for a newly joined user.

    Sends the welcome message and starts monitoring. Repeated events for a
    user who already has an active conversation change nothing.
    """
    LOGGER.info(
        "User joined",
        extra={"extra_data": {"user_id": event.user_id, "experience_id": event.experience_id}},
    )
    result = handle_user_joined(
        db,
        engine.provider,
        external_user_id=event.user_id,
        experience_id=event.experience_id,
        funnel_id=event.funnel_id,
        registry=engine.registry,
        events=engine.events,
    )
    return result.to_dict()
