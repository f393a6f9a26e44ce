"""
Conversations API - status, progress and monitoring control.

Every conversation started by a user-joined event is listed here, along with
the internal conversations created by handoffs.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from api.deps import get_db, get_funnel_engine, get_readonly_db, get_registry
from core.exceptions import FunnelEngineError
from core.logging_config import get_logger
from domain.phase import classify_phase
from scheduler.registry import MonitoringRegistry
from scheduler.runner import FunnelEngine
from services.conversation_store import ConversationStore
from services.handoff import HandoffOrchestrator
from services.navigator import script_for

router = APIRouter()
LOGGER = get_logger(__name__)


@router.get("")
def list_conversations(
    status: Optional[str] = Query(None, description="active, completed, abandoned or archived"),
    conversation_type: Optional[str] = Query(None, alias="type", description="external or internal"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_readonly_db),
) -> Dict[str, Any]:
    """List conversations, newest first."""
    conversations = ConversationStore(db).list_conversations(
        status=status, conversation_type=conversation_type, limit=limit, offset=offset
    )
    return {
        "conversations": [c.to_dict() for c in conversations],
        "count": len(conversations),
        "limit": limit,
        "offset": offset,
    }


@router.get("/{conversation_id}")
def get_conversation(
    conversation_id: str,
    db: Session = Depends(get_readonly_db),
    registry: MonitoringRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    """Status and progress of one conversation."""
    store = ConversationStore(db)
    conversation = store.require(conversation_id)
    monitoring = registry.status(conversation_id)

    data = conversation.to_dict()
    data["phase"] = classify_phase(conversation.current_block_id, script_for(conversation)).value
    data["message_count"] = len(conversation.messages)
    data["interactions"] = [
        {
            "block_id": i.block_id,
            "option_text": i.option_text,
            "next_block_id": i.next_block_id,
            "created_at": i.created_at.isoformat() if i.created_at else None,
        }
        for i in store.list_interactions(conversation_id)
    ]
    data["monitoring"] = monitoring.to_dict() if monitoring else None
    return data


@router.get("/{conversation_id}/messages")
def get_conversation_messages(
    conversation_id: str,
    db: Session = Depends(get_readonly_db),
) -> Dict[str, Any]:
    """Every message of a conversation in order."""
    store = ConversationStore(db)
    store.require(conversation_id)
    messages = store.list_messages(conversation_id)
    return {
        "conversation_id": conversation_id,
        "messages": [m.to_dict() for m in messages],
        "count": len(messages),
    }


@router.post("/{conversation_id}/monitoring/start")
def start_monitoring(
    conversation_id: str,
    db: Session = Depends(get_readonly_db),
    registry: MonitoringRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    """Start polling a conversation; a no-op if already running."""
    ConversationStore(db).require(conversation_id)
    started = registry.start(conversation_id)
    status = registry.status(conversation_id)
    return {
        "conversation_id": conversation_id,
        "started": started,
        "monitoring": status.to_dict() if status else None,
    }


@router.post("/{conversation_id}/monitoring/stop")
def stop_monitoring(
    conversation_id: str,
    registry: MonitoringRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    """Stop polling a conversation after its in-flight tick."""
    stopped = registry.stop(conversation_id)
    status = registry.status(conversation_id)
    return {
        "conversation_id": conversation_id,
        "stopped": stopped,
        "monitoring": status.to_dict() if status else None,
    }


@router.post("/{conversation_id}/handoff")
def retry_handoff(
    conversation_id: str,
    db: Session = Depends(get_db),
    engine: FunnelEngine = Depends(get_funnel_engine),
) -> Dict[str, Any]:
    """
    Run (or re-run) the handoff of a conversation waiting at TRANSITION.

    The conversation's poller is stopped first so it cannot start a handoff
    of its own; it is restarted if the handoff fails.
    """
    was_monitored = engine.registry.stop(conversation_id)
    try:
        result = HandoffOrchestrator(
            db, engine.provider, events=engine.events, settings=engine.settings
        ).run(conversation_id)
    except FunnelEngineError:
        if was_monitored:
            engine.registry.start(conversation_id)
        raise
    return result.to_dict()
