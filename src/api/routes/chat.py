"""Private chat routes: resolve a handoff link to its internal conversation."""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from api.deps import get_readonly_db
from core.models import ConversationType
from domain.phase import classify_phase
from services.conversation_store import ConversationStore
from services.navigator import script_for

router = APIRouter()


def _chat_view(store: ConversationStore, conversation_id: str) -> Dict[str, Any]:
    conversation = store.require(conversation_id)
    if conversation.conversation_type != ConversationType.INTERNAL.value:
        raise HTTPException(status_code=404, detail="Not a private chat conversation")

    messages = store.list_messages(conversation_id)
    return {
        "conversation": conversation.to_dict(),
        "phase": classify_phase(conversation.current_block_id, script_for(conversation)).value,
        "history": [m.to_dict() for m in messages if (m.message_metadata or {}).get("dm_history")],
        "messages": [m.to_dict() for m in messages],
    }


@router.get("/chat/{conversation_id}")
def get_chat(conversation_id: str, db: Session = Depends(get_readonly_db)) -> Dict[str, Any]:
    """The internal conversation behind a handoff link, with its ordered history."""
    return _chat_view(ConversationStore(db), conversation_id)


@router.get("/experiences/{experience_id}/chat/{conversation_id}")
def get_experience_chat(
    experience_id: str,
    conversation_id: str,
    db: Session = Depends(get_readonly_db),
) -> Dict[str, Any]:
    """Resolve the full handoff link form."""
    store = ConversationStore(db)
    view = _chat_view(store, conversation_id)
    if view["conversation"]["experience_id"] != experience_id:
        raise HTTPException(status_code=404, detail="Conversation not found in this experience")
    return view
