"""Conversation creation when a user joins an experience."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.events import CONVERSATION_STARTED, EventEmitter
from core.exceptions import FunnelNotFoundError, ScriptError
from core.logging_config import get_logger
from core.models import Funnel
from core.utils import Clock, utcnow
from domain.phase import classify_phase
from domain.script import FunnelScript, WELCOME_PROMPT, render_block_message
from messaging.provider import MessagingProvider
from services.conversation_store import ConversationStore
from services.outbound import deliver

LOGGER = get_logger(__name__)


@dataclass
class UserJoinResult:
    """Outcome of a user-joined event."""

    conversation_id: str
    created: bool
    block_id: Optional[str] = None
    welcome_sent: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "created": self.created,
            "block_id": self.block_id,
            "welcome_sent": self.welcome_sent,
        }


def find_deployed_funnel(
    session: Session, experience_id: str, funnel_id: Optional[int] = None
) -> Funnel:
    """
    The funnel a new conversation in ``experience_id`` is bound to.

    Raises:
        FunnelNotFoundError: If no deployed funnel matches.
    """
    if funnel_id is not None:
        funnel = session.get(Funnel, funnel_id)
        if funnel is None:
            raise FunnelNotFoundError(f"Funnel {funnel_id} not found")
        return funnel

    stmt = (
        select(Funnel)
        .where(Funnel.experience_id == experience_id, Funnel.is_deployed.is_(True))
        .order_by(Funnel.version.desc(), Funnel.id.desc())
    )
    funnel = session.execute(stmt).scalars().first()
    if funnel is None:
        raise FunnelNotFoundError(f"No deployed funnel for experience {experience_id}")
    return funnel


def handle_user_joined(
    session: Session,
    provider: Optional[MessagingProvider],
    external_user_id: str,
    experience_id: str,
    funnel_id: Optional[int] = None,
    registry: Any = None,
    events: Optional[EventEmitter] = None,
    clock: Clock = utcnow,
) -> UserJoinResult:
    """
    Start a DM funnel conversation for a newly joined user.

    Creates the conversation at the script's entry block, sends the welcome
    message, commits, then asks ``registry`` (if given) to start polling.
    A user who already has an active conversation in the experience gets
    nothing new: the existing conversation is returned with ``created=False``.

    Raises:
        FunnelNotFoundError: If the experience has no deployed funnel.
        ScriptError: If the funnel has no entry block.
        MessagingProviderError: If the welcome message cannot be sent; nothing
            is persisted then.
    """
    events = events or EventEmitter()
    store = ConversationStore(session)

    existing = store.find_active_for_user(external_user_id, experience_id)
    if existing is not None:
        LOGGER.info(
            f"User {external_user_id} already has active conversation {existing.id}, "
            "ignoring join"
        )
        return UserJoinResult(
            conversation_id=existing.id,
            created=False,
            block_id=existing.current_block_id,
        )

    funnel = find_deployed_funnel(session, experience_id, funnel_id)
    script = FunnelScript.from_funnel(funnel)
    entry = script.entry_block()
    if entry is None:
        raise ScriptError(f"Funnel {funnel.id} has no entry block")

    now = clock()
    try:
        conversation = store.create(
            external_user_id=external_user_id,
            experience_id=experience_id,
            funnel_id=funnel.id,
            current_block_id=entry.id,
            now=now,
        )
        deliver(
            store,
            provider,
            conversation,
            render_block_message(script, entry, prompt=WELCOME_PROMPT),
            now,
            metadata={"block_id": entry.id},
            events=events,
        )
        session.commit()
    except Exception:
        session.rollback()
        raise

    events.emit(
        CONVERSATION_STARTED,
        conversation_id=conversation.id,
        phase=classify_phase(entry.id, script).value,
        outcome="created",
        external_user_id=external_user_id,
        funnel_id=funnel.id,
    )

    if registry is not None:
        registry.start(conversation.id)

    return UserJoinResult(
        conversation_id=conversation.id,
        created=True,
        block_id=entry.id,
        welcome_sent=True,
    )


__all__ = ["UserJoinResult", "find_deployed_funnel", "handle_user_joined"]
