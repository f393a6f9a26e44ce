"""Funnel navigation: apply an accepted reply to a conversation."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from core.events import (
    CONVERSATION_COMPLETED,
    EventEmitter,
    REPLY_ACCEPTED,
    REPLY_DUPLICATE,
)
from core.exceptions import InvalidTransitionError, ScriptError
from core.logging_config import get_logger
from core.models import Conversation, ConversationStatus
from core.utils import Clock, utcnow
from domain.phase import ConversationPhase, classify_phase
from domain.script import FunnelScript, Option, render_block_message
from messaging.provider import MessagingProvider
from services.conversation_store import ConversationStore
from services.outbound import deliver

LOGGER = get_logger(__name__)

COMPLETION_MESSAGE = "Thank you for completing the strategy session! We'll be in touch soon."


def script_for(conversation: Conversation) -> Optional[FunnelScript]:
    """The conversation's bound script, or None when it cannot be read."""
    if conversation.funnel is None:
        return None
    try:
        return FunnelScript.from_funnel(conversation.funnel)
    except ScriptError as e:
        LOGGER.error(f"Funnel {conversation.funnel_id} is unreadable: {e}")
        return None


@dataclass
class NavigationResult:
    """Outcome of applying one reply."""

    conversation_id: str
    accepted: bool
    duplicate: bool = False
    from_block_id: Optional[str] = None
    to_block_id: Optional[str] = None
    phase: ConversationPhase = ConversationPhase.COMPLETED
    completed: bool = False
    needs_handoff: bool = False
    outbound_text: Optional[str] = None
    interaction_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "accepted": self.accepted,
            "duplicate": self.duplicate,
            "from_block_id": self.from_block_id,
            "to_block_id": self.to_block_id,
            "phase": self.phase.value,
            "completed": self.completed,
            "needs_handoff": self.needs_handoff,
            "outbound_text": self.outbound_text,
            "interaction_id": self.interaction_id,
        }


class FunnelNavigator:
    """
    Moves a conversation along its script.

    ``advance`` writes with a compare-and-set on the block the caller read, so
    a late or repeated call for the same reply cannot move the conversation
    twice. The caller owns the transaction; nothing is committed here.
    """

    def __init__(
        self,
        session: Session,
        provider: Optional[MessagingProvider],
        events: Optional[EventEmitter] = None,
        clock: Clock = utcnow,
    ):
        self.session = session
        self.store = ConversationStore(session)
        self.provider = provider
        self.events = events or EventEmitter()
        self.clock = clock

    def advance(
        self,
        conversation: Conversation,
        option: Option,
        source_message_id: Optional[str] = None,
        user_text: Optional[str] = None,
        script: Optional[FunnelScript] = None,
    ) -> NavigationResult:
        """
        Apply ``option`` (already matched against the current block).

        Returns:
            NavigationResult describing the move. ``duplicate`` is set when
            ``source_message_id`` was already applied; nothing changes then.

        Raises:
            InvalidTransitionError: If ``option`` is not on the current block.
            ConversationConflictError: If the conversation moved concurrently.
        """
        if source_message_id and self.store.has_interaction(conversation.id, source_message_id):
            self.events.emit(
                REPLY_DUPLICATE,
                conversation_id=conversation.id,
                outcome="skipped",
                source_message_id=source_message_id,
            )
            return NavigationResult(
                conversation_id=conversation.id,
                accepted=False,
                duplicate=True,
                from_block_id=conversation.current_block_id,
                to_block_id=conversation.current_block_id,
                phase=classify_phase(conversation.current_block_id, script or script_for(conversation)),
            )

        script = script or script_for(conversation)
        if script is None:
            raise ScriptError(f"Conversation {conversation.id} has no readable funnel")

        block = script.get_block(conversation.current_block_id)
        if block is None or option not in block.options:
            raise InvalidTransitionError(
                f"Option {option.text!r} is not on block {conversation.current_block_id!r}"
            )

        now = self.clock()
        from_phase = classify_phase(block.id, script)
        next_block_id = option.next_block_id
        next_block = script.get_block(next_block_id)
        to_phase = classify_phase(next_block_id, script)

        needs_handoff = next_block is not None and to_phase is ConversationPhase.TRANSITION
        completed = (
            next_block is None
            or (next_block.is_terminal and to_phase is not ConversationPhase.TRANSITION)
        )

        values: Dict[str, Any] = {
            "current_block_id": next_block_id if next_block_id else block.id,
            "user_path": list(conversation.user_path or []) + ([next_block_id] if next_block_id else []),
            "invalid_response_count": 0,
            "last_valid_response_at": now,
            "updated_at": now,
        }
        if to_phase is ConversationPhase.PHASE2 and from_phase is not ConversationPhase.PHASE2:
            values["phase2_started_at"] = now
        if completed:
            values["status"] = ConversationStatus.COMPLETED.value

        conversation = self.store.compare_and_set(
            conversation.id,
            expected={
                "current_block_id": block.id,
                "status": ConversationStatus.ACTIVE.value,
            },
            values=values,
        )

        interaction = self.store.record_interaction(
            conversation.id,
            block_id=block.id,
            option_text=option.text,
            next_block_id=next_block_id,
            user_text=user_text,
            source_message_id=source_message_id,
            now=now,
        )

        # TRANSITION blocks are sent by the handoff, with the private chat link
        outbound_text = None
        if next_block is not None and not needs_handoff:
            outbound_text = render_block_message(script, next_block)
        elif next_block_id is None:
            outbound_text = COMPLETION_MESSAGE
        elif next_block is None:
            LOGGER.error(
                f"Conversation {conversation.id}: option {option.text!r} points to "
                f"missing block {next_block_id!r}, treating as complete"
            )

        if outbound_text:
            deliver(self.store, self.provider, conversation, outbound_text, now, events=self.events)

        self.events.emit(
            REPLY_ACCEPTED,
            conversation_id=conversation.id,
            phase=to_phase.value,
            outcome="advanced",
            from_block_id=block.id,
            to_block_id=next_block_id,
            option=option.text,
        )
        if completed:
            self.events.emit(
                CONVERSATION_COMPLETED,
                conversation_id=conversation.id,
                phase=to_phase.value,
                outcome="end_of_funnel",
            )

        return NavigationResult(
            conversation_id=conversation.id,
            accepted=True,
            from_block_id=block.id,
            to_block_id=next_block_id,
            phase=to_phase,
            completed=completed,
            needs_handoff=needs_handoff,
            outbound_text=outbound_text,
            interaction_id=interaction.id if interaction else None,
        )


def get_navigator(session: Session, provider: Optional[MessagingProvider], **kwargs: Any) -> FunnelNavigator:
    """Factory function to get a FunnelNavigator instance."""
    return FunnelNavigator(session, provider, **kwargs)


__all__ = ["FunnelNavigator", "NavigationResult", "COMPLETION_MESSAGE", "script_for", "get_navigator"]
