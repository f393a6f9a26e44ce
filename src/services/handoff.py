"""Handoff from the DM channel to the private chat surface.

Runs once a conversation reaches a TRANSITION block. Every step checks what
is already in place before acting, so an interrupted run converges on retry:

1. find or create the linked internal conversation (one per origin, enforced
   by a unique source_conversation_id)
2. copy the origin's messages into it as read-only history
3. seed it at the second script's entry block
4. build the resumable link
5. send the transition message with the link on the DM channel
6. mark the origin completed and record the link

Steps 1-4 are committed before the send in step 5, so a failed send is
retried without creating anything twice. The send itself is claimed first
(``handoff_claimed_at``, set by compare-and-set): a second run racing the
first gets a conflict instead of sending the link again. A failed send
releases the claim; a claim left by a crashed process expires after
``CLAIM_TIMEOUT_SECONDS``.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from core.config import Settings, get_settings
from core.events import (
    CONVERSATION_COMPLETED,
    EventEmitter,
    HANDOFF_COMPLETED,
    HANDOFF_FAILED,
    HANDOFF_STARTED,
)
from core.exceptions import (
    ConversationConflictError,
    FunnelNotFoundError,
    HandoffError,
    ScriptError,
)
from core.logging_config import get_logger
from core.models import (
    Conversation,
    ConversationStatus,
    ConversationType,
    Funnel,
    MessageType,
)
from core.utils import Clock, ensure_aware, utcnow
from domain.phase import ConversationPhase, classify_phase
from domain.script import (
    Block,
    FunnelScript,
    STAGE_EXPERIENCE_QUALIFICATION,
    STAGE_TRANSITION,
    render_block_message,
)
from messaging.provider import MessagingProvider
from services.conversation_store import ConversationStore
from services.navigator import script_for
from services.outbound import deliver

LOGGER = get_logger(__name__)

LINK_PLACEHOLDER = "[LINK_TO_PRIVATE_CHAT]"
CLAIM_TIMEOUT_SECONDS = 300
DEFAULT_TRANSITION_MESSAGE = "Let's continue in your private strategy session:"
FALLBACK_MESSAGE = (
    "There was an issue setting up your strategy session. Please contact support."
)


@dataclass
class HandoffResult:
    """Outcome of one handoff run."""

    origin_id: str
    internal_id: Optional[str]
    link: Optional[str]
    completed: bool
    already_completed: bool = False
    fallback: bool = False
    copied_messages: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "origin_id": self.origin_id,
            "internal_id": self.internal_id,
            "link": self.link,
            "completed": self.completed,
            "already_completed": self.already_completed,
            "fallback": self.fallback,
            "copied_messages": self.copied_messages,
        }


def build_chat_link(base_url: str, experience_id: str, internal_id: str) -> str:
    """Stable address of an internal conversation on the private chat surface."""
    return f"{base_url.rstrip('/')}/experiences/{experience_id}/chat/{internal_id}"


def render_transition_message(script: FunnelScript, block: Optional[Block], link: str) -> str:
    """Transition text with the chat link placed at the placeholder, or appended."""
    text = render_block_message(script, block) if block is not None else DEFAULT_TRANSITION_MESSAGE
    if LINK_PLACEHOLDER in text:
        return text.replace(LINK_PLACEHOLDER, link)
    return f"{text}\n\n{link}"


class HandoffOrchestrator:
    """
    Moves a conversation from the DM channel to the private chat.

    Usage:
        orchestrator = HandoffOrchestrator(session, provider, events=events)
        result = orchestrator.run(conversation_id)
    """

    def __init__(
        self,
        session: Session,
        provider: Optional[MessagingProvider],
        events: Optional[EventEmitter] = None,
        clock: Clock = utcnow,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.store = ConversationStore(session)
        self.provider = provider
        self.events = events or EventEmitter()
        self.clock = clock
        self.settings = settings or get_settings()

    # -------------------------------------------------------------------------
    # Second script
    # -------------------------------------------------------------------------

    def _second_script(self, origin: Conversation, origin_script: FunnelScript) -> Tuple[int, FunnelScript, Block]:
        """
        The funnel and entry block the internal conversation is bound to.

        HANDOFF_FUNNEL_ID wins when set; otherwise the origin funnel's
        EXPERIENCE_QUALIFICATION stage.

        Raises:
            HandoffError: If neither provides an entry block.
        """
        funnel_id = self.settings.handoff_funnel_id
        if funnel_id is not None:
            funnel = self.session.get(Funnel, funnel_id)
            if funnel is None:
                raise FunnelNotFoundError(f"Handoff funnel {funnel_id} not found")
            script = FunnelScript.from_funnel(funnel)
            entry = (
                script.first_block_of_stage(STAGE_EXPERIENCE_QUALIFICATION)
                or script.get_block(script.start_block_id)
                or script.entry_block()
            )
            if entry is None:
                raise HandoffError(f"Handoff funnel {funnel_id} has no entry block")
            return funnel.id, script, entry

        entry = origin_script.first_block_of_stage(STAGE_EXPERIENCE_QUALIFICATION)
        if entry is None:
            raise HandoffError(
                f"Funnel {origin.funnel_id} has no {STAGE_EXPERIENCE_QUALIFICATION} stage"
            )
        return origin.funnel_id, origin_script, entry

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def _ensure_internal(
        self, origin: Conversation, funnel_id: int, entry: Block
    ) -> Conversation:
        internal = self.store.find_internal_for(origin.id)
        if internal is None:
            internal = self.store.create(
                external_user_id=origin.external_user_id,
                experience_id=origin.experience_id,
                funnel_id=funnel_id,
                current_block_id=entry.id,
                conversation_type=ConversationType.INTERNAL,
                source_conversation_id=origin.id,
                now=self.clock(),
            )
        if origin.internal_conversation_id != internal.id:
            origin.internal_conversation_id = internal.id
            self.session.flush()
        return internal

    def _copy_history(self, origin: Conversation, internal: Conversation) -> int:
        copied_ids = {
            (m.message_metadata or {}).get("original_message_id")
            for m in self.store.list_messages(internal.id)
            if (m.message_metadata or {}).get("dm_history")
        }
        copied = 0
        for message in self.store.list_messages(origin.id):
            if message.id in copied_ids:
                continue
            self.store.add_message(
                internal.id,
                MessageType(message.message_type),
                message.content,
                metadata={"dm_history": True, "original_message_id": message.id},
                now=message.created_at,
            )
            copied += 1
        return copied

    def _seed_entry(self, internal: Conversation, script: FunnelScript, entry: Block) -> None:
        already_seeded = any(
            (m.message_metadata or {}).get("seed") for m in self.store.list_messages(internal.id)
        )
        if already_seeded:
            return
        deliver(
            self.store,
            None,
            internal,
            render_block_message(script, entry),
            self.clock(),
            metadata={"seed": True, "block_id": entry.id},
        )

    def _claim(self, origin: Conversation) -> datetime:
        """
        Take ownership of the DM send, committed before anything goes out.

        Raises:
            ConversationConflictError: If another run holds a live claim or
                the conversation left active meanwhile.
        """
        now = self.clock()
        held_since = ensure_aware(origin.handoff_claimed_at)
        if held_since is not None and (now - held_since).total_seconds() < CLAIM_TIMEOUT_SECONDS:
            LOGGER.info(f"Handoff send for {origin.id} already claimed at {held_since.isoformat()}")
            raise ConversationConflictError(origin.id)
        self.store.compare_and_set(
            origin.id,
            expected={
                "status": ConversationStatus.ACTIVE.value,
                "handoff_completed_at": None,
                "handoff_claimed_at": origin.handoff_claimed_at,
            },
            values={"handoff_claimed_at": now},
        )
        self.session.commit()
        return now

    def _release(self, conversation_id: str, claimed_at: datetime) -> None:
        self.session.rollback()
        self.store.compare_and_set(
            conversation_id,
            expected={"handoff_claimed_at": claimed_at},
            values={"handoff_claimed_at": None},
        )
        self.session.commit()

    def _send_claimed(self, origin: Conversation, text: str) -> datetime:
        """Claim, then deliver ``text``; a failed delivery gives the claim back."""
        conversation_id = origin.id
        claimed_at = self._claim(origin)
        try:
            deliver(self.store, self.provider, origin, text, claimed_at, events=self.events)
        except Exception:
            LOGGER.warning(f"Handoff send for {conversation_id} failed, releasing claim")
            self._release(conversation_id, claimed_at)
            raise
        return claimed_at

    def _fallback(self, origin: Conversation, reason: str) -> HandoffResult:
        """No second stage to hand off to: tell the user, close the conversation."""
        now = self._send_claimed(origin, FALLBACK_MESSAGE)
        self.store.set_status(origin, ConversationStatus.COMPLETED, now=now)
        self.events.emit(
            HANDOFF_FAILED,
            conversation_id=origin.id,
            phase=ConversationPhase.TRANSITION.value,
            outcome="fallback",
            reason=reason,
        )
        return HandoffResult(
            origin_id=origin.id,
            internal_id=None,
            link=None,
            completed=True,
            fallback=True,
        )

    def run(self, conversation_id: str) -> HandoffResult:
        """
        Hand ``conversation_id`` off to the private chat.

        Commits after the internal conversation is set up and again at the
        end; the caller's session is left clean.

        Raises:
            HandoffError: If the conversation is not at a TRANSITION block.
            MessagingProviderError: If the link message cannot be sent; the
                setup stays committed and the next run reuses it.
        """
        origin = self.store.require(conversation_id)

        if origin.handoff_completed_at is not None:
            return HandoffResult(
                origin_id=origin.id,
                internal_id=origin.internal_conversation_id,
                link=origin.handoff_link,
                completed=True,
                already_completed=True,
            )

        origin_script = script_for(origin)
        phase = classify_phase(origin.current_block_id, origin_script)
        if origin.status != ConversationStatus.ACTIVE.value or phase is not ConversationPhase.TRANSITION:
            raise HandoffError(
                f"Conversation {origin.id} is not awaiting handoff "
                f"(status={origin.status}, phase={phase.value})"
            )

        self.events.emit(
            HANDOFF_STARTED, conversation_id=origin.id, phase=phase.value, outcome="started"
        )

        try:
            funnel_id, second_script, entry = self._second_script(origin, origin_script)
        except (HandoffError, FunnelNotFoundError, ScriptError) as e:
            LOGGER.error(f"Handoff for {origin.id} cannot proceed: {e}")
            result = self._fallback(origin, str(e))
            self.session.commit()
            return result

        # Steps 1-4
        internal = self._ensure_internal(origin, funnel_id, entry)
        copied = self._copy_history(origin, internal)
        self._seed_entry(internal, second_script, entry)
        link = build_chat_link(self.settings.app_base_url, origin.experience_id, internal.id)
        if origin.handoff_link != link:
            origin.handoff_link = link
        self.session.commit()

        # Steps 5-6
        transition_block = origin_script.get_block(origin.current_block_id)
        if transition_block is None:
            transition_block = origin_script.first_block_of_stage(STAGE_TRANSITION)
        text = render_transition_message(origin_script, transition_block, link)
        now = self._send_claimed(origin, text)
        self.store.set_status(
            origin,
            ConversationStatus.COMPLETED,
            now=now,
            handoff_completed_at=now,
            handoff_link=link,
            internal_conversation_id=internal.id,
        )
        self.session.commit()

        LOGGER.info(f"Handed off {origin.id} to internal conversation {internal.id}")
        self.events.emit(
            HANDOFF_COMPLETED,
            conversation_id=origin.id,
            phase=ConversationPhase.TRANSITION.value,
            outcome="completed",
            internal_conversation_id=internal.id,
            link=link,
            copied_messages=copied,
        )
        self.events.emit(
            CONVERSATION_COMPLETED,
            conversation_id=origin.id,
            phase=ConversationPhase.TRANSITION.value,
            outcome="handoff",
        )

        return HandoffResult(
            origin_id=origin.id,
            internal_id=internal.id,
            link=link,
            completed=True,
            copied_messages=copied,
        )


def get_handoff_orchestrator(session: Session, provider: Optional[MessagingProvider], **kwargs: Any) -> HandoffOrchestrator:
    """Factory function to get a HandoffOrchestrator instance."""
    return HandoffOrchestrator(session, provider, **kwargs)


__all__ = [
    "HandoffOrchestrator",
    "HandoffResult",
    "build_chat_link",
    "render_transition_message",
    "FALLBACK_MESSAGE",
    "get_handoff_orchestrator",
]
