"""Inactivity handling: timeout abandonment and reminder nudges.

Both run on wall-clock time measured from the phase reference timestamp
(creation for PHASE1, phase-2 entry for PHASE2), independently of whether a
poller is alive for the conversation.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, ContextManager, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from core.config import Settings, get_settings
from core.events import CONVERSATION_ABANDONED, EventEmitter, NUDGE_SENT
from core.exceptions import ConversationConflictError, MessagingProviderError
from core.logging_config import get_logger
from core.models import AbandonReason, Conversation, ConversationStatus
from core.utils import Clock, ensure_aware, utcnow
from domain.phase import ConversationPhase, classify_phase, phase_reference_time
from domain.script import FunnelScript
from messaging.provider import MessagingProvider
from services.conversation_store import ConversationStore
from services.navigator import script_for
from services.outbound import deliver

LOGGER = get_logger(__name__)

SessionFactory = Callable[[], ContextManager[Session]]

NUDGE_MESSAGES: Dict[ConversationPhase, Dict[int, str]] = {
    ConversationPhase.PHASE1: {
        10: "Hey, what's your niche? Reply 1 for E-commerce, etc.",
        60: "Missed you! Reply with a number for free value.",
        720: "Still interested? Reply for your free resource!",
    },
    ConversationPhase.PHASE2: {
        15: "Reply 'done' when you've checked the value!",
        60: "All set? Say 'done' for the next step!",
        720: "Still with us? Reply 'done' for private chat!",
    },
}


def nudge_message(phase: ConversationPhase, minutes: int) -> str:
    """Reminder text for an offset; custom offsets reuse the closest earlier text."""
    table = NUDGE_MESSAGES[phase]
    if minutes in table:
        return table[minutes]
    earlier = [m for m in sorted(table) if m <= minutes]
    return table[earlier[-1] if earlier else min(table)]


def nudge_key(phase: ConversationPhase, minutes: int) -> str:
    return f"{phase.value}:{minutes}"


def is_timed_out(
    conversation: Conversation,
    phase: ConversationPhase,
    now: datetime,
    timeout_hours: float,
) -> bool:
    """True when the phase reference timestamp is older than the ceiling."""
    reference = ensure_aware(phase_reference_time(conversation, phase))
    if reference is None:
        return False
    return now - reference > timedelta(hours=timeout_hours)


def due_nudge(
    conversation: Conversation,
    phase: ConversationPhase,
    now: datetime,
    settings: Settings,
) -> Optional[Tuple[Optional[int], List[str]]]:
    """
    The reminder to send now, if any.

    Returns:
        (offset_minutes, keys_to_mark) for the latest due offset. Earlier due
        offsets that were never sent (e.g. after downtime) are marked too so
        the user gets one reminder, not a burst. offset_minutes is None when
        the user has replied since the reminder came due: the keys are marked
        but nothing is sent.
    """
    if phase not in NUDGE_MESSAGES:
        return None
    reference = ensure_aware(phase_reference_time(conversation, phase))
    if reference is None:
        return None
    if is_timed_out(conversation, phase, now, settings.conversation_timeout_hours):
        return None

    elapsed_minutes = (now - reference).total_seconds() / 60
    sent = set(conversation.nudges_sent or [])
    last_activity = max(
        (
            ensure_aware(ts)
            for ts in (conversation.last_valid_response_at, conversation.last_invalid_response_at)
            if ts is not None
        ),
        default=None,
    )

    due = []
    for minutes in settings.nudge_offsets(phase.value):
        key = nudge_key(phase, minutes)
        if minutes > elapsed_minutes or key in sent:
            continue
        due.append((minutes, key))
    if not due:
        return None

    minutes, _ = due[-1]
    keys = [key for _, key in due]
    # The user spoke after this reminder came due; skip it without sending
    if last_activity is not None and last_activity >= reference + timedelta(minutes=minutes):
        return None, keys
    return minutes, keys


@dataclass
class SweepResult:
    """Outcome of one sweep pass."""

    checked: int = 0
    affected: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "affected": list(self.affected),
            "count": len(self.affected),
            "errors": list(self.errors),
        }


class TimeoutService:
    """
    Timeout abandonment and nudges over all active external conversations.

    Each conversation is handled in its own session so one failure does not
    roll back the rest of the pass.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        provider: Optional[MessagingProvider],
        events: Optional[EventEmitter] = None,
        clock: Clock = utcnow,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.events = events or EventEmitter()
        self.clock = clock
        self.settings = settings or get_settings()

    def abandon_if_timed_out(
        self,
        store: ConversationStore,
        conversation: Conversation,
        script: Optional[FunnelScript],
    ) -> bool:
        """
        Abandon ``conversation`` if it crossed the inactivity ceiling.

        No message is sent to the user. Used by pollers at the start of each
        tick and by the sweep.
        """
        if conversation.status != ConversationStatus.ACTIVE.value:
            return False
        now = self.clock()
        phase = classify_phase(conversation.current_block_id, script)
        if not is_timed_out(conversation, phase, now, self.settings.conversation_timeout_hours):
            return False

        store.set_status(
            conversation,
            ConversationStatus.ABANDONED,
            now=now,
            abandon_reason=AbandonReason.TIMEOUT.value,
        )
        LOGGER.info(f"Conversation {conversation.id} abandoned after inactivity in {phase.value}")
        self.events.emit(
            CONVERSATION_ABANDONED,
            conversation_id=conversation.id,
            phase=phase.value,
            outcome=AbandonReason.TIMEOUT.value,
        )
        return True

    def _active_ids(self) -> List[str]:
        with self.session_factory() as session:
            return [c.id for c in ConversationStore(session).list_active_external()]

    def sweep(self) -> SweepResult:
        """Abandon every active external conversation past the ceiling."""
        result = SweepResult()
        for conversation_id in self._active_ids():
            result.checked += 1
            try:
                with self.session_factory() as session:
                    store = ConversationStore(session)
                    conversation = store.get(conversation_id)
                    if conversation is None:
                        continue
                    if self.abandon_if_timed_out(store, conversation, script_for(conversation)):
                        result.affected.append(conversation_id)
            except ConversationConflictError:
                # Moved on since the listing; the next pass will look again
                LOGGER.debug(f"Sweep skipped {conversation_id}: changed concurrently")
            except Exception as e:
                LOGGER.exception(f"Timeout sweep failed for {conversation_id}")
                result.errors.append(f"{conversation_id}: {e}")

        LOGGER.info(
            f"Timeout sweep checked {result.checked}, abandoned {len(result.affected)}"
        )
        return result

    def send_due_nudges(self) -> SweepResult:
        """Send at most one due reminder per active external conversation."""
        result = SweepResult()
        for conversation_id in self._active_ids():
            result.checked += 1
            try:
                with self.session_factory() as session:
                    if self._nudge_one(ConversationStore(session), conversation_id):
                        result.affected.append(conversation_id)
            except ConversationConflictError:
                LOGGER.debug(f"Nudge skipped {conversation_id}: changed concurrently")
            except MessagingProviderError as e:
                LOGGER.warning(f"Nudge send failed for {conversation_id}: {e}")
                result.errors.append(f"{conversation_id}: {e}")
            except Exception as e:
                LOGGER.exception(f"Nudge failed for {conversation_id}")
                result.errors.append(f"{conversation_id}: {e}")

        if result.affected:
            LOGGER.info(f"Sent {len(result.affected)} nudges")
        return result

    def _nudge_one(self, store: ConversationStore, conversation_id: str) -> bool:
        conversation = store.get(conversation_id)
        if conversation is None or conversation.status != ConversationStatus.ACTIVE.value:
            return False

        now = self.clock()
        phase = classify_phase(conversation.current_block_id, script_for(conversation))
        due = due_nudge(conversation, phase, now, self.settings)
        if due is None:
            return False
        minutes, keys = due

        conversation = store.compare_and_set(
            conversation.id,
            expected={
                "current_block_id": conversation.current_block_id,
                "status": ConversationStatus.ACTIVE.value,
                "invalid_response_count": conversation.invalid_response_count,
            },
            values={"nudges_sent": list(conversation.nudges_sent or []) + keys},
        )
        if minutes is None:
            return False

        text = nudge_message(phase, minutes)
        deliver(store, self.provider, conversation, text, now, events=self.events)
        self.events.emit(
            NUDGE_SENT,
            conversation_id=conversation.id,
            phase=phase.value,
            outcome=f"{minutes}m",
        )
        return True


__all__ = [
    "TimeoutService",
    "SweepResult",
    "NUDGE_MESSAGES",
    "nudge_message",
    "nudge_key",
    "is_timed_out",
    "due_nudge",
]
