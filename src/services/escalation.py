"""Escalation ladder for replies that match no option."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from core.config import Settings, get_settings
from core.events import CONVERSATION_ABANDONED, EventEmitter, REPLY_REJECTED
from core.logging_config import get_logger
from core.models import AbandonReason, Conversation, ConversationStatus
from core.utils import Clock, utcnow
from messaging.provider import MessagingProvider
from services.conversation_store import ConversationStore
from services.notification import NotificationService
from services.outbound import deliver

LOGGER = get_logger(__name__)

REPROMPT_MESSAGE = "Please choose from the provided options above."
WARNING_MESSAGE = "I'll inform the owner about your request. Please wait for assistance."
FINAL_MESSAGE = "I'm unable to help you further. Please contact the owner directly."

ACTION_REPROMPT = "reprompt"
ACTION_WARN = "warn"
ACTION_ABANDON = "abandon"


@dataclass
class EscalationResult:
    """What the ladder did with one invalid reply."""

    conversation_id: str
    invalid_count: int
    action: str
    message: str

    @property
    def abandoned(self) -> bool:
        return self.action == ACTION_ABANDON

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "invalid_count": self.invalid_count,
            "action": self.action,
            "message": self.message,
        }


def escalation_action(invalid_count: int, max_invalid: int) -> str:
    """Ladder step for the ``invalid_count``-th consecutive invalid reply."""
    if invalid_count >= max_invalid:
        return ACTION_ABANDON
    if invalid_count <= 1:
        return ACTION_REPROMPT
    return ACTION_WARN


class EscalationPolicy:
    """
    Counts consecutive invalid replies and responds per step.

    1st: re-prompt. 2nd: warning plus an operator alert. At the ceiling
    (``MAX_INVALID_RESPONSES``): final message and abandonment. A valid reply
    resets the count (done by the navigator as part of its write).
    """

    def __init__(
        self,
        session: Session,
        provider: Optional[MessagingProvider],
        notifier: Optional[NotificationService] = None,
        events: Optional[EventEmitter] = None,
        clock: Clock = utcnow,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.store = ConversationStore(session)
        self.provider = provider
        self.notifier = notifier
        self.events = events or EventEmitter()
        self.clock = clock
        self.settings = settings or get_settings()

    def handle_invalid(
        self,
        conversation: Conversation,
        user_text: str,
        phase: Optional[str] = None,
    ) -> EscalationResult:
        """
        Record one invalid reply and send the ladder's response.

        The counter write is a compare-and-set on the count, block and status
        that were read, so two racing ticks cannot both count the same step.

        Raises:
            ConversationConflictError: If the conversation changed concurrently.
        """
        now = self.clock()
        previous = conversation.invalid_response_count or 0
        count = previous + 1
        action = escalation_action(count, self.settings.max_invalid_responses)

        values: Dict[str, Any] = {
            "invalid_response_count": count,
            "last_invalid_response_at": now,
            "updated_at": now,
        }
        if action == ACTION_ABANDON:
            values["status"] = ConversationStatus.ABANDONED.value
            values["abandon_reason"] = AbandonReason.MAX_INVALID_RESPONSES.value

        conversation = self.store.compare_and_set(
            conversation.id,
            expected={
                "invalid_response_count": previous,
                "current_block_id": conversation.current_block_id,
                "status": ConversationStatus.ACTIVE.value,
            },
            values=values,
        )

        message = {
            ACTION_REPROMPT: REPROMPT_MESSAGE,
            ACTION_WARN: WARNING_MESSAGE,
            ACTION_ABANDON: FINAL_MESSAGE,
        }[action]
        deliver(self.store, self.provider, conversation, message, now, events=self.events)

        self.events.emit(
            REPLY_REJECTED,
            conversation_id=conversation.id,
            phase=phase,
            outcome=action,
            invalid_count=count,
            block_id=conversation.current_block_id,
        )

        if action == ACTION_WARN and count == 2 and self.notifier is not None:
            self.notifier.alert_human_requested(
                conversation.id, conversation.external_user_id, user_text or ""
            )

        if action == ACTION_ABANDON:
            LOGGER.info(
                f"Conversation {conversation.id} abandoned after {count} invalid replies"
            )
            self.events.emit(
                CONVERSATION_ABANDONED,
                conversation_id=conversation.id,
                phase=phase,
                outcome=AbandonReason.MAX_INVALID_RESPONSES.value,
            )

        return EscalationResult(
            conversation_id=conversation.id,
            invalid_count=count,
            action=action,
            message=message,
        )


def get_escalation_policy(session: Session, provider: Optional[MessagingProvider], **kwargs: Any) -> EscalationPolicy:
    """Factory function to get an EscalationPolicy instance."""
    return EscalationPolicy(session, provider, **kwargs)


__all__ = [
    "EscalationPolicy",
    "EscalationResult",
    "escalation_action",
    "REPROMPT_MESSAGE",
    "WARNING_MESSAGE",
    "FINAL_MESSAGE",
]
