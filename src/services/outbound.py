"""Outbound delivery: one place that sends to a user and records what was sent."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from core.events import EventEmitter, SEND_FAILED
from core.exceptions import MessagingProviderError
from core.logging_config import get_logger
from core.models import Conversation, Message, MessageType
from messaging.provider import MessagingProvider
from services.conversation_store import ConversationStore

LOGGER = get_logger(__name__)


def deliver(
    store: ConversationStore,
    provider: Optional[MessagingProvider],
    conversation: Conversation,
    text: str,
    now: datetime,
    message_type: MessageType = MessageType.BOT,
    metadata: Optional[Dict[str, Any]] = None,
    events: Optional[EventEmitter] = None,
) -> Optional[Message]:
    """
    Send ``text`` to the conversation's user and store it.

    External conversations go out through the DM provider; internal ones are
    only stored, the private chat surface reads them from the database.
    Provider errors are reported as ``send_failed`` on ``events`` and
    propagate so the caller's transaction rolls back.
    """
    provider_message_id = None
    if conversation.is_external:
        if provider is None:
            raise ValueError("A messaging provider is required for external conversations")
        try:
            provider_message_id = provider.send(conversation.external_user_id, text)
        except MessagingProviderError as e:
            if events is not None:
                events.emit(
                    SEND_FAILED,
                    conversation_id=conversation.id,
                    outcome="failed",
                    message_type=message_type.value,
                    error=str(e),
                )
            raise
        LOGGER.debug(
            f"Sent {message_type.value} message {provider_message_id} "
            f"to conversation {conversation.id}"
        )

    return store.add_message(
        conversation.id,
        message_type,
        text,
        provider_message_id=provider_message_id,
        metadata=metadata,
        now=now,
    )


__all__ = ["deliver"]
