"""Persistence for conversations, interactions and messages.

Every write that moves a conversation is a compare-and-set: the UPDATE carries
the values the caller read in its WHERE clause, and zero matched rows means
someone else got there first (``ConversationConflictError``). Interactions and
inbound messages are deduplicated by unique (conversation, provider message)
keys.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.exceptions import ConversationConflictError, ConversationNotFoundError
from core.logging_config import get_logger
from core.models import (
    Conversation,
    ConversationStatus,
    ConversationType,
    FunnelInteraction,
    Message,
    MessageType,
)
from core.utils import generate_conversation_id, utcnow

LOGGER = get_logger(__name__)


class ConversationStore:
    """Conversation CRUD with compare-and-set updates."""

    def __init__(self, session: Session):
        """Initialize the store with database session."""
        self.session = session

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, conversation_id: str, refresh: bool = False) -> Optional[Conversation]:
        """Load a conversation; ``refresh`` bypasses the session identity map."""
        return self.session.get(Conversation, conversation_id, populate_existing=refresh)

    def require(self, conversation_id: str, refresh: bool = False) -> Conversation:
        conversation = self.get(conversation_id, refresh=refresh)
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    def find_active_for_user(
        self, external_user_id: str, experience_id: str
    ) -> Optional[Conversation]:
        """The user's live external conversation in this experience, if any."""
        stmt = (
            select(Conversation)
            .where(
                Conversation.external_user_id == external_user_id,
                Conversation.experience_id == experience_id,
                Conversation.conversation_type == ConversationType.EXTERNAL.value,
                Conversation.status == ConversationStatus.ACTIVE.value,
            )
            .order_by(Conversation.created_at.desc())
        )
        return self.session.execute(stmt).scalars().first()

    def find_internal_for(self, source_conversation_id: str) -> Optional[Conversation]:
        stmt = select(Conversation).where(
            Conversation.source_conversation_id == source_conversation_id
        )
        return self.session.execute(stmt).scalars().first()

    def list_conversations(
        self,
        status: Optional[str] = None,
        conversation_type: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Conversation]:
        stmt = select(Conversation)
        if status:
            stmt = stmt.where(Conversation.status == status)
        if conversation_type:
            stmt = stmt.where(Conversation.conversation_type == conversation_type)
        stmt = stmt.order_by(Conversation.created_at.desc()).limit(limit).offset(offset)
        return list(self.session.execute(stmt).scalars())

    def list_active_external(self) -> List[Conversation]:
        """Conversations that should have a poller running."""
        stmt = (
            select(Conversation)
            .where(
                Conversation.status == ConversationStatus.ACTIVE.value,
                Conversation.conversation_type == ConversationType.EXTERNAL.value,
            )
            .order_by(Conversation.created_at)
        )
        return list(self.session.execute(stmt).scalars())

    def list_messages(self, conversation_id: str) -> List[Message]:
        stmt = (
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.id)
        )
        return list(self.session.execute(stmt).scalars())

    def list_interactions(self, conversation_id: str) -> List[FunnelInteraction]:
        stmt = (
            select(FunnelInteraction)
            .where(FunnelInteraction.conversation_id == conversation_id)
            .order_by(FunnelInteraction.id)
        )
        return list(self.session.execute(stmt).scalars())

    def has_message(self, conversation_id: str, provider_message_id: str) -> bool:
        stmt = select(Message.id).where(
            Message.conversation_id == conversation_id,
            Message.provider_message_id == provider_message_id,
        )
        return self.session.execute(stmt).first() is not None

    def has_interaction(self, conversation_id: str, source_message_id: str) -> bool:
        stmt = select(FunnelInteraction.id).where(
            FunnelInteraction.conversation_id == conversation_id,
            FunnelInteraction.source_message_id == source_message_id,
        )
        return self.session.execute(stmt).first() is not None

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def create(
        self,
        external_user_id: str,
        experience_id: str,
        funnel_id: int,
        current_block_id: Optional[str],
        conversation_type: ConversationType = ConversationType.EXTERNAL,
        source_conversation_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Conversation:
        now = now or utcnow()
        conversation = Conversation(
            id=generate_conversation_id(),
            external_user_id=external_user_id,
            experience_id=experience_id,
            funnel_id=funnel_id,
            current_block_id=current_block_id,
            user_path=[current_block_id] if current_block_id else [],
            status=ConversationStatus.ACTIVE.value,
            conversation_type=conversation_type.value,
            source_conversation_id=source_conversation_id,
            invalid_response_count=0,
            nudges_sent=[],
            created_at=now,
            updated_at=now,
        )
        self._insert(conversation, source_conversation_id or conversation.id)
        LOGGER.info(
            f"Created {conversation_type.value} conversation {conversation.id} "
            f"for user {external_user_id} at block {current_block_id}"
        )
        return conversation

    def compare_and_set(
        self,
        conversation_id: str,
        expected: Mapping[str, Any],
        values: Dict[str, Any],
    ) -> Conversation:
        """
        Update a conversation only if it still holds ``expected``.

        Args:
            conversation_id: Conversation to update.
            expected: Column name -> value the caller last read.
            values: Column name -> new value.

        Returns:
            The freshly reloaded conversation.

        Raises:
            ConversationConflictError: If no row matched.
        """
        conditions = [Conversation.id == conversation_id]
        for column_name, value in expected.items():
            column = getattr(Conversation, column_name)
            conditions.append(column.is_(None) if value is None else column == value)

        result = self.session.execute(
            update(Conversation)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConversationConflictError(
                conversation_id, expected=expected.get("current_block_id")
            )
        return self.require(conversation_id, refresh=True)

    def set_status(
        self,
        conversation: Conversation,
        status: ConversationStatus,
        now: Optional[datetime] = None,
        abandon_reason: Optional[str] = None,
        **extra: Any,
    ) -> Conversation:
        """Move an active conversation to ``status``; conflicts if it already left active."""
        values: Dict[str, Any] = {"status": status.value, "updated_at": now or utcnow()}
        if abandon_reason:
            values["abandon_reason"] = abandon_reason
        values.update(extra)
        return self.compare_and_set(
            conversation.id,
            expected={"status": ConversationStatus.ACTIVE.value},
            values=values,
        )

    def _insert(self, row: Any, conversation_id: str) -> None:
        """Flush a new row; a unique-key race surfaces as a conflict so the caller re-reads."""
        self.session.add(row)
        try:
            self.session.flush()
        except IntegrityError as e:
            raise ConversationConflictError(conversation_id) from e

    def advance_cursor(
        self, conversation_id: str, message_id: str, now: Optional[datetime] = None
    ) -> None:
        self.session.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(last_processed_message_id=message_id, last_processed_at=now or utcnow())
            .execution_options(synchronize_session=False)
        )

    def record_interaction(
        self,
        conversation_id: str,
        block_id: str,
        option_text: str,
        next_block_id: Optional[str],
        user_text: Optional[str] = None,
        source_message_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[FunnelInteraction]:
        """Append an interaction; returns None if this source message was already recorded."""
        if source_message_id and self.has_interaction(conversation_id, source_message_id):
            LOGGER.info(
                f"Interaction for message {source_message_id} already recorded "
                f"on conversation {conversation_id}"
            )
            return None
        interaction = FunnelInteraction(
            conversation_id=conversation_id,
            block_id=block_id,
            option_text=option_text,
            next_block_id=next_block_id,
            user_text=user_text,
            source_message_id=source_message_id,
            created_at=now or utcnow(),
        )
        self._insert(interaction, conversation_id)
        return interaction

    def add_message(
        self,
        conversation_id: str,
        message_type: MessageType,
        content: str,
        provider_message_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Message]:
        """Append a message; returns None if the provider id is already stored."""
        if provider_message_id and self.has_message(conversation_id, provider_message_id):
            LOGGER.info(
                f"Message {provider_message_id} already stored on conversation {conversation_id}"
            )
            return None
        message = Message(
            conversation_id=conversation_id,
            message_type=message_type.value,
            content=content,
            provider_message_id=provider_message_id,
            message_metadata=dict(metadata or {}),
            created_at=now or utcnow(),
        )
        self._insert(message, conversation_id)
        return message


def get_conversation_store(session: Session) -> ConversationStore:
    """Factory function to get a ConversationStore instance."""
    return ConversationStore(session)


__all__ = ["ConversationStore", "get_conversation_store"]
