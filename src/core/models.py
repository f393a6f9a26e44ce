"""SQLAlchemy ORM models for the DM funnel engine."""
from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base
from core.utils import utcnow


# =============================================================================
# Enums
# =============================================================================


class ConversationStatus(str, enum.Enum):
    """Conversation lifecycle status."""
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    ARCHIVED = "archived"

    @property
    def is_terminal(self) -> bool:
        return self is not ConversationStatus.ACTIVE


class ConversationType(str, enum.Enum):
    """Which surface drives the conversation."""
    EXTERNAL = "external"  # Driven over the DM provider by a poller
    INTERNAL = "internal"  # Driven on the private chat surface after handoff


class MessageType(str, enum.Enum):
    """Who authored a message."""
    USER = "user"
    BOT = "bot"
    SYSTEM = "system"
    ADMIN = "admin"


class AbandonReason(str, enum.Enum):
    """Why a conversation was abandoned."""
    MAX_INVALID_RESPONSES = "max_invalid_responses"
    TIMEOUT = "timeout"


# =============================================================================
# Funnel Model
# =============================================================================


class Funnel(Base):
    """
    A conversation script.

    ``flow`` holds the block graph and stage grouping as loaded from JSON:
    ``{"blocks": {...}, "stages": [...]}``. ``resources`` maps resource names
    used by blocks to the links that replace ``[LINK]`` in their messages.
    A funnel is immutable per version; edits create a new row.
    """
    __tablename__ = "funnel"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1)
    experience_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    flow: Mapped[dict] = mapped_column(JSON, nullable=False)
    resources: Mapped[dict] = mapped_column(JSON, default=dict)

    # Only one funnel per experience is used for new joins
    is_deployed: Mapped[bool] = mapped_column(Boolean, default=False, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    conversations: Mapped[list["Conversation"]] = relationship(
        "Conversation", back_populates="funnel"
    )


# =============================================================================
# Conversation Model
# =============================================================================


class Conversation(Base):
    """
    One user's walk through a funnel.

    Writes that move ``current_block_id`` go through a compare-and-set on
    (id, current_block_id); see ``services.conversation_store``.
    """
    __tablename__ = "conversation"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    external_user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    experience_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    funnel_id: Mapped[int] = mapped_column(ForeignKey("funnel.id"), nullable=False, index=True)

    # Progress
    current_block_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    user_path: Mapped[list] = mapped_column(JSON, default=list)

    status: Mapped[str] = mapped_column(
        String(20), default=ConversationStatus.ACTIVE.value, index=True
    )
    conversation_type: Mapped[str] = mapped_column(
        String(20), default=ConversationType.EXTERNAL.value, index=True
    )

    # Escalation
    invalid_response_count: Mapped[int] = mapped_column(Integer, default=0)
    last_invalid_response_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_valid_response_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    abandon_reason: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Handoff links
    internal_conversation_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("conversation.id"), nullable=True, index=True
    )
    source_conversation_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("conversation.id"), nullable=True, unique=True
    )
    handoff_link: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    # Set while one run owns the link send
    handoff_claimed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    handoff_completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Polling cursor
    last_processed_message_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    last_processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Reminders already sent, as "PHASE1:10" style keys
    nudges_sent: Mapped[list] = mapped_column(JSON, default=list)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    phase2_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Relationships
    funnel: Mapped["Funnel"] = relationship("Funnel", back_populates="conversations")
    interactions: Mapped[list["FunnelInteraction"]] = relationship(
        "FunnelInteraction",
        back_populates="conversation",
        order_by="FunnelInteraction.id",
    )
    messages: Mapped[list["Message"]] = relationship(
        "Message",
        back_populates="conversation",
        order_by="Message.id",
    )

    __table_args__ = (
        Index("ix_conversation_status_type", "status", "conversation_type"),
        Index("ix_conversation_user_experience", "external_user_id", "experience_id"),
    )

    @property
    def status_enum(self) -> ConversationStatus:
        return ConversationStatus(self.status)

    @property
    def is_external(self) -> bool:
        return self.conversation_type == ConversationType.EXTERNAL.value

    def to_dict(self) -> dict[str, Any]:
        """Status/progress view used by the API and CLI."""
        return {
            "id": self.id,
            "external_user_id": self.external_user_id,
            "experience_id": self.experience_id,
            "funnel_id": self.funnel_id,
            "current_block_id": self.current_block_id,
            "user_path": list(self.user_path or []),
            "status": self.status,
            "conversation_type": self.conversation_type,
            "invalid_response_count": self.invalid_response_count,
            "abandon_reason": self.abandon_reason,
            "internal_conversation_id": self.internal_conversation_id,
            "source_conversation_id": self.source_conversation_id,
            "handoff_link": self.handoff_link,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "phase2_started_at": (
                self.phase2_started_at.isoformat() if self.phase2_started_at else None
            ),
        }


# =============================================================================
# Interaction Model
# =============================================================================


class FunnelInteraction(Base):
    """
    Append-only record of one accepted reply.

    Never updated after insert. The unique (conversation_id, source_message_id)
    pair is what makes replaying the same inbound message a no-op.
    """
    __tablename__ = "funnel_interaction"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(
        ForeignKey("conversation.id"), nullable=False, index=True
    )
    block_id: Mapped[str] = mapped_column(String(128), nullable=False)
    option_text: Mapped[str] = mapped_column(Text, nullable=False)
    next_block_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    user_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_message_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    conversation: Mapped["Conversation"] = relationship(
        "Conversation", back_populates="interactions"
    )

    __table_args__ = (
        UniqueConstraint(
            "conversation_id", "source_message_id", name="uq_interaction_source_message"
        ),
    )


# =============================================================================
# Message Model
# =============================================================================


class Message(Base):
    """Every message exchanged in a conversation, inbound and outbound."""
    __tablename__ = "message"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(
        ForeignKey("conversation.id"), nullable=False, index=True
    )
    message_type: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)

    # Id assigned by the DM provider, inbound or outbound
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # e.g. {"dm_history": true, "original_message_id": 12} on copied history
    message_metadata: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    conversation: Mapped["Conversation"] = relationship(
        "Conversation", back_populates="messages"
    )

    __table_args__ = (
        UniqueConstraint(
            "conversation_id", "provider_message_id", name="uq_message_provider_id"
        ),
    )

    @property
    def type(self) -> MessageType:
        return MessageType(self.message_type)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.message_type,
            "content": self.content,
            "provider_message_id": self.provider_message_id,
            "metadata": dict(self.message_metadata or {}),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


__all__ = [
    "ConversationStatus",
    "ConversationType",
    "MessageType",
    "AbandonReason",
    "Funnel",
    "Conversation",
    "FunnelInteraction",
    "Message",
]
