"""Core module exports."""
from __future__ import annotations

from core.config import Settings, get_settings, reload_settings
from core.db import get_session, SessionLocal, get_session_factory
from core.events import EventEmitter, FunnelEvent
from core.exceptions import (
    # Base
    FunnelEngineError,
    # Configuration
    ConfigurationError,
    MissingCredentialsError,
    # Database
    DatabaseError,
    ConversationNotFoundError,
    FunnelNotFoundError,
    ConversationConflictError,
    # Messaging provider
    MessagingProviderError,
    TransientProviderError,
    RateLimitError,
    ProviderUnavailableError,
    ProviderAuthError,
    # Script / handoff / notification
    ScriptError,
    InvalidTransitionError,
    HandoffError,
    NotificationError,
)
from core.logging_config import (
    setup_logging,
    get_logger,
    get_context_logger,
    log_external_call,
    JSONFormatter,
    ContextLogger,
)
from core.models import (
    Base,
    Funnel,
    Conversation,
    FunnelInteraction,
    Message,
    ConversationStatus,
    ConversationType,
    MessageType,
    AbandonReason,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    "reload_settings",
    # Database
    "get_session",
    "get_session_factory",
    "SessionLocal",
    "Base",
    # Events
    "EventEmitter",
    "FunnelEvent",
    # Models
    "Funnel",
    "Conversation",
    "FunnelInteraction",
    "Message",
    "ConversationStatus",
    "ConversationType",
    "MessageType",
    "AbandonReason",
    # Exceptions
    "FunnelEngineError",
    "ConfigurationError",
    "MissingCredentialsError",
    "DatabaseError",
    "ConversationNotFoundError",
    "FunnelNotFoundError",
    "ConversationConflictError",
    "MessagingProviderError",
    "TransientProviderError",
    "RateLimitError",
    "ProviderUnavailableError",
    "ProviderAuthError",
    "ScriptError",
    "InvalidTransitionError",
    "HandoffError",
    "NotificationError",
    # Logging
    "setup_logging",
    "get_logger",
    "get_context_logger",
    "log_external_call",
    "JSONFormatter",
    "ContextLogger",
]
