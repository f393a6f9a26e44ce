"""Custom exceptions for the DM funnel engine."""
from __future__ import annotations

from typing import Optional


class FunnelEngineError(Exception):
    """Base exception for all application errors."""

    pass


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(FunnelEngineError):
    """Raised when required configuration is missing or invalid."""

    pass


class MissingCredentialsError(ConfigurationError):
    """Raised when required API credentials are not configured."""

    pass


# =============================================================================
# Database Errors
# =============================================================================


class DatabaseError(FunnelEngineError):
    """Base exception for database-related errors."""

    pass


class ConversationNotFoundError(DatabaseError):
    """Raised when a conversation id does not exist."""

    pass


class FunnelNotFoundError(DatabaseError):
    """Raised when a funnel id does not exist."""

    pass


class ConversationConflictError(DatabaseError):
    """
    Raised when a compare-and-set update on a conversation matched no row.

    Another writer moved the conversation first; callers re-read and retry.
    """

    def __init__(self, conversation_id: str, expected: Optional[str] = None):
        self.conversation_id = conversation_id
        self.expected = expected
        super().__init__(
            f"Conversation {conversation_id} changed concurrently (expected block {expected!r})"
        )


# =============================================================================
# Messaging Provider Errors
# =============================================================================


class MessagingProviderError(FunnelEngineError):
    """Base exception for direct-message provider failures."""

    pass


class TransientProviderError(MessagingProviderError):
    """A provider failure worth retrying (network errors, 5xx)."""

    pass


class RateLimitError(TransientProviderError):
    """Raised when the provider rate limit is exceeded."""

    def __init__(self, message: str = "Rate limited", retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class ProviderUnavailableError(TransientProviderError):
    """Raised when the provider is unreachable or returns a server error."""

    pass


class ProviderAuthError(MessagingProviderError):
    """Raised when the provider rejects our credentials."""

    pass


# =============================================================================
# Script Errors
# =============================================================================


class ScriptError(FunnelEngineError):
    """Raised when a funnel script cannot be parsed or is inconsistent."""

    pass


class InvalidTransitionError(ScriptError):
    """Raised when an option does not belong to the conversation's current block."""

    pass


# =============================================================================
# Handoff Errors
# =============================================================================


class HandoffError(FunnelEngineError):
    """Raised when the handoff to the internal conversation cannot proceed."""

    pass


# =============================================================================
# Notification Errors
# =============================================================================


class NotificationError(FunnelEngineError):
    """Raised when an operator alert cannot be delivered."""

    pass


__all__ = [
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
]
