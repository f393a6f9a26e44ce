"""The direct-message provider contract the engine polls and sends through."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional


@dataclass(frozen=True)
class ProviderMessage:
    """One inbound message as reported by the provider."""

    id: str
    user_id: str
    text: str
    created_at: Optional[datetime] = None


class MessagingProvider(ABC):
    """
    External DM channel.

    Implementations may raise ``RateLimitError`` / ``ProviderUnavailableError``
    for transient failures; callers back off and retry, they never fail a
    conversation over it. Listings may contain duplicates and messages
    already seen; callers dedup by message id.
    """

    @abstractmethod
    def list_unread_messages(
        self, channel_id: str, since_cursor: Optional[str] = None
    ) -> List[ProviderMessage]:
        """
        Inbound messages on ``channel_id`` newer than ``since_cursor``.

        ``channel_id`` is the external user id the conversation is held with.
        Results are in provider receipt order, oldest first.
        """

    @abstractmethod
    def send(self, user_id: str, text: str) -> str:
        """Send ``text`` to ``user_id``; returns the provider message id."""

    def close(self) -> None:
        """Release any connections held by the provider."""
        return None


__all__ = ["ProviderMessage", "MessagingProvider"]
