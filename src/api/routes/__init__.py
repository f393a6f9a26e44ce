"""API route modules."""
from __future__ import annotations

from . import (
    chat,
    conversations,
    health,
    monitoring,
    webhooks,
)

__all__ = [
    "chat",
    "conversations",
    "health",
    "monitoring",
    "webhooks",
]
