"""Top-level package for the DM Funnel Engine."""
from __future__ import annotations

__version__ = "1.0.0"

__all__ = [
    "api",
    "core",
    "domain",
    "messaging",
    "scheduler",
    "services",
]
