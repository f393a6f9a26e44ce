"""Structured domain events.

Every conversation-level outcome (reply accepted, re-prompt sent, poller
stopped, handoff completed, ...) goes through an ``EventEmitter``. The emitter
logs the event with structured fields and hands it to any subscribed
listeners, which lets tests assert on what happened without parsing log text.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from core.logging_config import get_logger
from core.utils import utcnow

LOGGER = get_logger(__name__)


# Event names
CONVERSATION_STARTED = "conversation_started"
REPLY_ACCEPTED = "reply_accepted"
REPLY_DUPLICATE = "reply_duplicate"
REPLY_REJECTED = "reply_rejected"
CONVERSATION_COMPLETED = "conversation_completed"
CONVERSATION_ABANDONED = "conversation_abandoned"
NUDGE_SENT = "nudge_sent"
SEND_FAILED = "send_failed"
POLLER_STARTED = "poller_started"
POLLER_TICK = "poller_tick"
POLLER_FETCH_FAILED = "poller_fetch_failed"
POLLER_CONFLICT = "poller_conflict"
POLLER_STOPPED = "poller_stopped"
POLLER_CRASHED = "poller_crashed"
HANDOFF_STARTED = "handoff_started"
HANDOFF_COMPLETED = "handoff_completed"
HANDOFF_FAILED = "handoff_failed"
OPERATOR_ALERT = "operator_alert"


@dataclass
class FunnelEvent:
    """One structured event."""

    name: str
    conversation_id: Optional[str] = None
    phase: Optional[str] = None
    outcome: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "event": self.name,
            "conversation_id": self.conversation_id,
            "phase": self.phase,
            "outcome": self.outcome,
            "data": self.data,
            "at": self.at.isoformat(),
        }


Listener = Callable[[FunnelEvent], None]


class EventEmitter:
    """Logs events and fans them out to listeners."""

    # Events that indicate something an operator may need to look at
    WARNING_EVENTS = {
        SEND_FAILED,
        POLLER_FETCH_FAILED,
        POLLER_CRASHED,
        HANDOFF_FAILED,
        OPERATOR_ALERT,
    }

    def __init__(self, logger=None):
        self._logger = logger or LOGGER
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a callable that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def emit(
        self,
        name: str,
        conversation_id: Optional[str] = None,
        phase: Optional[str] = None,
        outcome: Optional[str] = None,
        **data: Any,
    ) -> FunnelEvent:
        event = FunnelEvent(
            name=name,
            conversation_id=conversation_id,
            phase=phase,
            outcome=outcome,
            data=data,
        )

        log = self._logger.warning if name in self.WARNING_EVENTS else self._logger.info
        log(
            f"[{name}] conversation={conversation_id} phase={phase} outcome={outcome}",
            extra={
                "extra_data": event.to_dict(),
                "conversation_id": conversation_id,
                "phase": phase,
            },
        )

        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                # Listener errors never reach the emitter
                self._logger.exception(f"Event listener failed for {name}")

        return event


__all__ = ["FunnelEvent", "EventEmitter", "Listener"]
