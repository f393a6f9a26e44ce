"""Supervision of the active pollers in this process."""
from __future__ import annotations

import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from core.config import Settings, get_settings
from core.events import EventEmitter
from core.logging_config import get_logger
from core.utils import Clock, utcnow
from messaging.provider import MessagingProvider
from scheduler.poller import ERROR_STOPS, ConversationPoller, PollerStatus
from scheduler.tick_scheduler import TickScheduler
from services.conversation_store import ConversationStore
from services.notification import NotificationService
from services.timeouts import SessionFactory

LOGGER = get_logger(__name__)

HISTORY_SIZE = 200


class MonitoringRegistry:
    """
    Keyed set of pollers, at most one running per conversation id.

    Built once per process with everything a poller needs injected::

        registry = MonitoringRegistry(session_factory, provider, ticks, events=events)
        registry.restore()
        registry.start(conversation_id)

    Stopped pollers leave the live set; their final status stays readable
    through ``status`` until it ages out of the history.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        provider: MessagingProvider,
        scheduler: TickScheduler,
        events: Optional[EventEmitter] = None,
        notifier: Optional[NotificationService] = None,
        clock: Clock = utcnow,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.scheduler = scheduler
        self.events = events or EventEmitter()
        self.notifier = notifier
        self.clock = clock
        self.settings = settings or get_settings()

        self._pollers: Dict[str, ConversationPoller] = {}
        self._history: Dict[str, PollerStatus] = {}
        self._history_order: Deque[str] = deque()
        self._lock = threading.RLock()

    def _build_poller(self, conversation_id: str) -> ConversationPoller:
        return ConversationPoller(
            conversation_id,
            self.session_factory,
            self.provider,
            self.scheduler,
            events=self.events,
            notifier=self.notifier,
            clock=self.clock,
            settings=self.settings,
            on_stopped=self._on_poller_stopped,
        )

    def start(self, conversation_id: str) -> bool:
        """
        Begin polling ``conversation_id``.

        Returns:
            True if a poller was started, False if one was already running.
        """
        with self._lock:
            existing = self._pollers.get(conversation_id)
            if existing is not None and existing.running:
                return False
            poller = self._build_poller(conversation_id)
            self._pollers[conversation_id] = poller
        poller.start()
        LOGGER.info(f"Monitoring started for conversation {conversation_id}")
        return True

    def stop(self, conversation_id: str) -> bool:
        """
        Stop polling ``conversation_id``; waits for an in-flight tick.

        Returns:
            True if a running poller was stopped.
        """
        with self._lock:
            poller = self._pollers.get(conversation_id)
        if poller is None or not poller.running:
            return False
        poller.stop(wait=True)
        return True

    def _on_poller_stopped(
        self, poller: ConversationPoller, reason: str, error: Optional[str]
    ) -> None:
        with self._lock:
            if self._pollers.get(poller.conversation_id) is poller:
                del self._pollers[poller.conversation_id]
            self._remember(poller.status())

        if reason in ERROR_STOPS:
            LOGGER.error(
                f"Poller for {poller.conversation_id} stopped on error: {error}",
                extra={"extra_data": {"conversation_id": poller.conversation_id, "reason": reason}},
            )
            if self.notifier is not None:
                self.notifier.alert_poller_failed(poller.conversation_id, error or reason)

    def _remember(self, status: PollerStatus) -> None:
        if status.conversation_id not in self._history:
            self._history_order.append(status.conversation_id)
        self._history[status.conversation_id] = status
        while len(self._history_order) > HISTORY_SIZE:
            self._history.pop(self._history_order.popleft(), None)

    def is_running(self, conversation_id: str) -> bool:
        with self._lock:
            poller = self._pollers.get(conversation_id)
        return poller is not None and poller.running

    def status(self, conversation_id: str) -> Optional[PollerStatus]:
        """Live status if polling, otherwise the last recorded one."""
        with self._lock:
            poller = self._pollers.get(conversation_id)
            if poller is not None:
                return poller.status()
            return self._history.get(conversation_id)

    def list(self) -> List[PollerStatus]:
        with self._lock:
            pollers = list(self._pollers.values())
        return [p.status() for p in pollers]

    def restore(self) -> List[str]:
        """Start a poller for every active external conversation on record."""
        with self.session_factory() as session:
            conversation_ids = [c.id for c in ConversationStore(session).list_active_external()]
        started = [cid for cid in conversation_ids if self.start(cid)]
        LOGGER.info(
            f"Restored monitoring for {len(started)} of {len(conversation_ids)} active conversations"
        )
        return started

    def stop_all(self) -> int:
        with self._lock:
            conversation_ids = list(self._pollers)
        stopped = sum(1 for cid in conversation_ids if self.stop(cid))
        LOGGER.info(f"Stopped {stopped} pollers")
        return stopped

    def summary(self) -> Dict[str, Any]:
        statuses = self.list()
        by_state: Dict[str, int] = {}
        for status in statuses:
            by_state[status.state] = by_state.get(status.state, 0) + 1
        return {
            "running": len(statuses),
            "by_state": by_state,
            "pollers": [s.to_dict() for s in statuses],
        }


__all__ = ["MonitoringRegistry"]
