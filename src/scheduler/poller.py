"""Per-conversation poller.

One poller watches one external conversation. Each tick fetches new inbound
messages from the DM provider and feeds them, oldest first, through the
validator and then the navigator or the escalation ladder. Every message is
handled in its own session and committed before the next one is read.

States::

    STARTING -> POLLING -> IDLE_WAIT -> POLLING -> ... -> STOPPED

The poller stops itself when the conversation completes, is abandoned, hands
off, sits on a block its script does not know, or the provider keeps failing.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from core.config import Settings, get_settings
from core.events import (
    EventEmitter,
    POLLER_CONFLICT,
    POLLER_CRASHED,
    POLLER_FETCH_FAILED,
    POLLER_STARTED,
    POLLER_STOPPED,
    POLLER_TICK,
)
from core.exceptions import ConversationConflictError, MessagingProviderError, ProviderAuthError
from core.logging_config import get_context_logger
from core.models import ConversationStatus, MessageType
from core.utils import Clock, ensure_aware, utcnow
from domain.phase import ConversationPhase, classify_phase, phase_reference_time
from domain.validator import validate_response
from messaging.provider import MessagingProvider, ProviderMessage
from scheduler.tick_scheduler import TickScheduler
from services.conversation_store import ConversationStore
from services.escalation import EscalationPolicy
from services.handoff import HandoffOrchestrator
from services.navigator import FunnelNavigator, script_for
from services.notification import NotificationService
from services.retry import timed_call
from services.timeouts import SessionFactory, TimeoutService


class PollerState(str, Enum):
    STARTING = "starting"
    POLLING = "polling"
    IDLE_WAIT = "idle_wait"
    STOPPED = "stopped"


# Stop reasons
STOP_COMPLETED = "completed"
STOP_ABANDONED = "abandoned"
STOP_HANDOFF = "handoff"
STOP_UNKNOWN_BLOCK = "unknown_block"
STOP_NOT_FOUND = "not_found"
STOP_NOT_ACTIVE = "not_active"
STOP_FAILED = "failed"
STOP_CRASHED = "crashed"
STOP_REQUESTED = "stopped"

ERROR_STOPS = frozenset({STOP_FAILED, STOP_CRASHED})

# Per-message outcomes that are not stop reasons
_CONTINUE = None
_NEEDS_HANDOFF = "needs_handoff"
_RETRY_LATER = "retry_later"

StoppedCallback = Callable[["ConversationPoller", str, Optional[str]], None]


@dataclass
class PollerStatus:
    """Snapshot of a poller for status endpoints and the CLI."""

    conversation_id: str
    running: bool
    state: str
    phase: Optional[str]
    started_at: Optional[datetime]
    last_tick_at: Optional[datetime]
    ticks: int
    consecutive_failures: int
    last_error: Optional[str]
    stop_reason: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "running": self.running,
            "state": self.state,
            "phase": self.phase,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "ticks": self.ticks,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
            "stop_reason": self.stop_reason,
        }


class ConversationPoller:
    """
    Polling loop for a single conversation.

    The loop is a chain of one-shot ticks on a ``TickScheduler``; ticks never
    overlap (a tick that finds another in flight returns at once) and ``stop``
    waits for the in-flight tick before reporting STOPPED.
    """

    def __init__(
        self,
        conversation_id: str,
        session_factory: SessionFactory,
        provider: MessagingProvider,
        scheduler: TickScheduler,
        events: Optional[EventEmitter] = None,
        notifier: Optional[NotificationService] = None,
        clock: Clock = utcnow,
        settings: Optional[Settings] = None,
        on_stopped: Optional[StoppedCallback] = None,
    ):
        self.conversation_id = conversation_id
        self.session_factory = session_factory
        self.provider = provider
        self.scheduler = scheduler
        self.events = events or EventEmitter()
        self.notifier = notifier
        self.clock = clock
        self.settings = settings or get_settings()
        self.on_stopped = on_stopped
        self.timeouts = TimeoutService(session_factory, provider, self.events, clock, self.settings)
        self.log = get_context_logger(__name__, conversation_id=conversation_id)

        self.state = PollerState.STARTING
        self.phase: Optional[ConversationPhase] = None
        self.started_at: Optional[datetime] = None
        self.last_tick_at: Optional[datetime] = None
        self.ticks = 0
        self.consecutive_failures = 0
        self.last_error: Optional[str] = None
        self.stop_reason: Optional[str] = None

        self._phase_reference: Optional[datetime] = None
        self._tick_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._stop_requested = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self.state is not PollerState.STOPPED

    def start(self) -> None:
        """Schedule the first tick immediately."""
        self.started_at = self.clock()
        self.scheduler.schedule(self.conversation_id, 0, self.tick)
        self.events.emit(POLLER_STARTED, conversation_id=self.conversation_id, outcome="started")

    def stop(self, reason: str = STOP_REQUESTED, wait: bool = True) -> None:
        """
        Stop polling.

        Cancels the pending tick and, with ``wait``, blocks until a tick that
        is already running finishes, so no write happens after this returns.
        """
        with self._state_lock:
            self._stop_requested = True
        self.scheduler.cancel(self.conversation_id)
        if wait:
            with self._tick_lock:
                self.scheduler.cancel(self.conversation_id)
        self._finish(reason)

    def _finish(self, reason: str, error: Optional[str] = None) -> None:
        with self._state_lock:
            if self.state is PollerState.STOPPED:
                return
            self.state = PollerState.STOPPED
            self.stop_reason = reason
            if error:
                self.last_error = error
            self._stop_requested = True
        self.scheduler.cancel(self.conversation_id)

        self.log.info(f"Poller stopped: {reason}")
        self.events.emit(
            POLLER_STOPPED,
            conversation_id=self.conversation_id,
            phase=self.phase.value if self.phase else None,
            outcome=reason,
            error=error,
            ticks=self.ticks,
        )
        if self.on_stopped is not None:
            self.on_stopped(self, reason, error)

    def status(self) -> PollerStatus:
        return PollerStatus(
            conversation_id=self.conversation_id,
            running=self.running,
            state=self.state.value,
            phase=self.phase.value if self.phase else None,
            started_at=self.started_at,
            last_tick_at=self.last_tick_at,
            ticks=self.ticks,
            consecutive_failures=self.consecutive_failures,
            last_error=self.last_error,
            stop_reason=self.stop_reason,
        )

    def next_interval(self) -> float:
        """Fast polling right after a phase starts, slower afterwards."""
        reference = ensure_aware(self._phase_reference)
        if reference is None:
            return self.settings.poll_regular_interval_seconds
        elapsed = (self.clock() - reference).total_seconds()
        if elapsed < self.settings.poll_initial_window_seconds:
            return self.settings.poll_initial_interval_seconds
        return self.settings.poll_regular_interval_seconds

    # -------------------------------------------------------------------------
    # Tick
    # -------------------------------------------------------------------------

    def tick(self) -> None:
        """One polling round. Never raises; a crash stops this poller only."""
        if not self._tick_lock.acquire(blocking=False):
            return
        stop_reason: Optional[str] = None
        error: Optional[str] = None
        try:
            if self._stop_requested:
                return
            self.state = PollerState.POLLING
            self.last_tick_at = self.clock()
            self.ticks += 1
            stop_reason = self._run_tick()
            if stop_reason in ERROR_STOPS:
                error = self.last_error
        except Exception as e:
            self.log.exception("Poller tick crashed")
            stop_reason = STOP_CRASHED
            error = f"{type(e).__name__}: {e}"
            self.events.emit(
                POLLER_CRASHED,
                conversation_id=self.conversation_id,
                outcome="crashed",
                error=error,
            )
        finally:
            self._tick_lock.release()

        if stop_reason is not None:
            self._finish(stop_reason, error)
            return
        # Checked and scheduled under the lock stop() takes, so a stopped
        # poller never replaces the job of its successor
        with self._state_lock:
            if not self._stop_requested:
                self.state = PollerState.IDLE_WAIT
                self.scheduler.schedule(self.conversation_id, self.next_interval(), self.tick)

    def _run_tick(self) -> Optional[str]:
        """Returns a stop reason, or None to keep polling."""
        try:
            prepared = self._prepare()
        except ConversationConflictError:
            self._conflict("prepare")
            return None
        if isinstance(prepared, str):
            return prepared
        channel_id, cursor, pending_handoff = prepared

        try:
            messages, fetch_ms = timed_call(self.provider.list_unread_messages)(channel_id, cursor)
        except MessagingProviderError as e:
            return self._provider_failed("fetch", e)
        self.consecutive_failures = 0

        self.events.emit(
            POLLER_TICK,
            conversation_id=self.conversation_id,
            phase=self.phase.value if self.phase else None,
            outcome="fetched",
            messages=len(messages),
            fetch_ms=round(fetch_ms, 2),
        )

        for message in messages:
            if self._stop_requested:
                return None
            try:
                outcome = self._process_with_retries(message)
            except MessagingProviderError as e:
                # The message's transaction rolled back; it is re-read next tick
                return self._provider_failed("send", e)
            if outcome == _RETRY_LATER:
                return None
            if outcome == _NEEDS_HANDOFF:
                pending_handoff = True
                continue
            if outcome is not None:
                return outcome

        if pending_handoff and not self._stop_requested:
            return self._handoff()
        return None

    def _prepare(self):
        """
        Start-of-tick checks.

        Returns a stop reason, or (channel_id, cursor, pending_handoff).
        """
        with self.session_factory() as session:
            store = ConversationStore(session)
            conversation = store.get(self.conversation_id)
            if conversation is None:
                self.last_error = "conversation not found"
                return STOP_NOT_FOUND
            script = script_for(conversation)
            self.phase = classify_phase(conversation.current_block_id, script)

            if conversation.status != ConversationStatus.ACTIVE.value:
                return self._status_stop(conversation.status)
            if not conversation.is_external:
                return STOP_NOT_ACTIVE
            if self.phase is ConversationPhase.COMPLETED:
                self.log.error(
                    f"Block {conversation.current_block_id!r} is not in any stage of its script"
                )
                return STOP_UNKNOWN_BLOCK
            if self.timeouts.abandon_if_timed_out(store, conversation, script):
                return STOP_ABANDONED

            self._phase_reference = phase_reference_time(conversation, self.phase)
            return (
                conversation.external_user_id,
                conversation.last_processed_message_id,
                self.phase is ConversationPhase.TRANSITION,
            )

    @staticmethod
    def _status_stop(status: str) -> str:
        if status == ConversationStatus.COMPLETED.value:
            return STOP_COMPLETED
        if status == ConversationStatus.ABANDONED.value:
            return STOP_ABANDONED
        return STOP_NOT_ACTIVE

    def _conflict(self, where: str, attempt: int = 0) -> None:
        self.log.info(f"Conflict during {where}, re-reading (attempt {attempt + 1})")
        self.events.emit(
            POLLER_CONFLICT,
            conversation_id=self.conversation_id,
            outcome="retry",
            where=where,
            attempt=attempt + 1,
        )

    def _provider_failed(self, operation: str, error: MessagingProviderError) -> Optional[str]:
        self.consecutive_failures += 1
        self.last_error = f"{operation}: {error}"
        self.log.warning(
            f"Provider {operation} failed ({self.consecutive_failures}/"
            f"{self.settings.poll_max_consecutive_failures}): {error}"
        )
        self.events.emit(
            POLLER_FETCH_FAILED,
            conversation_id=self.conversation_id,
            phase=self.phase.value if self.phase else None,
            outcome=operation,
            error=str(error),
            consecutive_failures=self.consecutive_failures,
        )
        if isinstance(error, ProviderAuthError):
            return STOP_FAILED
        if self.consecutive_failures >= self.settings.poll_max_consecutive_failures:
            return STOP_FAILED
        return None

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def _process_with_retries(self, message: ProviderMessage) -> Optional[str]:
        attempts = self.settings.poll_max_conflict_retries
        for attempt in range(attempts):
            try:
                with self.session_factory() as session:
                    return self._process_message(session, message)
            except ConversationConflictError:
                self._conflict(f"message {message.id}", attempt)
        self.log.warning(f"Giving up on message {message.id} this tick after {attempts} conflicts")
        return _RETRY_LATER

    def _process_message(self, session, message: ProviderMessage) -> Optional[str]:
        store = ConversationStore(session)
        conversation = store.require(self.conversation_id, refresh=True)
        if conversation.status != ConversationStatus.ACTIVE.value:
            return self._status_stop(conversation.status)

        now = self.clock()
        if store.has_message(conversation.id, message.id):
            store.advance_cursor(conversation.id, message.id, now)
            return _CONTINUE

        script = script_for(conversation)
        phase = classify_phase(conversation.current_block_id, script)
        self.phase = phase

        store.add_message(
            conversation.id,
            MessageType.USER,
            message.text,
            provider_message_id=message.id,
            metadata={"block_id": conversation.current_block_id},
            now=message.created_at or now,
        )
        store.advance_cursor(conversation.id, message.id, now)

        if phase is ConversationPhase.TRANSITION:
            # Kept as history for the private chat; the handoff answers it
            return _NEEDS_HANDOFF
        if phase is ConversationPhase.COMPLETED:
            return STOP_UNKNOWN_BLOCK

        block = script.get_block(conversation.current_block_id)
        result = validate_response(message.text, block.options)
        if result.is_valid:
            navigation = FunnelNavigator(
                session, self.provider, events=self.events, clock=self.clock
            ).advance(
                conversation,
                result.option,
                source_message_id=message.id,
                user_text=message.text,
                script=script,
            )
            self.phase = navigation.phase
            if navigation.completed:
                return STOP_COMPLETED
            if navigation.needs_handoff:
                return _NEEDS_HANDOFF
            if navigation.phase is not phase:
                self._phase_reference = now
            return _CONTINUE

        escalation = EscalationPolicy(
            session,
            self.provider,
            notifier=self.notifier,
            events=self.events,
            clock=self.clock,
            settings=self.settings,
        ).handle_invalid(conversation, message.text, phase=phase.value)
        if escalation.abandoned:
            return STOP_ABANDONED
        return _CONTINUE

    def _handoff(self) -> Optional[str]:
        try:
            with self.session_factory() as session:
                HandoffOrchestrator(
                    session,
                    self.provider,
                    events=self.events,
                    clock=self.clock,
                    settings=self.settings,
                ).run(self.conversation_id)
        except MessagingProviderError as e:
            # Setup is committed; the next tick retries the send
            return self._provider_failed("handoff", e)
        except ConversationConflictError:
            self._conflict("handoff")
            return None
        self.phase = ConversationPhase.TRANSITION
        return STOP_HANDOFF


__all__ = [
    "ConversationPoller",
    "PollerState",
    "PollerStatus",
    "STOP_ABANDONED",
    "STOP_COMPLETED",
    "STOP_CRASHED",
    "STOP_FAILED",
    "STOP_HANDOFF",
    "STOP_REQUESTED",
    "STOP_UNKNOWN_BLOCK",
    "ERROR_STOPS",
]
