"""Tests for timeout abandonment and reminder nudges."""
from __future__ import annotations

import pytest

from conftest import load_conversation, set_fields
from core.events import CONVERSATION_ABANDONED, NUDGE_SENT
from core.exceptions import ProviderUnavailableError
from core.models import AbandonReason, ConversationStatus, ConversationType
from domain.phase import ConversationPhase
from scheduler.jobs import run_nudge_job, run_timeout_sweep
from services.conversation_store import ConversationStore
from services.escalation import EscalationPolicy
from services.navigator import FunnelNavigator, script_for
from services.timeouts import NUDGE_MESSAGES, TimeoutService, nudge_message


@pytest.fixture
def timeouts(session_factory, provider, events, clock, settings):
    return TimeoutService(session_factory, provider, events, clock=clock, settings=settings)


def _choose(session_factory, provider, events, clock, conversation_id, index=0):
    with session_factory() as session:
        conversation = ConversationStore(session).require(conversation_id)
        option = script_for(conversation).get_block(conversation.current_block_id).options[index]
        FunnelNavigator(session, provider, events=events, clock=clock).advance(conversation, option)


class TestTimeoutSweep:
    """Abandonment after the inactivity ceiling."""

    def test_abandons_after_ceiling(self, timeouts, session_factory, provider, recorder, clock, start_conversation):
        conversation_id = start_conversation()
        sent_before = len(provider.sent)

        clock.advance(hours=23)
        assert timeouts.sweep().affected == []

        clock.advance(hours=2)
        result = timeouts.sweep()

        assert result.affected == [conversation_id]
        conversation = load_conversation(session_factory, conversation_id)
        assert conversation.status == ConversationStatus.ABANDONED.value
        assert conversation.abandon_reason == AbandonReason.TIMEOUT.value
        # Nothing is sent on timeout
        assert len(provider.sent) == sent_before
        assert recorder.of(CONVERSATION_ABANDONED)[0].outcome == AbandonReason.TIMEOUT.value

    def test_phase2_measured_from_entry(self, timeouts, session_factory, provider, events, clock, start_conversation):
        conversation_id = start_conversation()
        clock.advance(hours=20)
        _choose(session_factory, provider, events, clock, conversation_id)

        clock.advance(hours=5)
        assert timeouts.sweep().affected == []

        clock.advance(hours=20)
        assert timeouts.sweep().affected == [conversation_id]

    def test_internal_conversations_ignored(self, timeouts, session_factory, clock, funnel):
        with session_factory() as session:
            internal_id = ConversationStore(session).create(
                "user_1", "exp_1", funnel, "exp-1",
                conversation_type=ConversationType.INTERNAL, now=clock(),
            ).id

        clock.advance(hours=48)
        result = timeouts.sweep()

        assert result.checked == 0
        assert load_conversation(session_factory, internal_id).status == ConversationStatus.ACTIVE.value

    def test_job_wrapper(self, timeouts, clock, start_conversation):
        start_conversation()
        clock.advance(hours=30)

        outcome = run_timeout_sweep(timeouts)

        assert outcome["success"]
        assert outcome["job_type"] == "timeout_sweep"
        assert outcome["result"]["count"] == 1


class TestNudges:
    """Reminders at fixed offsets after phase entry."""

    def test_phase1_schedule(self, timeouts, session_factory, provider, recorder, clock, start_conversation):
        conversation_id = start_conversation()

        clock.advance(minutes=9)
        assert timeouts.send_due_nudges().affected == []

        clock.advance(minutes=1)
        assert timeouts.send_due_nudges().affected == [conversation_id]
        assert provider.texts_to("user_1")[-1] == NUDGE_MESSAGES[ConversationPhase.PHASE1][10]

        # Not repeated
        assert timeouts.send_due_nudges().affected == []

        clock.advance(minutes=50)
        timeouts.send_due_nudges()
        assert provider.texts_to("user_1")[-1] == NUDGE_MESSAGES[ConversationPhase.PHASE1][60]

        conversation = load_conversation(session_factory, conversation_id)
        assert conversation.nudges_sent == ["PHASE1:10", "PHASE1:60"]
        assert [e.outcome for e in recorder.of(NUDGE_SENT)] == ["10m", "60m"]

    def test_missed_offsets_collapse(self, timeouts, session_factory, provider, clock, start_conversation):
        """After downtime only the latest due reminder goes out."""
        conversation_id = start_conversation()
        sent_before = len(provider.sent)

        clock.advance(minutes=61)
        timeouts.send_due_nudges()

        assert len(provider.sent) == sent_before + 1
        assert provider.texts_to("user_1")[-1] == NUDGE_MESSAGES[ConversationPhase.PHASE1][60]
        assert load_conversation(session_factory, conversation_id).nudges_sent == ["PHASE1:10", "PHASE1:60"]

    def test_skipped_when_user_replied_after_due(
        self, timeouts, session_factory, provider, notifier, events, clock, settings, start_conversation
    ):
        conversation_id = start_conversation()
        clock.advance(minutes=11)
        with session_factory() as session:
            conversation = ConversationStore(session).require(conversation_id)
            EscalationPolicy(
                session, provider, notifier=notifier, events=events, clock=clock, settings=settings
            ).handle_invalid(conversation, "hmm")
        sent_before = len(provider.sent)

        clock.advance(minutes=1)
        assert timeouts.send_due_nudges().affected == []
        assert len(provider.sent) == sent_before
        assert load_conversation(session_factory, conversation_id).nudges_sent == ["PHASE1:10"]

    def test_phase2_schedule(self, timeouts, session_factory, provider, events, clock, start_conversation):
        conversation_id = start_conversation()
        clock.advance(minutes=5)
        _choose(session_factory, provider, events, clock, conversation_id)

        clock.advance(minutes=15)
        assert timeouts.send_due_nudges().affected == [conversation_id]
        assert provider.texts_to("user_1")[-1] == NUDGE_MESSAGES[ConversationPhase.PHASE2][15]

    def test_no_nudges_at_transition(self, timeouts, session_factory, clock, start_conversation):
        conversation_id = start_conversation()
        set_fields(session_factory, conversation_id, current_block_id="transition-1")

        clock.advance(minutes=61)
        assert timeouts.send_due_nudges().affected == []

    def test_send_failure_leaves_nudge_pending(self, timeouts, session_factory, provider, clock, start_conversation):
        conversation_id = start_conversation()
        clock.advance(minutes=10)
        provider.send_error = ProviderUnavailableError("down")

        result = timeouts.send_due_nudges()

        assert result.affected == []
        assert len(result.errors) == 1
        assert load_conversation(session_factory, conversation_id).nudges_sent == []

        provider.send_error = None
        assert run_nudge_job(timeouts)["result"]["count"] == 1

    def test_custom_offsets_reuse_earlier_text(self):
        assert nudge_message(ConversationPhase.PHASE1, 30) == NUDGE_MESSAGES[ConversationPhase.PHASE1][10]
        assert nudge_message(ConversationPhase.PHASE1, 5) == NUDGE_MESSAGES[ConversationPhase.PHASE1][10]
        assert nudge_message(ConversationPhase.PHASE2, 900) == NUDGE_MESSAGES[ConversationPhase.PHASE2][720]
