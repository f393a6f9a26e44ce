"""Tests for the invalid-reply escalation ladder."""
from __future__ import annotations

import pytest

from conftest import SAMPLE_FLOW, load_conversation, load_interactions, set_fields
from core.events import CONVERSATION_ABANDONED, OPERATOR_ALERT, REPLY_REJECTED
from core.exceptions import ConversationConflictError
from core.models import AbandonReason, ConversationStatus
from domain.script import Option
from domain.validator import validate_response
from services.conversation_store import ConversationStore
from services.escalation import (
    ACTION_ABANDON,
    ACTION_REPROMPT,
    ACTION_WARN,
    FINAL_MESSAGE,
    REPROMPT_MESSAGE,
    WARNING_MESSAGE,
    EscalationPolicy,
    escalation_action,
)


@pytest.fixture
def reject(session_factory, provider, notifier, events, clock, settings):
    """Feed one invalid reply through the ladder in its own session."""

    def _reject(conversation_id: str, text: str = "banana"):
        with session_factory() as session:
            conversation = ConversationStore(session).require(conversation_id)
            policy = EscalationPolicy(
                session, provider, notifier=notifier, events=events, clock=clock, settings=settings
            )
            return policy.handle_invalid(conversation, text, phase="PHASE1")

    return _reject


class TestEscalationAction:
    """Ladder steps by count."""

    @pytest.mark.parametrize(
        "count,ceiling,action",
        [
            (1, 3, ACTION_REPROMPT),
            (2, 3, ACTION_WARN),
            (3, 3, ACTION_ABANDON),
            (4, 5, ACTION_WARN),
            (1, 1, ACTION_ABANDON),
        ],
    )
    def test_steps(self, count, ceiling, action):
        assert escalation_action(count, ceiling) == action


class TestEscalationPolicy:
    """Consecutive invalid replies on one conversation."""

    def test_first_invalid_reprompts(self, reject, session_factory, provider, recorder, start_conversation):
        conversation_id = start_conversation()

        result = reject(conversation_id)

        assert result.action == ACTION_REPROMPT
        assert result.invalid_count == 1
        assert provider.texts_to("user_1")[-1] == REPROMPT_MESSAGE
        conversation = load_conversation(session_factory, conversation_id)
        assert conversation.invalid_response_count == 1
        assert conversation.current_block_id == "welcome-1"
        assert recorder.of(REPLY_REJECTED)[0].outcome == ACTION_REPROMPT
        assert recorder.of(OPERATOR_ALERT) == []

    def test_stale_reply_at_qualification_reprompts_in_place(
        self, reject, session_factory, provider, start_conversation
    ):
        """A leftover "done" at qual-1 counts once and moves nothing."""
        conversation_id = start_conversation()
        path = ["welcome-1", "value-1", "qual-1"]
        set_fields(session_factory, conversation_id, current_block_id="qual-1", user_path=path)
        before = load_conversation(session_factory, conversation_id)
        qual_options = [
            Option(o["text"], o["nextBlockId"]) for o in SAMPLE_FLOW["blocks"]["qual-1"]["options"]
        ]
        assert not validate_response("done", qual_options).is_valid

        result = reject(conversation_id, "done")

        assert result.action == ACTION_REPROMPT
        assert result.invalid_count == 1
        assert provider.texts_to("user_1")[-1] == REPROMPT_MESSAGE
        after = load_conversation(session_factory, conversation_id)
        assert after.invalid_response_count == 1
        assert after.current_block_id == "qual-1"
        assert after.user_path == path
        assert after.phase2_started_at == before.phase2_started_at
        assert after.status == ConversationStatus.ACTIVE.value
        assert load_interactions(session_factory, conversation_id) == []

    def test_second_invalid_warns_and_alerts(self, reject, provider, recorder, start_conversation):
        conversation_id = start_conversation()
        reject(conversation_id)

        result = reject(conversation_id, "talk to a human")

        assert result.action == ACTION_WARN
        assert provider.texts_to("user_1")[-1] == WARNING_MESSAGE
        alerts = recorder.of(OPERATOR_ALERT)
        assert len(alerts) == 1
        assert alerts[0].conversation_id == conversation_id
        assert alerts[0].outcome == "human_requested"
        assert "talk to a human" in alerts[0].data["message"]

    def test_ceiling_abandons(self, reject, session_factory, provider, recorder, start_conversation):
        conversation_id = start_conversation()
        reject(conversation_id)
        reject(conversation_id)

        result = reject(conversation_id)

        assert result.abandoned
        assert provider.texts_to("user_1")[-1] == FINAL_MESSAGE
        conversation = load_conversation(session_factory, conversation_id)
        assert conversation.status == ConversationStatus.ABANDONED.value
        assert conversation.abandon_reason == AbandonReason.MAX_INVALID_RESPONSES.value
        abandoned = recorder.of(CONVERSATION_ABANDONED)
        assert [e.outcome for e in abandoned] == [AbandonReason.MAX_INVALID_RESPONSES.value]

    def test_count_restarts_after_reset(self, reject, session_factory, provider, start_conversation):
        """A valid reply in between starts the ladder over."""
        conversation_id = start_conversation()
        reject(conversation_id)
        reject(conversation_id)
        set_fields(session_factory, conversation_id, invalid_response_count=0)

        assert reject(conversation_id).action == ACTION_REPROMPT

    def test_abandoned_conversation_not_counted(self, reject, session_factory, provider, start_conversation):
        conversation_id = start_conversation()
        set_fields(session_factory, conversation_id, status=ConversationStatus.ABANDONED.value)
        sent_before = len(provider.sent)

        with pytest.raises(ConversationConflictError):
            reject(conversation_id)

        assert len(provider.sent) == sent_before
        assert load_conversation(session_factory, conversation_id).invalid_response_count == 0

    def test_custom_ceiling(self, session_factory, provider, notifier, events, clock, settings, start_conversation):
        conversation_id = start_conversation()
        strict = settings.model_copy(update={"max_invalid_responses": 1})

        with session_factory() as session:
            conversation = ConversationStore(session).require(conversation_id)
            result = EscalationPolicy(
                session, provider, notifier=notifier, events=events, clock=clock, settings=strict
            ).handle_invalid(conversation, "nope")

        assert result.abandoned
        assert provider.texts_to("user_1")[-1] == FINAL_MESSAGE
