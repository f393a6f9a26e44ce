"""API tests against an injected engine."""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from api.app import create_app
from conftest import EXPERIENCE_ID, set_fields
from core.exceptions import ProviderUnavailableError
from core.models import ConversationStatus
from scheduler.runner import build_engine


@pytest.fixture
def funnel_engine(session_factory, provider, ticks, events, notifier, clock, settings):
    return build_engine(
        settings=settings,
        session_factory=session_factory,
        provider=provider,
        ticks=ticks,
        events=events,
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture
def client(funnel_engine, funnel):
    with TestClient(create_app(funnel_engine)) as test_client:
        yield test_client


def _join(client, user_id="user_1", experience_id=EXPERIENCE_ID):
    return client.post(
        "/webhooks/user-joined", json={"user_id": user_id, "experience_id": experience_id}
    )


class TestHealth:
    def test_health(self, client):
        response = client.get("/health/")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_detailed(self, client):
        data = client.get("/health/detailed").json()
        assert data["checks"]["database"]["status"] == "healthy"
        assert data["checks"]["engine"]["status"] == "running"


class TestUserJoinedWebhook:
    """Inbound user-joined events."""

    def test_creates_then_ignores_repeat(self, client, provider, funnel_engine):
        first = _join(client)
        assert first.status_code == 200
        body = first.json()
        assert body["created"] is True
        assert body["block_id"] == "welcome-1"
        assert funnel_engine.registry.is_running(body["conversation_id"])

        second = _join(client).json()
        assert second["created"] is False
        assert second["conversation_id"] == body["conversation_id"]
        assert len(provider.sent) == 1

    def test_unknown_experience(self, client):
        response = _join(client, experience_id="exp_missing")
        assert response.status_code == 404
        assert response.json()["error"] == "funnel_not_found"

    def test_invalid_payload(self, client):
        response = client.post("/webhooks/user-joined", json={"user_id": ""})
        assert response.status_code == 422


class TestConversationsApi:
    """Status, progress and monitoring control."""

    def test_list_and_filter(self, client, session_factory):
        first = _join(client, "user_1").json()["conversation_id"]
        _join(client, "user_2")
        set_fields(session_factory, first, status=ConversationStatus.ABANDONED.value)

        everything = client.get("/conversations").json()
        assert everything["count"] == 2

        active = client.get("/conversations", params={"status": "active"}).json()
        assert [c["external_user_id"] for c in active["conversations"]] == ["user_2"]

        internal = client.get("/conversations", params={"type": "internal"}).json()
        assert internal["count"] == 0

    def test_get_conversation(self, client):
        conversation_id = _join(client).json()["conversation_id"]

        data = client.get(f"/conversations/{conversation_id}").json()

        assert data["phase"] == "PHASE1"
        assert data["current_block_id"] == "welcome-1"
        assert data["message_count"] == 1
        assert data["interactions"] == []
        assert data["monitoring"]["running"] is True

    def test_missing_conversation(self, client):
        response = client.get("/conversations/nope")
        assert response.status_code == 404
        assert response.json()["error"] == "conversation_not_found"

    def test_messages(self, client):
        conversation_id = _join(client).json()["conversation_id"]

        data = client.get(f"/conversations/{conversation_id}/messages").json()

        assert data["count"] == 1
        assert data["messages"][0]["type"] == "bot"

    def test_stop_and_start_monitoring(self, client, ticks):
        conversation_id = _join(client).json()["conversation_id"]

        stopped = client.post(f"/conversations/{conversation_id}/monitoring/stop").json()
        assert stopped["stopped"] is True
        assert stopped["monitoring"]["state"] == "stopped"
        assert ticks.pending() == []

        started = client.post(f"/conversations/{conversation_id}/monitoring/start").json()
        assert started["started"] is True
        assert ticks.pending() == [conversation_id]

    def test_start_monitoring_missing(self, client):
        assert client.post("/conversations/nope/monitoring/start").status_code == 404

    def test_handoff_requires_transition(self, client, funnel_engine):
        conversation_id = _join(client).json()["conversation_id"]

        response = client.post(f"/conversations/{conversation_id}/handoff")

        assert response.status_code == 422
        assert response.json()["error"] == "handoff_error"
        assert funnel_engine.registry.is_running(conversation_id)

    def test_handoff_stops_monitoring(self, client, funnel_engine, session_factory, provider, ticks):
        conversation_id = _join(client).json()["conversation_id"]
        set_fields(session_factory, conversation_id, current_block_id="transition-1")

        result = client.post(f"/conversations/{conversation_id}/handoff").json()

        assert result["completed"] is True
        assert not funnel_engine.registry.is_running(conversation_id)
        assert conversation_id not in ticks.pending()
        assert sum(1 for t in provider.texts_to("user_1") if result["link"] in t) == 1

    def test_failed_handoff_send_resumes_monitoring(
        self, client, funnel_engine, session_factory, provider
    ):
        conversation_id = _join(client).json()["conversation_id"]
        set_fields(session_factory, conversation_id, current_block_id="transition-1")
        provider.send_error = ProviderUnavailableError("down")

        response = client.post(f"/conversations/{conversation_id}/handoff")

        assert response.status_code == 503
        assert funnel_engine.registry.is_running(conversation_id)


class TestMonitoringApi:
    def test_summary(self, client):
        _join(client, "user_1")
        _join(client, "user_2")

        data = client.get("/monitoring").json()

        assert data["running"] == 2
        assert len(data["pollers"]) == 2

    def test_manual_sweep(self, client):
        _join(client)

        data = client.post("/monitoring/sweep").json()

        assert data["success"] is True
        assert data["job_type"] == "timeout_sweep"

    def test_restore(self, client, funnel_engine):
        conversation_id = _join(client).json()["conversation_id"]
        funnel_engine.registry.stop(conversation_id)

        data = client.post("/monitoring/restore").json()

        assert data["started"] == [conversation_id]


class TestChatApi:
    """Resolving handoff links."""

    @pytest.fixture
    def handed_off(self, client, session_factory):
        conversation_id = _join(client).json()["conversation_id"]
        set_fields(session_factory, conversation_id, current_block_id="transition-1")
        result = client.post(f"/conversations/{conversation_id}/handoff").json()
        assert result["completed"] is True
        return conversation_id, result["internal_id"]

    def test_chat_link_resolves(self, client, handed_off):
        _, internal_id = handed_off

        short = client.get(f"/chat/{internal_id}")
        full = client.get(f"/experiences/{EXPERIENCE_ID}/chat/{internal_id}")

        assert short.status_code == 200
        assert full.status_code == 200
        data = full.json()
        assert data["conversation"]["conversation_type"] == "internal"
        assert data["conversation"]["current_block_id"] == "exp-1"
        assert len(data["history"]) == 1
        assert data["history"][0]["type"] == "bot"

    def test_wrong_experience(self, client, handed_off):
        _, internal_id = handed_off
        assert client.get(f"/experiences/exp_other/chat/{internal_id}").status_code == 404

    def test_external_conversation_is_not_a_chat(self, client, handed_off):
        origin_id, _ = handed_off
        assert client.get(f"/chat/{origin_id}").status_code == 404

    def test_origin_completed(self, client, handed_off):
        origin_id, internal_id = handed_off

        data = client.get(f"/conversations/{origin_id}").json()

        assert data["status"] == "completed"
        assert data["internal_conversation_id"] == internal_id
