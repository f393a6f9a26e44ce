"""Tests for the DM provider HTTP client."""
from __future__ import annotations

import json

import httpx
import pytest

from core.exceptions import (
    MessagingProviderError,
    MissingCredentialsError,
    ProviderAuthError,
    ProviderUnavailableError,
    RateLimitError,
)
from messaging.dm_client import DMClient

BASE_URL = "https://dm.test/v1"


def _client(handler, **kwargs) -> DMClient:
    kwargs.setdefault("api_key", "secret")
    kwargs.setdefault("dry_run", False)
    return DMClient(base_url=BASE_URL, transport=httpx.MockTransport(handler), **kwargs)


class TestListUnreadMessages:
    """Fetching inbound messages."""

    def test_parses_and_orders(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(
                200,
                json={
                    "messages": [
                        {"id": "m2", "user_id": "u1", "content": "second", "created_at": "2026-01-05T12:00:05Z"},
                        {"id": "m1", "user_id": "u1", "content": "first", "created_at": "2026-01-05T12:00:01Z"},
                        {"id": "m3", "user_id": "bot", "content": "our own", "created_at": "2026-01-05T12:00:03Z"},
                    ]
                },
            )

        client = _client(handler, agent_user_id="bot")
        messages = client.list_unread_messages("u1", since_cursor="m0")

        assert [m.id for m in messages] == ["m1", "m2"]
        assert messages[0].text == "first"
        assert messages[0].created_at.tzinfo is not None
        assert seen["url"].startswith(f"{BASE_URL}/dm/channels/u1/messages")
        assert "after=m0" in seen["url"]
        assert "limit=50" in seen["url"]
        assert seen["auth"] == "Bearer secret"

    def test_alternate_field_names(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "data": [
                        {"id": 7, "userId": "u1", "text": "hi", "createdAt": 1767614400000},
                        {"id": None, "userId": "u1", "text": "no id"},
                    ]
                },
            )

        messages = _client(handler).list_unread_messages("u1")

        assert len(messages) == 1
        assert messages[0].id == "7"
        assert messages[0].user_id == "u1"
        assert messages[0].created_at.year == 2026

    def test_dry_run_without_credentials_fetches_nothing(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        client = DMClient(base_url=BASE_URL, dry_run=True, transport=httpx.MockTransport(handler))
        client.api_key = None

        assert client.list_unread_messages("u1") == []

    def test_missing_credentials(self):
        client = DMClient(base_url=BASE_URL, dry_run=False)
        client.api_key = None

        with pytest.raises(MissingCredentialsError):
            client.list_unread_messages("u1")

    @pytest.mark.parametrize(
        "status,error",
        [
            (429, RateLimitError),
            (401, ProviderAuthError),
            (403, ProviderAuthError),
            (503, ProviderUnavailableError),
            (400, MessagingProviderError),
        ],
    )
    def test_status_mapping(self, status, error):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status, headers={"Retry-After": "12"}, text="nope")

        with pytest.raises(error) as exc_info:
            _client(handler).list_unread_messages("u1")
        if status == 429:
            assert exc_info.value.retry_after == 12.0

    def test_network_error_is_unavailable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ProviderUnavailableError):
            _client(handler).list_unread_messages("u1")


class TestSend:
    """Outbound messages."""

    def test_live_send(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append((request.method, request.url.path, json.loads(request.content)))
            return httpx.Response(200, json={"id": "out-1"})

        message_id = _client(handler).send("u1", "Hello")

        assert message_id == "out-1"
        assert bodies == [("POST", "/v1/dm/messages", {"user_id": "u1", "message": "Hello"})]

    def test_dry_run_sends_nothing(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        message_id = _client(handler, dry_run=True).send("u1", "Hello")

        assert message_id.startswith("dry-run-")

    def test_auth_failure_not_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(401)

        with pytest.raises(ProviderAuthError):
            _client(handler).send("u1", "Hello")
        assert len(calls) == 1

    def test_response_without_id(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"ok": True})

        with pytest.raises(MessagingProviderError):
            _client(handler).send("u1", "Hello")
