"""HTTP client for the direct-message provider API.

Provides:
- Listing of unread inbound messages per DM channel
- Sending with tenacity retries on transient failures
- Mapping of HTTP failures onto the provider exception hierarchy
- DRY_RUN mode that logs instead of sending
"""
from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from core.config import get_settings
from core.exceptions import (
    MessagingProviderError,
    MissingCredentialsError,
    ProviderAuthError,
    ProviderUnavailableError,
    RateLimitError,
)
from core.logging_config import get_logger, log_external_call
from messaging.provider import MessagingProvider, ProviderMessage
from services.retry import with_retry

LOGGER = get_logger(__name__)
SETTINGS = get_settings()

SERVICE_NAME = "dm_provider"
PAGE_SIZE = 50


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, (int, float)):
        # Epoch seconds or milliseconds
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _raise_for_status(response: httpx.Response, operation: str) -> None:
    """Translate an error response into a provider exception."""
    if response.is_success:
        return

    status = response.status_code
    if status == 429:
        retry_after = response.headers.get("Retry-After")
        try:
            retry_seconds = float(retry_after) if retry_after else None
        except ValueError:
            retry_seconds = None
        raise RateLimitError(f"{operation}: rate limited", retry_after=retry_seconds)
    if status in (401, 403):
        raise ProviderAuthError(f"{operation}: provider rejected credentials ({status})")
    if status >= 500:
        raise ProviderUnavailableError(f"{operation}: provider error {status}")
    raise MessagingProviderError(f"{operation}: unexpected status {status}: {response.text[:200]}")


class DMClient(MessagingProvider):
    """
    Direct-message provider client over HTTP.

    Usage:
        client = get_dm_client()
        for message in client.list_unread_messages("user_123", since_cursor="msg_9"):
            ...
        client.send("user_123", "Hello!")
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        agent_user_id: Optional[str] = None,
        timeout: Optional[float] = None,
        dry_run: Optional[bool] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Provider API root (uses env if not provided).
            api_key: Bearer token (uses env if not provided).
            agent_user_id: Id of the bot account; its messages are skipped.
            timeout: Request timeout in seconds.
            dry_run: Log sends instead of performing them.
            transport: Optional httpx transport (tests use ``httpx.MockTransport``).
        """
        self.base_url = (base_url or SETTINGS.dm_api_base_url).rstrip("/")
        self.api_key = api_key or SETTINGS.dm_api_key
        self.agent_user_id = agent_user_id or SETTINGS.dm_agent_user_id
        self.timeout = timeout or SETTINGS.dm_api_timeout_seconds
        self.dry_run = SETTINGS.dry_run if dry_run is None else dry_run
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None:
            if not self.api_key:
                raise MissingCredentialsError(
                    "DM provider API key not configured. Set DM_API_KEY environment variable."
                )
            self._client = httpx.Client(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Authorization": f"Bearer {self.api_key}"},
                transport=self._transport,
            )
        return self._client

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _request(self, method: str, path: str, operation: str, **kwargs: Any) -> Dict[str, Any]:
        start_time = time.perf_counter()
        success = False
        try:
            response = self._get_client().request(method, path, **kwargs)
            _raise_for_status(response, operation)
            success = True
            return response.json() if response.content else {}
        except httpx.TransportError as e:
            raise ProviderUnavailableError(f"{operation}: {e}") from e
        finally:
            log_external_call(
                LOGGER,
                service=SERVICE_NAME,
                operation=operation,
                success=success,
                duration_ms=(time.perf_counter() - start_time) * 1000,
            )

    def list_unread_messages(
        self, channel_id: str, since_cursor: Optional[str] = None
    ) -> List[ProviderMessage]:
        if not self.is_configured() and self.dry_run:
            LOGGER.debug(f"[DRY RUN] No provider configured, nothing to fetch for {channel_id}")
            return []

        params: Dict[str, Any] = {"limit": PAGE_SIZE}
        if since_cursor:
            params["after"] = since_cursor
        data = self._request(
            "GET", f"/dm/channels/{channel_id}/messages", "list_unread", params=params
        )

        messages: List[ProviderMessage] = []
        for raw in data.get("messages") or data.get("data") or []:
            author = str(raw.get("user_id") or raw.get("userId") or "")
            text = raw.get("content") if raw.get("content") is not None else raw.get("text")
            if not raw.get("id") or text is None:
                continue
            if self.agent_user_id and author == self.agent_user_id:
                continue
            messages.append(
                ProviderMessage(
                    id=str(raw["id"]),
                    user_id=author,
                    text=str(text),
                    created_at=_parse_timestamp(raw.get("created_at") or raw.get("createdAt")),
                )
            )

        # Oldest first; the stable sort keeps provider order for equal or missing timestamps
        epoch = datetime.fromtimestamp(0, tz=timezone.utc)
        messages.sort(key=lambda m: m.created_at or epoch)
        return messages

    @with_retry(
        max_attempts=SETTINGS.dm_send_max_retries,
        retry_exceptions=(RateLimitError, ProviderUnavailableError),
    )
    def send(self, user_id: str, text: str) -> str:
        if self.dry_run:
            message_id = f"dry-run-{uuid.uuid4().hex[:12]}"
            LOGGER.info(f"[DRY RUN] DM to {user_id}: {text[:80]}")
            return message_id

        data = self._request(
            "POST", "/dm/messages", "send", json={"user_id": user_id, "message": text}
        )
        message_id = data.get("id") or data.get("message_id")
        if not message_id:
            raise MessagingProviderError("send: provider response has no message id")
        return str(message_id)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


# Module-level singleton
_client: Optional[DMClient] = None


def get_dm_client() -> DMClient:
    """Get the global DMClient instance."""
    global _client
    if _client is None:
        _client = DMClient()
    return _client


def reset_dm_client() -> None:
    """Reset the global client (useful for testing)."""
    global _client
    if _client is not None:
        _client.close()
    _client = None


__all__ = ["DMClient", "get_dm_client", "reset_dm_client"]
