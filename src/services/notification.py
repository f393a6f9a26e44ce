"""Operator notifications: Slack webhook and Twilio SMS alerts.

Alerts are fire-and-forget. Nothing here may raise into a poller or change
conversation state; a failed alert is logged and counted against the
channel's circuit breaker.
"""
from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

import httpx
from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from core.config import Settings, get_settings
from core.events import EventEmitter, OPERATOR_ALERT
from core.logging_config import get_logger
from core.utils import CircuitBreaker, RateLimiter

LOGGER = get_logger(__name__)


class NotificationService:
    """
    Sends operator alerts over Slack and/or SMS.

    Usage:
        notifier = NotificationService(events=events)
        notifier.notify("User asked for a human", conversation_id="abc")
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        events: Optional[EventEmitter] = None,
        background: bool = True,
        dry_run: Optional[bool] = None,
        http_client: Optional[httpx.Client] = None,
        twilio_client: Optional[Client] = None,
    ):
        """
        Initialize the notification service.

        Args:
            settings: Settings to read channel configuration from.
            events: Event seam that records every alert raised.
            background: Deliver on a worker thread instead of the caller's.
            dry_run: Log alerts instead of delivering them.
            http_client: Optional httpx client for Slack.
            twilio_client: Optional Twilio REST client for SMS.
        """
        self.settings = settings or get_settings()
        self.events = events
        self.dry_run = self.settings.dry_run if dry_run is None else dry_run
        self._http_client = http_client
        self._twilio_client = twilio_client
        self._executor: Optional[ThreadPoolExecutor] = (
            ThreadPoolExecutor(max_workers=2, thread_name_prefix="alerts") if background else None
        )
        self.slack_circuit = CircuitBreaker(name="slack_alerts", failure_threshold=3, recovery_timeout=300)
        self.twilio_circuit = CircuitBreaker(name="twilio_alerts", failure_threshold=3, recovery_timeout=300)
        # Max 10 alerts per minute across channels
        self.rate_limiter = RateLimiter(max_calls=10, period_seconds=60)

    def _get_twilio_client(self) -> Client:
        if self._twilio_client is None:
            self._twilio_client = Client(
                self.settings.twilio_account_sid, self.settings.twilio_auth_token
            )
        return self._twilio_client

    def send_sms_alert(self, phone: str, message: str) -> bool:
        """
        Send an SMS alert via Twilio.

        Returns:
            True if sent successfully.
        """
        if self.dry_run:
            LOGGER.info(f"[DRY RUN] SMS alert to {phone}: {message[:50]}...")
            return True

        if not self.settings.is_twilio_enabled():
            LOGGER.warning("Twilio not configured, cannot send SMS alert")
            return False

        if not self.twilio_circuit.can_execute():
            LOGGER.warning("Twilio circuit breaker is open")
            return False

        try:
            sms = self._get_twilio_client().messages.create(
                to=phone,
                from_=self.settings.twilio_from_number,
                body=message[:1600],
            )
            self.twilio_circuit.record_success()
            LOGGER.info(f"Sent SMS alert to {phone}, SID: {sms.sid}")
            return True
        except TwilioRestException as e:
            self.twilio_circuit.record_failure()
            LOGGER.error(f"Twilio error sending SMS alert: {e}")
            return False
        except Exception as e:
            self.twilio_circuit.record_failure()
            LOGGER.error(f"Failed to send SMS alert: {e}")
            return False

    def send_slack_alert(self, webhook_url: str, message: str) -> bool:
        """
        Send a Slack alert via webhook.

        Returns:
            True if sent successfully.
        """
        if self.dry_run:
            LOGGER.info(f"[DRY RUN] Slack alert: {message[:50]}...")
            return True

        if not self.slack_circuit.can_execute():
            LOGGER.warning("Slack circuit breaker is open")
            return False

        try:
            if self._http_client is not None:
                response = self._http_client.post(webhook_url, json={"text": message})
            else:
                response = httpx.post(
                    webhook_url,
                    json={"text": message},
                    timeout=self.settings.alert_timeout_seconds,
                )
            response.raise_for_status()
            self.slack_circuit.record_success()
            LOGGER.info("Sent Slack alert")
            return True
        except Exception as e:
            self.slack_circuit.record_failure()
            LOGGER.error(f"Failed to send Slack alert: {e}")
            return False

    def _deliver(self, message: str) -> bool:
        if not self.rate_limiter.can_proceed():
            LOGGER.warning(f"Alert rate limit reached, dropping: {message[:80]}")
            return False
        self.rate_limiter.record_call()

        sent = False
        if self.settings.slack_webhook_url:
            sent = self.send_slack_alert(self.settings.slack_webhook_url, message) or sent
        if self.settings.alert_phone_number:
            sent = self.send_sms_alert(self.settings.alert_phone_number, message) or sent
        if not self.settings.slack_webhook_url and not self.settings.alert_phone_number:
            LOGGER.warning(f"No alert channel configured: {message}")
        return sent

    def notify(
        self,
        message: str,
        conversation_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Optional[Future]:
        """
        Raise an operator alert without waiting for delivery.

        Returns:
            The pending delivery when running in the background, else None.
        """
        if self.events is not None:
            self.events.emit(
                OPERATOR_ALERT, conversation_id=conversation_id, outcome=reason, message=message
            )

        text = f"[DM funnel] {message}"
        if conversation_id:
            text += f"\nConversation: {conversation_id}"

        if self._executor is None:
            self._deliver(text)
            return None
        return self._executor.submit(self._deliver, text)

    def alert_human_requested(self, conversation_id: str, user_id: str, last_reply: str) -> None:
        """Second invalid reply: the user was told a human will follow up."""
        self.notify(
            f"User {user_id} is stuck and was promised a human follow-up. "
            f"Last reply: {last_reply[:200]!r}",
            conversation_id=conversation_id,
            reason="human_requested",
        )

    def alert_poller_failed(self, conversation_id: str, error: str) -> None:
        """A poller gave up after repeated provider failures."""
        self.notify(
            f"Stopped monitoring after repeated failures: {error}",
            conversation_id=conversation_id,
            reason="poller_failed",
        )

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)


__all__ = ["NotificationService"]
