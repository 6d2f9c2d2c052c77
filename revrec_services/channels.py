"""
Alert delivery channels.

A channel turns one ``AlertMessage`` into a single delivery attempt and
raises ``ChannelDeliveryError`` on any failure.  Channels never retry;
the next reconciliation cycle is the retry.  Every attempt carries a
short timeout so a slow endpoint cannot stall a cycle.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx
from python_http_client.exceptions import HTTPError
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from revrec_config.settings import NotificationSettings
from revrec_kernel.exceptions import ChannelDeliveryError
from revrec_kernel.logging_config import get_logger

logger = get_logger("services.channels")

SIGNATURE_HEADER = "X-Revrec-Signature"


@dataclass(frozen=True)
class AlertMessage:
    subject: str
    text: str
    html: str
    payload: dict[str, Any]
    recipients: tuple[str, ...] = field(default_factory=tuple)


class NotificationChannel(ABC):
    name: str

    @abstractmethod
    def send(self, message: AlertMessage) -> None:
        """Deliver ``message`` once or raise ChannelDeliveryError."""


class EmailChannel(NotificationChannel):
    """
    Email via the SendGrid API.

    ``client`` is any object with SendGrid's ``send(mail)`` signature;
    tests pass a stub.  Without a client or API key the channel reports
    a delivery failure rather than silently dropping mail.
    """

    name = "email"

    def __init__(self, settings: NotificationSettings, client: Any = None):
        self._settings = settings
        if client is None and settings.sendgrid_api_key:
            client = SendGridAPIClient(api_key=settings.sendgrid_api_key)
            client.client.timeout = settings.timeout_seconds
        self._client = client

    def send(self, message: AlertMessage) -> None:
        recipients = list(message.recipients or self._settings.email_recipients)
        if not recipients:
            raise ChannelDeliveryError(self.name, "no recipients")
        if self._client is None:
            raise ChannelDeliveryError(self.name, "SendGrid client not configured")

        mail = Mail(
            from_email=self._settings.sender,
            to_emails=recipients,
            subject=message.subject,
            plain_text_content=message.text,
            html_content=message.html,
        )
        try:
            response = self._client.send(mail)
        except HTTPError as exc:
            status = getattr(exc, "status_code", None)
            if status == 429:
                raise ChannelDeliveryError(self.name, "SendGrid rate limit exceeded") from exc
            raise ChannelDeliveryError(self.name, f"SendGrid HTTP error: {exc}") from exc
        except (OSError, TimeoutError) as exc:
            raise ChannelDeliveryError(self.name, f"SendGrid unreachable: {exc}") from exc

        if response.status_code not in (200, 202):
            raise ChannelDeliveryError(self.name, f"SendGrid API error: {response.status_code}")
        logger.info("alert_email_sent", extra={"recipients": recipients})


class WebhookChannel(NotificationChannel):
    """
    JSON POST to the configured webhook.

    When a secret is configured the body is signed with HMAC-SHA256 and
    the hex digest sent as ``X-Revrec-Signature: sha256=<hex>``.
    """

    name = "webhook"

    def __init__(self, settings: NotificationSettings, http_client: httpx.Client | None = None):
        if not settings.webhook_url:
            raise ValueError("WebhookChannel requires a webhook_url")
        self._url = settings.webhook_url
        self._secret = settings.webhook_secret
        self._client = http_client or httpx.Client(timeout=settings.timeout_seconds)

    @staticmethod
    def sign(body: str, secret: str) -> str:
        return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()

    def send(self, message: AlertMessage) -> None:
        body = json.dumps(message.payload, sort_keys=True, separators=(",", ":"), default=str)
        headers = {"Content-Type": "application/json"}
        if self._secret:
            headers[SIGNATURE_HEADER] = f"sha256={self.sign(body, self._secret)}"

        try:
            response = self._client.post(self._url, content=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise ChannelDeliveryError(self.name, "timeout") from exc
        except httpx.RequestError as exc:
            raise ChannelDeliveryError(self.name, f"request error: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise ChannelDeliveryError(self.name, f"HTTP {response.status_code}")
        logger.info("alert_webhook_sent", extra={"status_code": response.status_code})

    def close(self) -> None:
        self._client.close()


def build_channels(settings: NotificationSettings) -> list[NotificationChannel]:
    """Channels implied by ``settings``; empty when none are configured."""
    channels: list[NotificationChannel] = []
    if settings.email_recipients:
        channels.append(EmailChannel(settings))
    if settings.webhook_url:
        channels.append(WebhookChannel(settings))
    return channels
