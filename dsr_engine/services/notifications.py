"""Notification dispatch for verification challenges.

The engine never talks to SMS or email providers directly. It hands a
payload to a ``NotificationDispatcher`` and records the returned delivery
id. Two dispatchers ship with the service:

- WebhookNotificationDispatcher: POSTs to the delivery gateway configured
  in NOTIFICATION_WEBHOOK_URL, signed with HMAC-SHA256 in the
  ``X-DSR-Signature-256`` header.
- LoggingNotificationDispatcher: logs a masked summary and returns a
  synthetic id (dev only).

Callers wrap ``send`` in a timeout; transport errors are retried here with
exponential backoff, 3 attempts maximum.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import uuid
from enum import StrEnum
from typing import Any, Protocol

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

log = structlog.get_logger(__name__)


class DeliveryChannel(StrEnum):
    EMAIL = "email"
    SMS = "sms"


class NotificationError(Exception):
    """The delivery gateway rejected or failed to accept a notification."""


class NotificationDispatcher(Protocol):
    async def send(self, channel: DeliveryChannel, contact: str, payload: dict[str, Any]) -> str: ...


def mask_contact(contact: str) -> str:
    """Keep enough of a contact value for log correlation, never the whole."""
    if "@" in contact:
        local, _, domain = contact.partition("@")
        return f"{local[:1]}***@{domain}"
    return f"***{contact[-2:]}" if len(contact) > 2 else "***"


class WebhookNotificationDispatcher:
    """Delivers notifications through an HTTP gateway."""

    def __init__(self, url: str, signing_secret: str, *, timeout: float = 10.0) -> None:
        self._url = url
        self._secret = signing_secret.encode()
        self._timeout = timeout

    def _sign(self, body: bytes) -> str:
        return "sha256=" + hmac.new(self._secret, body, hashlib.sha256).hexdigest()

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _post(self, body: bytes) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.post(
                self._url,
                content=body,
                headers={
                    "Content-Type": "application/json",
                    "X-DSR-Signature-256": self._sign(body),
                },
            )

    async def send(self, channel: DeliveryChannel, contact: str, payload: dict[str, Any]) -> str:
        message_id = str(uuid.uuid4())
        body = json.dumps(
            {"id": message_id, "channel": channel.value, "to": contact, "payload": payload},
            separators=(",", ":"),
        ).encode()
        try:
            response = await self._post(body)
        except httpx.TransportError as exc:
            log.error("notifications.transport_failed", channel=channel, error=str(exc))
            raise NotificationError(f"Delivery gateway unreachable: {exc}") from exc

        if response.status_code >= 400:
            log.error(
                "notifications.rejected",
                channel=channel,
                status_code=response.status_code,
                to=mask_contact(contact),
            )
            raise NotificationError(f"Delivery gateway returned HTTP {response.status_code}")

        try:
            receipt = response.json()
        except ValueError:
            receipt = {}
        delivery_id = str(receipt.get("delivery_id") or message_id) if isinstance(receipt, dict) else message_id

        log.info("notifications.sent", channel=channel, to=mask_contact(contact), delivery_id=delivery_id)
        return delivery_id


class LoggingNotificationDispatcher:
    """Dev-only dispatcher that records deliveries in the log."""

    async def send(self, channel: DeliveryChannel, contact: str, payload: dict[str, Any]) -> str:
        delivery_id = f"log-{uuid.uuid4().hex[:12]}"
        log.warning(
            "notifications.logged_only",
            channel=channel,
            to=mask_contact(contact),
            template=payload.get("template"),
            delivery_id=delivery_id,
        )
        return delivery_id
