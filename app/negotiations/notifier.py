"""Outbound broker messages, delivered through an email automation webhook."""

import logging
import uuid
from typing import Optional, Protocol

import httpx

from app.config import settings
from app.negotiations.errors import DeliveryFailed
from app.negotiations.models import Negotiation

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send(self, negotiation: Negotiation, message: str, amount: Optional[float]) -> str: ...


def build_subject(negotiation: Negotiation) -> str:
    if not negotiation.offer_history:
        return f"Rate Negotiation for Load {negotiation.load_id}"
    return f"Re: Rate Negotiation for Load {negotiation.load_id} - Round {negotiation.round}"


class WebhookNotifier:
    """POSTs {to, subject, body, ...} to the webhook and returns its delivery id.

    The idempotency key is derived from the record's version, so a caller
    retrying the same logical step sends the same key and the automation
    can drop the duplicate.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        secret: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = webhook_url if webhook_url is not None else settings.NOTIFIER_WEBHOOK_URL
        self.secret = secret if secret is not None else settings.NOTIFIER_SECRET
        self.timeout = timeout_seconds or settings.NOTIFIER_TIMEOUT_SECONDS
        self._transport = transport

    async def send(self, negotiation: Negotiation, message: str, amount: Optional[float]) -> str:
        if not self.webhook_url:
            raise DeliveryFailed("Notifier webhook is not configured (NOTIFIER_WEBHOOK_URL missing)")

        headers = {
            "Idempotency-Key": f"{negotiation.negotiation_id}:v{negotiation.version}",
        }
        if self.secret:
            headers["x-automation-secret"] = self.secret

        payload = {
            "to": negotiation.broker_email,
            "subject": build_subject(negotiation),
            "body": message,
            "amount": amount,
            "loadId": negotiation.load_id,
            "negotiationId": negotiation.negotiation_id,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.webhook_url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "notifier.send.failed",
                extra={
                    "event": "notifier.send.failed",
                    "negotiation_id": negotiation.negotiation_id,
                    "error": str(exc),
                },
            )
            raise DeliveryFailed(f"Webhook delivery failed: {exc}") from exc

        delivery_id = _delivery_id_from(response) or f"DLV-{uuid.uuid4().hex[:12]}"
        logger.info(
            "notifier.send.ok",
            extra={
                "event": "notifier.send.ok",
                "negotiation_id": negotiation.negotiation_id,
                "delivery_id": delivery_id,
            },
        )
        return delivery_id


def _delivery_id_from(response: httpx.Response) -> Optional[str]:
    """Webhooks may echo an id back; plain 200/204 responses don't."""
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        value = body.get("deliveryId") or body.get("id")
        return str(value) if value else None
    return None
