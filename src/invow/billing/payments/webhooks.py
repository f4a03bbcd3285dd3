"""
Gateway webhook handling.

The HTTP layer hands over the raw request body and the signature header
value; this module authenticates the body and routes the event to the
payment reconciler.
"""

import hashlib
import hmac
import json
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel

from invow.billing.exceptions import WebhookPayloadError, WebhookSignatureError
from invow.billing.models import PaymentTransaction, SubscriptionSnapshot
from invow.billing.payments.reconciler import PaymentReconciler

logger = structlog.get_logger(__name__)

PAYMENT_RECEIVED_EVENT = "payment.received"
_SUCCESS_STATUSES = {"SUCCESS", "completed"}
_FAILED_STATUSES = {"FAILED", "failed"}


def compute_signature(raw_body: bytes, secret: str) -> str:
    """HMAC-SHA256 of the raw body, hex encoded."""
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: str | None, secret: str | None) -> bool:
    """Constant-time check of a webhook signature. Missing secret or signature fails."""
    if not secret or not signature:
        return False
    expected = compute_signature(raw_body, secret)
    return hmac.compare_digest(expected.encode(), signature.strip().lower().encode())


class WebhookAction(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    IGNORED = "ignored"


class WebhookOutcome(BaseModel):
    """What a webhook delivery did."""

    action: WebhookAction
    event: str | None = None
    gateway_invoice_id: str | None = None
    subscription: SubscriptionSnapshot | None = None
    payment: PaymentTransaction | None = None


class WebhookProcessor:
    """Authenticates gateway webhooks and applies them to payments."""

    def __init__(self, reconciler: PaymentReconciler, secret: str | None = None) -> None:
        self.reconciler = reconciler
        self.secret = secret if secret is not None else reconciler.config.gateway.webhook_secret

    def _parse(self, raw_body: bytes) -> dict[str, Any]:
        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise WebhookPayloadError("Webhook body is not valid JSON") from e
        if not isinstance(payload, dict):
            raise WebhookPayloadError("Webhook body must be a JSON object")
        return payload

    def verify_signature(self, raw_body: bytes, signature: str | None) -> bool:
        return verify_signature(raw_body, signature, self.secret)

    async def process(self, raw_body: bytes | str, signature: str | None) -> WebhookOutcome:
        """
        Verify and apply one webhook delivery.

        Args:
            raw_body: Request body exactly as received
            signature: Signature header value

        Returns:
            The action taken; unknown events are acknowledged and ignored

        Raises:
            WebhookSignatureError: Signature missing or wrong; nothing is changed
            WebhookPayloadError: Body is not a usable payment event
        """
        body = raw_body.encode() if isinstance(raw_body, str) else raw_body

        if not self.verify_signature(body, signature):
            logger.warning("Webhook signature rejected", signature_present=bool(signature))
            raise WebhookSignatureError("Invalid webhook signature", provider="mayar")

        payload = self._parse(body)
        event = str(payload["event"]) if payload.get("event") is not None else None
        data = payload.get("data") or {}
        if not isinstance(data, dict):
            raise WebhookPayloadError("Webhook data must be an object", event=event)

        transaction_id = data.get("transactionId")
        invoice_id = data.get("id")
        primary = transaction_id or invoice_id
        if not primary:
            raise WebhookPayloadError("Webhook is missing the invoice id", event=event)
        alternate = invoice_id if primary == transaction_id else transaction_id
        primary = str(primary)
        alternate = str(alternate) if alternate else None

        status = str(data["status"]) if data.get("status") is not None else None
        logger.info(
            "Webhook received", webhook_event=event, status=status, gateway_invoice_id=primary
        )

        if event == PAYMENT_RECEIVED_EVENT or status in _SUCCESS_STATUSES:
            payment_method = data.get("paymentMethod")
            snapshot = await self.reconciler.reconcile_success(
                primary,
                alternate_id=alternate,
                payment_method=str(payment_method) if payment_method else None,
            )
            return WebhookOutcome(
                action=WebhookAction.COMPLETED,
                event=event,
                gateway_invoice_id=primary,
                subscription=snapshot,
            )

        if status in _FAILED_STATUSES:
            payment = await self.reconciler.reconcile_failure(primary, alternate_id=alternate)
            return WebhookOutcome(
                action=WebhookAction.FAILED,
                event=event,
                gateway_invoice_id=primary,
                payment=payment,
            )

        logger.info("Webhook event ignored", webhook_event=event, status=status)
        return WebhookOutcome(action=WebhookAction.IGNORED, event=event, gateway_invoice_id=primary)


__all__ = [
    "PAYMENT_RECEIVED_EVENT",
    "WebhookAction",
    "WebhookOutcome",
    "WebhookProcessor",
    "compute_signature",
    "verify_signature",
]
