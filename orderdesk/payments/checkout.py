"""Completed Stripe Checkout sessions and webhook signature checks."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

import stripe

logger = logging.getLogger(__name__)


class WebhookSignatureError(ValueError):
    pass


class InvalidSessionError(ValueError):
    pass


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    amount_total: int
    customer_email: str | None = None
    customer_name: str | None = None
    invoice: str | None = None
    shipping_amount: int | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    custom_fields: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_stripe(cls, obj: dict[str, Any]) -> "CheckoutSession":
        session_id = obj.get("id")
        if not session_id:
            raise InvalidSessionError("checkout session without id")
        amount_total = obj.get("amount_total")
        if not isinstance(amount_total, int) or amount_total <= 0:
            raise InvalidSessionError(f"checkout session {session_id} has no amount_total")

        details = obj.get("customer_details") or {}
        shipping_cost = obj.get("shipping_cost") or {}
        shipping_amount = shipping_cost.get("amount_total")
        invoice = obj.get("invoice")
        if isinstance(invoice, dict):
            invoice = invoice.get("id")

        return cls(
            id=str(session_id),
            amount_total=amount_total,
            customer_email=details.get("email") or obj.get("customer_email"),
            customer_name=details.get("name"),
            invoice=invoice or None,
            shipping_amount=shipping_amount if isinstance(shipping_amount, int) else None,
            metadata={str(k): str(v) for k, v in (obj.get("metadata") or {}).items() if v is not None},
            custom_fields=list(obj.get("custom_fields") or []),
        )

    def custom_field(self, key: str) -> str | None:
        for item in self.custom_fields:
            if item.get("key") != key:
                continue
            text = item.get("text")
            if isinstance(text, dict):
                value = text.get("value") or text.get("default_value")
            else:
                value = text
            if value:
                return str(value)
        return None

    @property
    def delivery_method(self) -> str:
        method = self.metadata.get("delivery_method", "pickup")
        return method if method in {"pickup", "home_delivery"} else "pickup"

    @property
    def pickup_point_id(self) -> str | None:
        return self.metadata.get("packeta_point_id") or self.custom_field("pickup_point_id")

    def cart_items(self) -> list[dict[str, Any]]:
        raw = self.metadata.get("cart_items")
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.warning("cart_items metadata is not valid JSON: session_id=%s", self.id)
            return []
        if not isinstance(parsed, list):
            return []
        return [item for item in parsed if isinstance(item, dict)]


def verify_webhook(payload: bytes, header: str | None, secret: str, tolerance_seconds: int = 300) -> dict[str, Any]:
    """Check the ``Stripe-Signature`` header and return the event as a plain dict."""
    if not header:
        raise WebhookSignatureError("missing Stripe-Signature header")
    try:
        body = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(body, header, secret, tolerance=tolerance_seconds or None)
    except stripe.SignatureVerificationError as exc:
        raise WebhookSignatureError(str(exc)) from exc
    except UnicodeDecodeError as exc:
        raise WebhookSignatureError("webhook body is not UTF-8") from exc
    try:
        event = json.loads(body)
    except ValueError as exc:
        raise WebhookSignatureError("webhook body is not JSON") from exc
    if not isinstance(event, dict):
        raise WebhookSignatureError("webhook body is not an event object")
    return event
