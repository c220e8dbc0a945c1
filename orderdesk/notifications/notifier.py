from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from orderdesk.core.config import Settings, get_settings
from orderdesk.notifications.channels import (
    DeliveryReceipt,
    NotificationChannel,
    ResendEmailChannel,
    TelegramChannel,
)

logger = logging.getLogger(__name__)

RECEIPT_EMAIL_TYPE = "order-confirmation"
STATUS_EMAIL_TYPES = {"shipped": "shipping-confirmation", "delivered": "delivered-confirmation"}


@dataclass
class SentEmail:
    email_type: str
    recipient: str
    subject: str
    receipt: DeliveryReceipt


def format_amount(minor_units: int | None, currency: str) -> str:
    return f"{(minor_units or 0) / 100:.2f} {currency}"


def short_ref(order_id: str) -> str:
    return order_id[-8:]


def render_receipt(order: dict[str, Any], currency: str) -> tuple[str, str]:
    lines = [f"Order #{short_ref(order['id'])}", ""]
    for item in order.get("items") or []:
        name = item.get("description") or item.get("name") or "Item"
        size = f" ({item['size']})" if item.get("size") else ""
        lines.append(f"{item.get('quantity', 1)}x {name}{size}  {format_amount(item.get('amount_total'), currency)}")
    lines.append("")
    lines.append(f"Total: {format_amount(order.get('amount_total'), currency)}")
    return f"Order confirmation #{short_ref(order['id'])}", "\n".join(lines)


def render_status(order: dict[str, Any], site_url: str) -> tuple[str, str, str]:
    status = order.get("status") or "paid"
    email_type = STATUS_EMAIL_TYPES.get(status, "status-update")
    lines = [f"Order #{short_ref(order['id'])} is now: {status}"]
    if status == "shipped" and order.get("packeta_shipment_id"):
        lines.append(f"Tracking number: Z{order['packeta_shipment_id']}")
        lines.append(f"Track: https://tracking.packeta.com/cs/?id={order['packeta_shipment_id']}")
    if status == "delivered":
        lines.append(f"Tell us how it went: {site_url.rstrip('/')}/review/{order['id']}")
    return email_type, f"Order #{short_ref(order['id'])} status update", "\n".join(lines)


def render_new_order_alert(order: dict[str, Any], currency: str) -> tuple[str, str]:
    delivery = order.get("delivery_method") or "pickup"
    target = order.get("packeta_point_id") if delivery == "pickup" else order.get("delivery_city")
    body = "\n".join(
        [
            f"Customer: {order.get('customer_name') or '-'}",
            f"Items: {len(order.get('items') or [])}",
            f"Total: {format_amount(order.get('amount_total'), currency)}",
            f"Delivery: {delivery} {target or ''}".rstrip(),
        ]
    )
    return f"New order #{short_ref(order['id'])}", body


class OrderNotifier:
    """Fire-and-forget customer e-mail and operator chat alerts."""

    def __init__(
        self,
        settings: Settings | None = None,
        email: NotificationChannel | None = None,
        chat: NotificationChannel | None = None,
    ):
        self.settings = settings or get_settings()
        self.email = email or ResendEmailChannel(self.settings)
        self.chat = chat or TelegramChannel(self.settings)

    def send_customer_email(self, order: dict[str, Any], kind: str) -> SentEmail | None:
        recipient = order.get("customer_email")
        if not recipient:
            logger.info("no customer email, skipping %s email: order_id=%s", kind, order["id"])
            return None
        if kind == "receipt":
            email_type = RECEIPT_EMAIL_TYPE
            subject, content = render_receipt(order, self.settings.currency)
        elif kind == "status":
            email_type, subject, content = render_status(order, self.settings.site_url)
        else:
            raise ValueError(f"unknown email kind: {kind}")
        receipt = self.email.send(recipient, subject, content)
        return SentEmail(email_type=email_type, recipient=recipient, subject=subject, receipt=receipt)

    def order_confirmed(self, order: dict[str, Any]) -> list[DeliveryReceipt]:
        receipts: list[DeliveryReceipt] = []
        sent = self.send_customer_email(order, "receipt")
        if sent is not None:
            receipts.append(sent.receipt)
        if self.settings.telegram_chat_id:
            subject, content = render_new_order_alert(order, self.settings.currency)
            receipts.append(self.chat.send(self.settings.telegram_chat_id, subject, content))
        return receipts

    def status_changed(self, order: dict[str, Any], previous_status: str | None = None) -> SentEmail | None:
        if previous_status is not None and previous_status == order.get("status"):
            return None
        return self.send_customer_email(order, "status")
