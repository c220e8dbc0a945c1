"""Carrier tracking status and order status sync.

Packeta reports a packet's state through ``packetStatus``; the ``codeText``
it returns is folded into the order status vocabulary here. Orders only move
forward along paid -> processing -> shipped -> delivered, while returns and
cancellations apply from any open state.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from orderdesk.carrier.client import LabelFetchClient
from orderdesk.carrier.errors import CarrierError
from orderdesk.domain.orders.repository import OrderRepository, StorageError, order_to_dict
from orderdesk.notifications.email_log import record_email
from orderdesk.notifications.notifier import OrderNotifier
from orderdesk.persistence.models import OrderModel

logger = logging.getLogger(__name__)

CARRIER_STATUS_MAP = {
    "created": "processing",
    "received_data": "processing",
    "arrived": "shipped",
    "prepared_for_departure": "shipped",
    "departed": "shipped",
    "collected": "shipped",
    "customs": "shipped",
    "handed_to_carrier": "shipped",
    "in_transit": "shipped",
    "ready_for_pickup": "shipped",
    "delivery_attempt": "shipped",
    "delivered": "delivered",
    "posted_back": "returned",
    "reverse_packet_arrived": "returned",
    "rejected_by_recipient": "returned",
    "returned": "returned",
    "cancelled": "cancelled",
}

FORWARD_STATUSES = ("paid", "processing", "shipped", "delivered")
SETTLED_STATUSES = ("delivered", "returned", "cancelled", "refunded")


def normalize_code_text(code_text: str | None) -> str:
    return "_".join((code_text or "").strip().lower().replace("-", " ").split())


def map_carrier_status(code_text: str | None) -> str | None:
    return CARRIER_STATUS_MAP.get(normalize_code_text(code_text))


def next_status(current: str, carrier_status: str | None) -> str | None:
    """Status to move to, or None when the order should stay as it is."""
    if carrier_status is None or carrier_status == current:
        return None
    if current in FORWARD_STATUSES and carrier_status in FORWARD_STATUSES:
        if FORWARD_STATUSES.index(carrier_status) < FORWARD_STATUSES.index(current):
            return None
    return carrier_status


@dataclass(frozen=True)
class PacketStatus:
    shipment_id: str
    code: str | None
    code_text: str | None
    status_text: str | None
    recorded_at: str | None

    @property
    def order_status(self) -> str | None:
        return map_carrier_status(self.code_text)

    def to_dict(self) -> dict[str, Any]:
        return {
            "shipment_id": self.shipment_id,
            "code": self.code,
            "code_text": self.code_text,
            "status_text": self.status_text,
            "recorded_at": self.recorded_at,
            "order_status": self.order_status,
        }


def fetch_packet_status(client: LabelFetchClient, shipment_id: str) -> PacketStatus:
    result = client.call("packetStatus", {"packetId": shipment_id})

    def _text(tag: str) -> str | None:
        value = (result.findtext(tag) or "").strip()
        return value or None

    return PacketStatus(
        shipment_id=shipment_id,
        code=_text("statusCode"),
        code_text=_text("codeText"),
        status_text=_text("statusText"),
        recorded_at=_text("dateTime"),
    )


@dataclass
class SyncReport:
    checked: int = 0
    changes: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "updated": len(self.changes),
            "changes": list(self.changes),
            "errors": list(self.errors),
        }


class StatusSync:
    def __init__(
        self,
        session: Session,
        client: LabelFetchClient,
        notifier: OrderNotifier | None = None,
        pause_seconds: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session = session
        self.client = client
        self.notifier = notifier
        self.pause_seconds = pause_seconds
        self.sleep = sleep
        self.orders = OrderRepository(session)

    def candidates(self, order_ids: Iterable[str] | None = None) -> list[OrderModel]:
        if order_ids is None:
            return self.orders.list_with_shipment(exclude_statuses=SETTLED_STATUSES)
        return [o for o in self.orders.list_by_ids(order_ids) if o.packeta_shipment_id]

    def sync_order(self, order: OrderModel) -> dict[str, Any] | None:
        packet = fetch_packet_status(self.client, order.packeta_shipment_id)
        previous = order.status
        target = next_status(previous, packet.order_status)
        if target is None:
            logger.debug(
                "status unchanged: order_id=%s status=%s carrier=%s", order.id, previous, packet.code_text
            )
            return None

        updated = self.orders.update(order.id, {"status": target})
        self.session.commit()
        logger.info(
            "order status synced: order_id=%s %s->%s carrier=%s", order.id, previous, target, packet.code_text
        )

        change = {"order_id": order.id, "from": previous, "to": target, "carrier_status": packet.code_text}
        if self.notifier is not None:
            sent = self.notifier.status_changed(order_to_dict(updated), previous)
            if sent is not None:
                record_email(self.session, order.id, sent)
                change["email"] = sent.email_type
        return change

    def run(self, order_ids: Iterable[str] | None = None) -> SyncReport:
        report = SyncReport()
        for index, order in enumerate(self.candidates(order_ids)):
            if index and self.pause_seconds:
                self.sleep(self.pause_seconds)
            report.checked += 1
            try:
                change = self.sync_order(order)
            except CarrierError as exc:
                logger.warning("status check failed: order_id=%s shipment_id=%s error=%s", order.id, order.packeta_shipment_id, exc)
                report.errors.append({"order_id": order.id, "error": str(exc)})
                continue
            except (StorageError, SQLAlchemyError) as exc:
                self.session.rollback()
                logger.error("status update failed: order_id=%s error=%s", order.id, exc)
                report.errors.append({"order_id": order.id, "error": str(exc)})
                continue
            if change is not None:
                report.changes.append(change)
        logger.info(
            "status sync finished: checked=%s updated=%s errors=%s",
            report.checked,
            len(report.changes),
            len(report.errors),
        )
        return report
