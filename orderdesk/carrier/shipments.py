from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from orderdesk.carrier.client import LabelFetchClient
from orderdesk.carrier.errors import CarrierError
from orderdesk.core.logging import mask_email
from orderdesk.domain.orders.repository import OrderNotFoundError, OrderRepository, StorageError
from orderdesk.persistence.models import OrderModel

logger = logging.getLogger(__name__)


class ShipmentError(ValueError):
    pass


@dataclass
class CancelOutcome:
    order_id: str
    shipment_id: str
    carrier_cancelled: bool
    detail: str = ""


@dataclass
class BulkCancelReport:
    outcomes: list[CancelOutcome] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)

    @property
    def carrier_cancelled(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.carrier_cancelled)


# Packets already moving cannot be pulled back.
UNCANCELLABLE_STATUSES = ("shipped", "delivered", "returned")


def split_name(full_name: str | None) -> tuple[str, str]:
    parts = (full_name or "").split()
    if not parts:
        return "Customer", "-"
    if len(parts) == 1:
        return parts[0], "-"
    return " ".join(parts[:-1]), parts[-1]


def packet_number(order_id: str) -> str:
    return order_id.replace("-", "")[:24]


def packet_attributes(order: OrderModel, client: LabelFetchClient) -> dict[str, Any]:
    config = client.config
    name, surname = split_name(order.customer_name)
    attrs: dict[str, Any] = {
        "number": packet_number(order.id),
        "name": name,
        "surname": surname,
        "email": order.customer_email,
        "phone": order.customer_phone,
        "value": f"{(order.amount_total or 0) / 100:.2f}",
        "currency": config.currency,
        "weight": config.default_weight_kg,
        "eshop": config.eshop,
    }
    if order.delivery_method == "home_delivery":
        missing = [
            label
            for label, value in (
                ("delivery_address", order.delivery_address),
                ("delivery_city", order.delivery_city),
                ("delivery_postal_code", order.delivery_postal_code),
            )
            if not value
        ]
        if missing:
            raise ShipmentError(f"home delivery address incomplete: {', '.join(missing)}")
        attrs.update(
            addressId=config.home_delivery_carrier_id,
            street=order.delivery_address,
            city=order.delivery_city,
            zip=order.delivery_postal_code,
        )
    else:
        if not order.packeta_point_id:
            raise ShipmentError("order has no pickup point")
        attrs["addressId"] = order.packeta_point_id
    return attrs


class ShipmentService:
    def __init__(self, session: Session, client: LabelFetchClient):
        self.session = session
        self.client = client
        self.orders = OrderRepository(session)

    def create_for_order(self, order_id: str) -> str:
        order = self.orders.require(order_id)
        if order.packeta_shipment_id:
            raise ShipmentError(f"order already has shipment {order.packeta_shipment_id}")

        result = self.client.call("createPacket", {"packetAttributes": packet_attributes(order, self.client)})
        shipment_id = (result.findtext("id") or "").strip()
        if not shipment_id:
            raise ShipmentError("carrier did not return a packet id")

        self.orders.update(order_id, {"packeta_shipment_id": shipment_id, "status": "processing"})
        self.session.commit()
        logger.info(
            "shipment created: order_id=%s shipment_id=%s delivery=%s email=%s",
            order_id,
            shipment_id,
            order.delivery_method,
            mask_email(order.customer_email),
        )
        return shipment_id

    def cancel_for_order(self, order_id: str) -> CancelOutcome:
        order = self.orders.require(order_id)
        shipment_id = order.packeta_shipment_id
        if not shipment_id:
            raise ShipmentError("order has no shipment")

        cancelled = True
        detail = ""
        try:
            self.client.call("cancelPacket", {"packetId": shipment_id})
        except CarrierError as exc:
            # The local reset goes ahead; the packet may already be gone carrier-side.
            cancelled = False
            detail = str(exc)
            logger.warning("carrier cancel failed: order_id=%s shipment_id=%s error=%s", order_id, shipment_id, exc)

        self.orders.update(order_id, {"packeta_shipment_id": None, "status": "paid"})
        self.session.commit()
        logger.info("shipment reset: order_id=%s shipment_id=%s carrier_cancelled=%s", order_id, shipment_id, cancelled)
        return CancelOutcome(order_id=order_id, shipment_id=shipment_id, carrier_cancelled=cancelled, detail=detail)

    def cancellable_order_ids(self) -> list[str]:
        return [order.id for order in self.orders.list_with_shipment(exclude_statuses=UNCANCELLABLE_STATUSES)]

    def cancel_many(self, order_ids: Iterable[str]) -> BulkCancelReport:
        report = BulkCancelReport()
        for order_id in dict.fromkeys(order_ids):
            try:
                report.outcomes.append(self.cancel_for_order(order_id))
            except ShipmentError as exc:
                report.errors.append({"order_id": order_id, "error": str(exc)})
            except OrderNotFoundError:
                report.errors.append({"order_id": order_id, "error": "order not found"})
            except (StorageError, SQLAlchemyError) as exc:
                self.session.rollback()
                logger.error("shipment reset failed: order_id=%s error=%s", order_id, exc)
                report.errors.append({"order_id": order_id, "error": "storage error"})
        logger.info(
            "bulk cancel finished: reset=%s carrier_cancelled=%s errors=%s",
            len(report.outcomes),
            report.carrier_cancelled,
            len(report.errors),
        )
        return report
