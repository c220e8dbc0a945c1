"""Turn a completed checkout session into a stored order.

Sequencing matters here: the order row is committed first, stock is
adjusted second, notifications go out last. A failure in a later step is
logged and reported in the outcome but never undoes an earlier one, so a
paid session always leaves an order behind.

There is no uniqueness constraint on ``stripe_session_id``: replaying the
same session (a redelivered webhook, a manual replay from the CLI) creates
a second order with a new id.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from orderdesk.core.logging import mask_email
from orderdesk.domain.inventory.adjuster import (
    InventoryAdjuster,
    InventoryResult,
    ItemSource,
    select_inventory_items,
)
from orderdesk.domain.orders.repository import MissingColumnError, OrderRepository, order_to_dict
from orderdesk.notifications.notifier import OrderNotifier
from orderdesk.payments.checkout import CheckoutSession
from orderdesk.payments.line_items import CanonicalLineItem, LineItemReconciler

logger = logging.getLogger(__name__)

OPTIONAL_COLUMNS = ("shipping_amount",)

_WORD = re.compile(r"[^\W\d_]+")


def title_case_name(*parts: str | None) -> str | None:
    text = " ".join(p.strip() for p in parts if p and p.strip())
    if not text:
        return None
    return _WORD.sub(lambda m: m.group(0)[:1].upper() + m.group(0)[1:].lower(), text)


def build_order_payload(order_id: str, checkout: CheckoutSession, items: list[CanonicalLineItem]) -> dict[str, Any]:
    meta = checkout.metadata
    name = title_case_name(meta.get("customer_first_name"), meta.get("customer_last_name"))
    if name is None:
        name = title_case_name(checkout.customer_name)

    payload: dict[str, Any] = {
        "id": order_id,
        "stripe_session_id": checkout.id,
        "stripe_invoice_id": checkout.invoice,
        "customer_email": checkout.customer_email,
        "customer_name": name,
        "customer_phone": meta.get("customer_phone"),
        "delivery_method": checkout.delivery_method,
        "status": "paid",
        "amount_total": checkout.amount_total,
        "items": [item.to_dict() for item in items],
    }
    if checkout.delivery_method == "home_delivery":
        payload.update(
            delivery_address=meta.get("delivery_address"),
            delivery_city=meta.get("delivery_city"),
            delivery_postal_code=meta.get("delivery_postal_code"),
            delivery_country=meta.get("delivery_country") or "CZ",
        )
    else:
        payload["packeta_point_id"] = checkout.pickup_point_id
    if checkout.shipping_amount is not None:
        payload["shipping_amount"] = checkout.shipping_amount
    return payload


@dataclass
class PersistOutcome:
    order_id: str
    items: list[CanonicalLineItem]
    item_source: ItemSource
    inventory: InventoryResult
    dropped_columns: list[str] = field(default_factory=list)


class OrderPersister:
    def __init__(
        self,
        session: Session,
        reconciler: LineItemReconciler,
        notifier: OrderNotifier | None = None,
    ):
        self.session = session
        self.reconciler = reconciler
        self.notifier = notifier
        self.orders = OrderRepository(session)

    def _insert(self, payload: dict[str, Any]) -> list[str]:
        dropped: list[str] = []
        try:
            self.orders.insert(payload)
        except MissingColumnError as exc:
            if exc.column not in OPTIONAL_COLUMNS or exc.column not in payload:
                raise
            logger.warning("orders table lacks column=%s, retrying insert without it", exc.column)
            payload.pop(exc.column)
            dropped.append(exc.column)
            self.orders.insert(payload)
        return dropped

    def _adjust_inventory(self, order_id: str, source: ItemSource) -> InventoryResult:
        if not source.items:
            logger.info("no stock-tracked items: order_id=%s source=%s", order_id, source.source)
            return InventoryResult(success=True)
        try:
            result = InventoryAdjuster(self.session).decrease(source.items)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error("inventory adjustment aborted: order_id=%s error=%s", order_id, exc)
            return InventoryResult(success=False, errors=[str(exc)])
        if not result.success:
            logger.warning(
                "inventory partially adjusted, reconcile manually: order_id=%s errors=%s",
                order_id,
                result.errors,
            )
        return result

    def persist(self, checkout: CheckoutSession) -> PersistOutcome:
        items = self.reconciler.reconcile(checkout.id)
        order_id = str(uuid4())
        payload = build_order_payload(order_id, checkout, items)

        dropped = self._insert(payload)
        self.session.commit()

        source = select_inventory_items(checkout.cart_items(), items)
        inventory = self._adjust_inventory(order_id, source)

        if self.notifier is not None:
            order = self.orders.get(order_id)
            if order is not None:
                self.notifier.order_confirmed(order_to_dict(order))

        logger.info(
            "order persisted: order_id=%s session_id=%s email=%s items=%s item_source=%s stock_updated=%s/%s",
            order_id,
            checkout.id,
            mask_email(checkout.customer_email),
            len(items),
            source.source,
            len(inventory.updated_items),
            len(source.items),
        )
        return PersistOutcome(
            order_id=order_id,
            items=items,
            item_source=source,
            inventory=inventory,
            dropped_columns=dropped,
        )
