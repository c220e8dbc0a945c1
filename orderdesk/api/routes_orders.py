from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from orderdesk.api.deps import get_notifier
from orderdesk.core.security import Actor, get_actor
from orderdesk.domain.inventory.adjuster import InventoryAdjuster, items_from_order
from orderdesk.domain.orders.repository import ORDER_STATUSES, OrderRepository, order_to_dict
from orderdesk.notifications.email_log import list_emails, record_email
from orderdesk.notifications.notifier import OrderNotifier
from orderdesk.persistence.pg import get_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])

_STATUS_PATTERN = "^(" + "|".join(ORDER_STATUSES) + ")$"


class OrderUpdateRequest(BaseModel):
    status: str | None = Field(default=None, pattern=_STATUS_PATTERN)
    customer_email: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    packeta_point_id: str | None = None
    packeta_shipment_id: str | None = None
    notify_customer: bool = True


class ResendEmailRequest(BaseModel):
    email_type: str = Field(default="receipt", pattern="^(receipt|status)$")


def _email_result(sent) -> dict | None:
    if sent is None:
        return None
    return {
        "email_type": sent.email_type,
        "delivered": sent.receipt.delivered,
        "detail": sent.receipt.detail,
    }


@router.get("/{order_id}")
def get_order(order_id: str, actor: Actor = Depends(get_actor), session: Session = Depends(get_session)):
    order = OrderRepository(session).require(order_id)
    payload = order_to_dict(order)
    payload["emails"] = [
        {"email_type": row.email_type, "status": row.status, "subject": row.subject}
        for row in list_emails(session, order_id)
    ]
    return payload


@router.patch("/{order_id}")
def update_order(
    order_id: str,
    request: OrderUpdateRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    notifier: OrderNotifier = Depends(get_notifier),
):
    fields = request.model_dump(exclude_unset=True, exclude={"notify_customer"})
    if not fields:
        raise HTTPException(status_code=400, detail="no fields to update")

    repo = OrderRepository(session)
    previous_status = repo.require(order_id).status
    order = repo.update(order_id, fields)
    session.commit()
    logger.info(
        "order updated: order_id=%s fields=%s version=%s actor=%s",
        order_id,
        sorted(fields),
        order.version,
        actor.id,
    )

    payload = order_to_dict(order)
    sent = None
    if request.notify_customer and "status" in fields and fields["status"] != previous_status:
        sent = notifier.status_changed(payload, previous_status)
        if sent is not None:
            record_email(session, order_id, sent)
    return {"order": payload, "email": _email_result(sent)}


@router.post("/{order_id}/resend-email")
def resend_email(
    order_id: str,
    request: ResendEmailRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    notifier: OrderNotifier = Depends(get_notifier),
):
    order = OrderRepository(session).require(order_id)
    sent = notifier.send_customer_email(order_to_dict(order), request.email_type)
    if sent is None:
        raise HTTPException(status_code=400, detail="order has no customer email")
    record_email(session, order_id, sent)
    return {"order_id": order_id, "email": _email_result(sent)}


ROLLBACK_BLOCKED_STATUSES = ("cancelled", "refunded")


@router.post("/{order_id}/rollback-inventory")
def rollback_inventory(order_id: str, actor: Actor = Depends(get_actor), session: Session = Depends(get_session)):
    repo = OrderRepository(session)
    order = repo.require(order_id)
    if order.status in ROLLBACK_BLOCKED_STATUSES:
        raise HTTPException(status_code=400, detail=f"order already {order.status}")

    items = items_from_order(order.items or [])
    if not items:
        raise HTTPException(status_code=400, detail="order has no items with product and size to restore")

    result = InventoryAdjuster(session).increase(items)
    if not result.success:
        # All or nothing: partial restores are discarded and the status stays.
        session.rollback()
        logger.error("inventory rollback failed: order_id=%s errors=%s actor=%s", order_id, result.errors, actor.id)
        raise HTTPException(
            status_code=500,
            detail={"message": "inventory rollback failed", "errors": result.errors},
        )

    repo.update(order_id, {"status": "cancelled"})
    session.commit()
    logger.info(
        "inventory rolled back: order_id=%s restored=%s actor=%s",
        order_id,
        len(result.updated_items),
        actor.id,
    )
    return {"order_id": order_id, "status": "cancelled", "inventory": result.to_dict()}
