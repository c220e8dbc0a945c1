from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from orderdesk.api.deps import get_notifier, get_reconciler
from orderdesk.core.config import get_settings
from orderdesk.domain.orders.persister import OrderPersister
from orderdesk.notifications.notifier import OrderNotifier
from orderdesk.payments.checkout import (
    CheckoutSession,
    InvalidSessionError,
    WebhookSignatureError,
    verify_webhook,
)
from orderdesk.payments.line_items import LineItemReconciler
from orderdesk.persistence.pg import get_session

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])

HANDLED_EVENTS = ("checkout.session.completed",)


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None),
    session: Session = Depends(get_session),
    reconciler: LineItemReconciler = Depends(get_reconciler),
    notifier: OrderNotifier = Depends(get_notifier),
):
    settings = get_settings()
    payload = await request.body()
    try:
        event = verify_webhook(
            payload,
            stripe_signature,
            settings.stripe_webhook_secret,
            tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
        )
    except WebhookSignatureError as exc:
        logger.warning("webhook rejected: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    event_type = event.get("type")
    if event_type not in HANDLED_EVENTS:
        return {"received": True, "ignored": event_type}

    try:
        checkout = CheckoutSession.from_stripe((event.get("data") or {}).get("object") or {})
    except InvalidSessionError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    persister = OrderPersister(session, reconciler, notifier)
    outcome = await run_in_threadpool(persister.persist, checkout)
    return {
        "received": True,
        "order_id": outcome.order_id,
        "items": len(outcome.items),
        "item_source": outcome.item_source.source,
        "inventory": outcome.inventory.to_dict(),
    }
