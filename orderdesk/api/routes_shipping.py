from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from orderdesk.api.deps import build_aggregator, get_label_client, get_label_store, get_notifier
from orderdesk.carrier.client import LabelFetchClient
from orderdesk.carrier.shipments import ShipmentService
from orderdesk.carrier.tracking import StatusSync, fetch_packet_status
from orderdesk.core.config import get_settings
from orderdesk.core.security import Actor, get_actor
from orderdesk.domain.orders.repository import OrderRepository
from orderdesk.labels.aggregator import LabelBundle
from orderdesk.labels.delivery import LabelDelivery, LabelDeliveryService, group_by_shipment, orders_for
from orderdesk.labels.storage import LabelStore
from orderdesk.notifications.notifier import OrderNotifier
from orderdesk.persistence.pg import get_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/shipping", tags=["shipping"])


class ShipmentRequest(BaseModel):
    order_id: str = Field(min_length=1)


class OrderIdsRequest(BaseModel):
    order_ids: list[str] | None = None


def _split_ids(values: list[Any]) -> list[str]:
    ids: list[str] = []
    for value in values:
        if isinstance(value, str):
            ids.extend(part.strip() for part in value.split(",") if part.strip())
        elif value is not None:
            ids.append(str(value))
    return list(dict.fromkeys(ids))


async def _read_order_ids(request: Request) -> list[str]:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="invalid JSON body") from exc
        raw = body.get("order_ids") if isinstance(body, dict) else None
        if isinstance(raw, str):
            raw = [raw]
        if not isinstance(raw, list):
            raise HTTPException(status_code=400, detail="order_ids must be a list")
        return _split_ids(raw)
    form = await request.form()
    return _split_ids(list(form.getlist("order_ids")))


def _label_response(
    delivery: LabelDelivery,
    bundle: LabelBundle,
    requested: int,
    orders_by_shipment: dict[str, list[str]],
    skipped: list[str],
) -> Response:
    included_orders = orders_for(orders_by_shipment, bundle.included)
    headers = {
        "X-Labels-Requested": str(requested),
        "X-Labels-Included": str(len(included_orders)),
        "X-Labels-Failed": str(requested - len(included_orders)),
    }
    if delivery.mode == "direct":
        headers["Content-Disposition"] = f'inline; filename="{delivery.filename}"'
        return Response(content=delivery.document, media_type="application/pdf", headers=headers)
    return JSONResponse(
        {
            "url": delivery.url,
            "filename": delivery.filename,
            "strategy": bundle.strategy,
            "requested": requested,
            "included": included_orders,
            "failed": [
                {"order_id": order_id, "shipment_id": f.shipment_id, "error": f.error}
                for f in bundle.failures
                for order_id in orders_by_shipment[f.shipment_id]
            ],
            "skipped": skipped,
        },
        headers=headers,
    )


def _print_labels(
    session: Session,
    client: LabelFetchClient,
    store: LabelStore,
    order_ids: list[str],
    direct: bool,
) -> Response:
    orders = OrderRepository(session).list_by_ids(order_ids)
    if not orders:
        raise HTTPException(status_code=404, detail="no matching orders")

    orders_by_shipment = group_by_shipment(orders)
    covered = set(orders_for(orders_by_shipment, orders_by_shipment))
    skipped = [order_id for order_id in order_ids if order_id not in covered]
    if not orders_by_shipment:
        raise HTTPException(status_code=404, detail="no shipments found for the given orders")
    if skipped:
        logger.warning("orders without shipment skipped: %s", skipped)

    bundle = build_aggregator(client).collect(list(orders_by_shipment))
    included_orders = orders_for(orders_by_shipment, bundle.included)
    prefix = "label" if len(order_ids) == 1 else "labels-bulk"
    delivery = LabelDeliveryService(session, store).deliver(
        bundle.document,
        included_orders,
        direct=direct,
        prefix=prefix,
    )
    logger.info(
        "labels printed: requested=%s included=%s failed=%s mode=%s",
        len(order_ids),
        len(included_orders),
        len(order_ids) - len(included_orders),
        delivery.mode,
    )
    return _label_response(delivery, bundle, len(order_ids), orders_by_shipment, skipped)


@router.post("/shipments")
def create_shipment(
    request: ShipmentRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    client: LabelFetchClient = Depends(get_label_client),
):
    shipment_id = ShipmentService(session, client).create_for_order(request.order_id)
    return {"order_id": request.order_id, "shipment_id": shipment_id, "status": "processing"}


@router.post("/shipments/cancel")
def cancel_shipment(
    request: ShipmentRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    client: LabelFetchClient = Depends(get_label_client),
):
    outcome = ShipmentService(session, client).cancel_for_order(request.order_id)
    return {
        "order_id": outcome.order_id,
        "shipment_id": outcome.shipment_id,
        "carrier_cancelled": outcome.carrier_cancelled,
        "detail": outcome.detail,
        "status": "paid",
    }


@router.post("/shipments/bulk-cancel")
def bulk_cancel_shipments(
    request: OrderIdsRequest | None = None,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    client: LabelFetchClient = Depends(get_label_client),
):
    service = ShipmentService(session, client)
    if request is not None and request.order_ids is not None:
        order_ids = list(dict.fromkeys(request.order_ids))
    else:
        order_ids = service.cancellable_order_ids()
    report = service.cancel_many(order_ids)
    logger.info("bulk cancel requested: orders=%s actor=%s", len(order_ids), actor.id)
    return {
        "requested": len(order_ids),
        "reset": [outcome.order_id for outcome in report.outcomes],
        "carrier_cancelled": report.carrier_cancelled,
        "results": [
            {
                "order_id": outcome.order_id,
                "shipment_id": outcome.shipment_id,
                "carrier_cancelled": outcome.carrier_cancelled,
                "detail": outcome.detail,
            }
            for outcome in report.outcomes
        ],
        "errors": report.errors,
    }


@router.get("/shipments/{shipment_id}/tracking")
def track_shipment(
    shipment_id: str,
    actor: Actor = Depends(get_actor),
    client: LabelFetchClient = Depends(get_label_client),
):
    return fetch_packet_status(client, shipment_id).to_dict()


@router.post("/shipments/sync-status")
def sync_shipment_status(
    request: OrderIdsRequest | None = None,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    client: LabelFetchClient = Depends(get_label_client),
    notifier: OrderNotifier = Depends(get_notifier),
):
    order_ids = request.order_ids if request is not None else None
    sync = StatusSync(session, client, notifier, pause_seconds=get_settings().packeta_status_sync_pause_seconds)
    return sync.run(order_ids).to_dict()


@router.get("/labels/{order_id}")
def print_label(
    order_id: str,
    direct: bool = Query(default=False),
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    client: LabelFetchClient = Depends(get_label_client),
    store: LabelStore = Depends(get_label_store),
):
    return _print_labels(session, client, store, [order_id], direct)


@router.post("/labels/bulk")
async def print_labels_bulk(
    request: Request,
    direct: bool = Query(default=False),
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    client: LabelFetchClient = Depends(get_label_client),
    store: LabelStore = Depends(get_label_store),
):
    order_ids = await _read_order_ids(request)
    if not order_ids:
        raise HTTPException(status_code=400, detail="order_ids is required")
    return await run_in_threadpool(_print_labels, session, client, store, order_ids, direct)
