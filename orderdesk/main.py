from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from orderdesk.api.routes_orders import router as orders_router
from orderdesk.api.routes_shipping import router as shipping_router
from orderdesk.api.routes_webhooks import router as webhooks_router
from orderdesk.carrier.errors import (
    CarrierClientError,
    CarrierConfigurationError,
    CarrierError,
    CarrierUnavailableError,
    UnrecognizedLabelResponse,
)
from orderdesk.carrier.shipments import ShipmentError
from orderdesk.core.config import get_settings
from orderdesk.core.logging import configure_logging
from orderdesk.domain.orders.repository import OrderNotFoundError, StorageError
from orderdesk.labels.aggregator import NoLabelsProducedError
from orderdesk.persistence.pg import init_db

configure_logging()
logger = logging.getLogger(__name__)
settings = get_settings()

app = FastAPI(title=settings.app_name)


@app.on_event("startup")
def on_startup() -> None:
    init_db()
    logger.info("orderdesk started: env=%s label_backend=%s", settings.env, settings.label_backend)


def _error(status_code: int, error: str, detail: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail, "error": error, **extra})


@app.exception_handler(OrderNotFoundError)
async def order_not_found_handler(_: Request, exc: OrderNotFoundError):
    return _error(404, "order_not_found", f"order {exc} not found")


@app.exception_handler(ShipmentError)
async def shipment_error_handler(_: Request, exc: ShipmentError):
    return _error(400, "shipment_invalid", str(exc))


@app.exception_handler(CarrierUnavailableError)
async def carrier_unavailable_handler(_: Request, exc: CarrierUnavailableError):
    return _error(503, "carrier_unavailable", f"{exc}; try again shortly", retryable=True)


@app.exception_handler(CarrierClientError)
async def carrier_client_handler(_: Request, exc: CarrierClientError):
    if exc.status == 404:
        return _error(404, "shipment_not_found", str(exc), retryable=False)
    return _error(502, "carrier_rejected", str(exc), retryable=False)


@app.exception_handler(UnrecognizedLabelResponse)
async def unrecognized_label_handler(_: Request, exc: UnrecognizedLabelResponse):
    return _error(502, "carrier_unparseable", str(exc), retryable=False)


@app.exception_handler(CarrierConfigurationError)
async def carrier_configuration_handler(_: Request, exc: CarrierConfigurationError):
    logger.error("carrier misconfigured: %s", exc)
    return _error(500, "carrier_configuration", str(exc))


@app.exception_handler(CarrierError)
async def carrier_error_handler(_: Request, exc: CarrierError):
    return _error(502, "carrier_error", str(exc), retryable=exc.transient)


@app.exception_handler(NoLabelsProducedError)
async def no_labels_handler(_: Request, exc: NoLabelsProducedError):
    failures = [{"shipment_id": f.shipment_id, "error": f.error} for f in exc.failures]
    if exc.transient:
        return _error(503, "labels_unavailable", f"{exc}; try again shortly", retryable=True, failures=failures)
    return _error(502, "labels_failed", str(exc), retryable=False, failures=failures)


@app.exception_handler(StorageError)
async def storage_error_handler(_: Request, exc: StorageError):
    logger.error("storage failure: %s", exc)
    return _error(500, "storage_error", "order storage failed")


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


app.include_router(webhooks_router)
app.include_router(orders_router)
app.include_router(shipping_router)
