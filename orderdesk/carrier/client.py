from __future__ import annotations

import logging
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Mapping

import httpx

from orderdesk.carrier import codec
from orderdesk.carrier.errors import (
    CarrierClientError,
    CarrierConfigurationError,
    CarrierUnavailableError,
)
from orderdesk.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

REQUEST_HEADERS = {
    "Content-Type": "application/xml; charset=utf-8",
    "Accept": "application/pdf, application/xml;q=0.9, */*;q=0.1",
}


@dataclass(frozen=True)
class CarrierConfig:
    api_password: str
    api_url: str
    timeout_seconds: float = 30.0
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    single_format: str = "A6 on A6"
    batch_format: str = "A6 on A4"
    eshop: str | None = None
    home_delivery_carrier_id: int = 106
    default_weight_kg: float = 1.0
    currency: str = "CZK"

    @classmethod
    def from_settings(cls, settings: Settings) -> CarrierConfig:
        if not settings.packeta_api_password:
            raise CarrierConfigurationError("OD_PACKETA_API_PASSWORD is not set")
        return cls(
            api_password=settings.packeta_api_password,
            api_url=settings.packeta_api_url,
            timeout_seconds=settings.packeta_timeout_seconds,
            max_attempts=max(1, settings.packeta_max_attempts),
            backoff_seconds=settings.packeta_backoff_seconds,
            single_format=settings.label_format_single,
            batch_format=settings.label_format_batch,
            eshop=settings.packeta_eshop,
            home_delivery_carrier_id=settings.packeta_home_delivery_carrier_id,
            default_weight_kg=settings.default_parcel_weight_kg,
            currency=settings.currency,
        )


@lru_cache(maxsize=1)
def get_carrier_config() -> CarrierConfig:
    return CarrierConfig.from_settings(get_settings())


def backoff_delay(base: float, attempt: int) -> float:
    return base * 2 ** (attempt - 1)


class LabelFetchClient:
    """Packeta XML REST client with bounded retries on server-class failures.

    Only 5xx responses and transport errors (timeouts included) are retried.
    A 4xx answer is final after one attempt. Each attempt is capped by
    ``timeout_seconds``; between attempts the client sleeps
    ``backoff_seconds * 2 ** (attempt - 1)``.
    """

    def __init__(
        self,
        config: CarrierConfig,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.client = client
        self.sleep = sleep

    def _send(self, body: bytes) -> httpx.Response:
        if self.client is not None:
            return self.client.post(
                self.config.api_url,
                content=body,
                headers=REQUEST_HEADERS,
                timeout=self.config.timeout_seconds,
            )
        with httpx.Client(timeout=self.config.timeout_seconds) as client:
            return client.post(self.config.api_url, content=body, headers=REQUEST_HEADERS)

    def _post(self, body: bytes, operation: str) -> httpx.Response:
        last_status: int | None = None
        last_error = ""
        attempts = self.config.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                response = self._send(body)
            except httpx.TransportError as exc:
                last_status = None
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning("carrier transport error: op=%s attempt=%s/%s error=%s", operation, attempt, attempts, last_error)
            else:
                status = response.status_code
                if 400 <= status < 500:
                    preview = response.text[: codec.PREVIEW_CHARS]
                    logger.warning("carrier rejected request: op=%s status=%s", operation, status)
                    raise CarrierClientError(status, preview)
                if status < 500:
                    return response
                last_status = status
                last_error = ""
                logger.warning("carrier server error: op=%s attempt=%s/%s status=%s", operation, attempt, attempts, status)

            if attempt < attempts:
                delay = backoff_delay(self.config.backoff_seconds, attempt)
                logger.info("carrier retry scheduled: op=%s next_attempt=%s delay=%.1fs", operation, attempt + 1, delay)
                self.sleep(delay)

        raise CarrierUnavailableError(attempts=attempts, last_status=last_status, detail=last_error)

    def fetch_label(self, shipment_id: str, fmt: str | None = None) -> bytes:
        body = codec.label_request(self.config.api_password, shipment_id, fmt or self.config.single_format)
        response = self._post(body, "packetLabelPdf")
        return codec.decode_label(response.status_code, response.headers.get("content-type", ""), response.content)

    def fetch_labels(self, shipment_ids: list[str], fmt: str | None = None) -> bytes:
        body = codec.batch_label_request(self.config.api_password, shipment_ids, fmt or self.config.batch_format)
        response = self._post(body, "packetsLabelsPdf")
        return codec.decode_label(response.status_code, response.headers.get("content-type", ""), response.content)

    def call(self, operation: str, fields: Mapping[str, Any]) -> ET.Element:
        body = codec.build_request(operation, self.config.api_password, fields)
        response = self._post(body, operation)
        return codec.parse_envelope(response.status_code, response.headers.get("content-type", ""), response.content)


def build_label_client(client: httpx.Client | None = None) -> LabelFetchClient:
    return LabelFetchClient(get_carrier_config(), client=client)
