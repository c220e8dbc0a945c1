"""Collect carrier labels for many shipments into one printable PDF."""

from __future__ import annotations

import io
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from pypdf import PdfReader, PdfWriter
from pypdf.errors import PyPdfError

from orderdesk.carrier.client import LabelFetchClient
from orderdesk.carrier.errors import CarrierError, CarrierFaultError, UnrecognizedLabelResponse

logger = logging.getLogger(__name__)


@dataclass
class ShipmentFailure:
    shipment_id: str
    error: str
    transient: bool = False


@dataclass
class LabelBundle:
    document: bytes
    included: list[str]
    failures: list[ShipmentFailure] = field(default_factory=list)
    strategy: str = "single"

    @property
    def requested(self) -> int:
        return len(self.included) + len(self.failures)


class NoLabelsProducedError(RuntimeError):
    def __init__(self, failures: list[ShipmentFailure]):
        super().__init__(f"no labels produced for {len(failures)} shipment(s)")
        self.failures = failures

    @property
    def transient(self) -> bool:
        return bool(self.failures) and all(f.transient for f in self.failures)


def merge_pdfs(documents: list[tuple[str, bytes]]) -> tuple[bytes, list[str], list[ShipmentFailure]]:
    """Concatenate documents page by page, keeping input order."""
    writer = PdfWriter()
    included: list[str] = []
    failures: list[ShipmentFailure] = []
    for shipment_id, data in documents:
        try:
            pages = list(PdfReader(io.BytesIO(data)).pages)
        except (PyPdfError, ValueError) as exc:
            logger.warning("label is not a readable pdf, skipping: shipment_id=%s error=%s", shipment_id, exc)
            failures.append(ShipmentFailure(shipment_id, f"unreadable pdf: {exc}"))
            continue
        for page in pages:
            writer.add_page(page)
        included.append(shipment_id)

    buf = io.BytesIO()
    if included:
        writer.write(buf)
    return buf.getvalue(), included, failures


class LabelAggregator:
    def __init__(self, client: LabelFetchClient, concurrency: int = 1):
        self.client = client
        self.concurrency = max(1, concurrency)

    def _fetch_one(self, shipment_id: str) -> tuple[str, bytes | None, ShipmentFailure | None]:
        try:
            return shipment_id, self.client.fetch_label(shipment_id), None
        except CarrierError as exc:
            logger.warning("label fetch failed, skipping: shipment_id=%s error=%s", shipment_id, exc)
            return shipment_id, None, ShipmentFailure(shipment_id, str(exc), transient=exc.transient)

    def _fallback(self, shipment_ids: list[str]) -> LabelBundle:
        if self.concurrency == 1 or len(shipment_ids) == 1:
            results = [self._fetch_one(shipment_id) for shipment_id in shipment_ids]
        else:
            with ThreadPoolExecutor(max_workers=min(self.concurrency, len(shipment_ids))) as pool:
                results = list(pool.map(self._fetch_one, shipment_ids))

        fetched = [(shipment_id, data) for shipment_id, data, _ in results if data is not None]
        failures = [failure for _, _, failure in results if failure is not None]
        document, included, unreadable = merge_pdfs(fetched)
        failures.extend(unreadable)
        if not included:
            raise NoLabelsProducedError(failures)
        logger.info(
            "labels merged: included=%s failed=%s requested=%s",
            len(included),
            len(failures),
            len(shipment_ids),
        )
        return LabelBundle(document=document, included=included, failures=failures, strategy="fallback")

    def collect(self, shipment_ids: list[str]) -> LabelBundle:
        ids = list(dict.fromkeys(sid for sid in shipment_ids if sid))
        if not ids:
            raise ValueError("no shipment ids to print")

        if len(ids) == 1:
            return LabelBundle(document=self.client.fetch_label(ids[0]), included=ids, strategy="single")

        try:
            document = self.client.fetch_labels(ids)
        except (CarrierFaultError, UnrecognizedLabelResponse) as exc:
            logger.warning("batch label request failed, fetching one by one: count=%s error=%s", len(ids), exc)
            return self._fallback(ids)
        return LabelBundle(document=document, included=ids, strategy="batch")
