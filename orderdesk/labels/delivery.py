from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from orderdesk.domain.orders.repository import OrderRepository, StorageError
from orderdesk.labels.storage import LabelStorageError, LabelStore
from orderdesk.persistence.models import OrderModel

logger = logging.getLogger(__name__)


def group_by_shipment(orders: Iterable[OrderModel]) -> dict[str, list[str]]:
    """Order ids per carrier shipment; orders may share one packet."""
    grouped: dict[str, list[str]] = {}
    for order in orders:
        if order.packeta_shipment_id:
            grouped.setdefault(order.packeta_shipment_id, []).append(order.id)
    return grouped


def orders_for(grouped: dict[str, list[str]], shipment_ids: Iterable[str]) -> list[str]:
    return [order_id for shipment_id in shipment_ids for order_id in grouped.get(shipment_id, [])]


def label_filename(prefix: str, now: datetime | None = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%SZ")
    return f"{prefix}-{stamp}-{secrets.token_hex(4)}.pdf"


@dataclass
class LabelDelivery:
    mode: str
    filename: str
    url: str | None = None
    document: bytes | None = None


class LabelDeliveryService:
    """Hand a label document back inline or store it and return its URL.

    Storage trouble never fails the request: the caller gets the document
    inline instead. Orders are stamped as printed either way.
    """

    def __init__(self, session: Session, store: LabelStore | None = None):
        self.session = session
        self.store = store

    def _persist(self, document: bytes, filename: str) -> str | None:
        if self.store is None:
            return None
        object_key = f"labels/{filename}"
        try:
            self.store.upload(object_key, document)
        except LabelStorageError as exc:
            logger.warning("label upload failed, returning inline: file=%s error=%s", filename, exc)
            return None
        try:
            return self.store.public_url(object_key)
        except LabelStorageError as exc:
            logger.warning("label url unavailable, returning inline: file=%s error=%s", filename, exc)
            return None

    def _stamp(self, order_ids: list[str]) -> None:
        try:
            stamped = OrderRepository(self.session).stamp_label_printed(order_ids)
            self.session.commit()
        except (StorageError, SQLAlchemyError) as exc:
            self.session.rollback()
            logger.error("label print stamp failed: order_ids=%s error=%s", order_ids, exc)
            return
        logger.info("orders stamped as printed: count=%s", stamped)

    def deliver(self, document: bytes, order_ids: list[str], direct: bool = False, prefix: str = "label") -> LabelDelivery:
        filename = label_filename(prefix)
        url = None if direct else self._persist(document, filename)
        if url is None:
            delivery = LabelDelivery(mode="direct", filename=filename, document=document)
        else:
            delivery = LabelDelivery(mode="stored", filename=filename, url=url)
        self._stamp(order_ids)
        return delivery
