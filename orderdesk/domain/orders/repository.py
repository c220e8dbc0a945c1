from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from orderdesk.persistence.models import OrderModel

ORDER_STATUSES = ("new", "paid", "processing", "shipped", "delivered", "returned", "cancelled", "refunded")

MUTABLE_FIELDS = (
    "stripe_session_id",
    "stripe_invoice_id",
    "customer_email",
    "customer_name",
    "customer_phone",
    "packeta_point_id",
    "packeta_shipment_id",
    "items",
    "status",
    "amount_total",
    "shipping_amount",
)

_MISSING_COLUMN_PATTERNS = (
    re.compile(r"has no column named (\w+)"),
    re.compile(r'column "(\w+)" of relation "\w+" does not exist'),
    re.compile(r"Unknown column '(\w+)'"),
    re.compile(r"Could not find the '(\w+)' column"),
    re.compile(r"Unconsumed column names: (\w+)"),
)


class StorageError(RuntimeError):
    pass


class MissingColumnError(StorageError):
    def __init__(self, column: str, message: str):
        super().__init__(message)
        self.column = column


class OrderNotFoundError(LookupError):
    pass


def _classify(exc: Exception) -> StorageError:
    message = str(exc)
    for pattern in _MISSING_COLUMN_PATTERNS:
        match = pattern.search(message)
        if match:
            return MissingColumnError(match.group(1), message)
    return StorageError(message)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class OrderRepository:
    def __init__(self, session: Session):
        self.session = session

    def insert(self, payload: dict[str, Any]) -> str:
        now = now_utc()
        row = {"created_at": now, "updated_at": now, **payload}
        try:
            self.session.execute(insert(OrderModel.__table__).values(**row))
            self.session.flush()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise _classify(exc) from exc
        return str(row["id"])

    def get(self, order_id: str) -> OrderModel | None:
        return self.session.get(OrderModel, order_id)

    def require(self, order_id: str) -> OrderModel:
        order = self.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def list_by_ids(self, order_ids: Iterable[str]) -> list[OrderModel]:
        ids = list(dict.fromkeys(order_ids))
        if not ids:
            return []
        rows = {row.id: row for row in self.session.scalars(select(OrderModel).where(OrderModel.id.in_(ids))).all()}
        return [rows[order_id] for order_id in ids if order_id in rows]

    def list_with_shipment(self, exclude_statuses: Iterable[str] = ()) -> list[OrderModel]:
        stmt = select(OrderModel).where(OrderModel.packeta_shipment_id.is_not(None))
        excluded = list(exclude_statuses)
        if excluded:
            stmt = stmt.where(OrderModel.status.not_in(excluded))
        return list(self.session.scalars(stmt.order_by(OrderModel.created_at.asc())).all())

    def list_by_session(self, stripe_session_id: str) -> list[OrderModel]:
        stmt = (
            select(OrderModel)
            .where(OrderModel.stripe_session_id == stripe_session_id)
            .order_by(OrderModel.created_at.asc())
        )
        return list(self.session.scalars(stmt).all())

    def update(self, order_id: str, fields: dict[str, Any]) -> OrderModel:
        order = self.require(order_id)
        for key, value in fields.items():
            if key not in MUTABLE_FIELDS:
                raise ValueError(f"field {key} is not updatable")
            setattr(order, key, value)
        order.version = int(order.version or 0) + 1
        order.updated_at = now_utc()
        try:
            self.session.flush()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise _classify(exc) from exc
        return order

    def stamp_label_printed(self, order_ids: Iterable[str], printed_at: datetime | None = None) -> int:
        ids = list(dict.fromkeys(order_ids))
        if not ids:
            return 0
        at = printed_at or now_utc()
        stmt = (
            update(OrderModel)
            .where(OrderModel.id.in_(ids))
            .values(
                label_printed_at=at,
                label_print_count=OrderModel.label_print_count + 1,
                version=OrderModel.version + 1,
                updated_at=at,
            )
            .execution_options(synchronize_session="fetch")
        )
        try:
            result = self.session.execute(stmt)
            self.session.flush()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise _classify(exc) from exc
        return int(result.rowcount or 0)


def order_to_dict(order: OrderModel) -> dict[str, Any]:
    def _iso(value: datetime | None) -> str | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat().replace("+00:00", "Z")

    return {
        "id": order.id,
        "stripe_session_id": order.stripe_session_id,
        "stripe_invoice_id": order.stripe_invoice_id,
        "customer_email": order.customer_email,
        "customer_name": order.customer_name,
        "customer_phone": order.customer_phone,
        "delivery_method": order.delivery_method,
        "delivery_address": order.delivery_address,
        "delivery_city": order.delivery_city,
        "delivery_postal_code": order.delivery_postal_code,
        "delivery_country": order.delivery_country,
        "packeta_point_id": order.packeta_point_id,
        "packeta_shipment_id": order.packeta_shipment_id,
        "status": order.status,
        "amount_total": order.amount_total,
        "shipping_amount": order.shipping_amount,
        "items": order.items or [],
        "label_printed_at": _iso(order.label_printed_at),
        "label_print_count": order.label_print_count,
        "version": order.version,
        "created_at": _iso(order.created_at),
        "updated_at": _iso(order.updated_at),
    }
