from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import JSON


def _json_type():
    return JSON().with_variant(JSONB(astext_type=Text()), "postgresql")


class Base(DeclarativeBase):
    pass


class OrderModel(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    stripe_session_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    stripe_invoice_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    delivery_method: Mapped[str] = mapped_column(String(32), default="pickup", nullable=False)
    delivery_address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    delivery_city: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    delivery_postal_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    delivery_country: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    packeta_point_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    packeta_shipment_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="paid", nullable=False)
    amount_total: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    shipping_amount: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    items: Mapped[list] = mapped_column(_json_type(), default=list, nullable=False)
    label_printed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    label_print_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Bumped on every update, never compared: writes stay last-writer-wins.
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SkuModel(Base):
    __tablename__ = "skus"
    __table_args__ = (
        UniqueConstraint("product_id", "size", name="uq_skus_product_size"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    size: Mapped[str] = mapped_column(String(16), nullable=False)
    stock: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class EmailLogModel(Base):
    __tablename__ = "email_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(36), nullable=False)
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    email_type: Mapped[str] = mapped_column(String(32), nullable=False)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    provider_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    payload: Mapped[dict] = mapped_column(_json_type(), nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


Index("ix_orders_stripe_session_id", OrderModel.stripe_session_id)
Index("ix_orders_packeta_shipment_id", OrderModel.packeta_shipment_id)
Index("ix_email_logs_order_id", EmailLogModel.order_id)
