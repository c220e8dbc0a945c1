from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Union

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from orderdesk.payments.line_items import CanonicalLineItem
from orderdesk.persistence.models import SkuModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InventoryItem:
    product_id: str
    size: str
    quantity: int
    name: str


@dataclass(frozen=True)
class FromCart:
    items: list[InventoryItem]
    source: str = "cart"


@dataclass(frozen=True)
class FromProviderHeuristic:
    items: list[InventoryItem]
    source: str = "provider_heuristic"


ItemSource = Union[FromCart, FromProviderHeuristic]


@dataclass
class StockChange:
    sku_id: int
    product_id: str
    size: str
    old_stock: int
    new_stock: int


@dataclass
class InventoryResult:
    success: bool
    updated_items: list[StockChange] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "updated_items": [change.__dict__ for change in self.updated_items],
            "errors": list(self.errors),
        }


def _cart_to_inventory(raw_items: Iterable[dict[str, Any]]) -> list[InventoryItem]:
    items: list[InventoryItem] = []
    for raw in raw_items:
        product_id = raw.get("productId") or raw.get("product_id")
        size = raw.get("size")
        if not product_id or not size:
            continue
        try:
            quantity = int(raw.get("quantity", 1))
        except (TypeError, ValueError):
            continue
        if quantity <= 0:
            continue
        items.append(
            InventoryItem(
                product_id=str(product_id),
                size=str(size),
                quantity=quantity,
                name=str(raw.get("name") or raw.get("description") or product_id),
            )
        )
    return items


def _lines_to_inventory(lines: Iterable[CanonicalLineItem]) -> list[InventoryItem]:
    return [
        InventoryItem(product_id=line.product_id, size=line.size, quantity=line.quantity, name=line.description)
        for line in lines
        if line.product_id and line.size
    ]


def select_inventory_items(cart_items: list[dict[str, Any]], reconciled: list[CanonicalLineItem]) -> ItemSource:
    from_cart = _cart_to_inventory(cart_items)
    if from_cart:
        return FromCart(items=from_cart)
    return FromProviderHeuristic(items=_lines_to_inventory(reconciled))


def items_from_order(raw_items: Iterable[dict[str, Any]]) -> list[InventoryItem]:
    return _cart_to_inventory(raw_items)


class InventoryAdjuster:
    def __init__(self, session: Session):
        self.session = session

    def _apply(self, item: InventoryItem, delta: int) -> StockChange | None:
        sku = self.session.scalar(
            select(SkuModel).where(SkuModel.product_id == item.product_id).where(SkuModel.size == item.size)
        )
        if sku is None:
            return None
        stmt = (
            update(SkuModel)
            .where(SkuModel.id == sku.id)
            .values(stock=SkuModel.stock + delta, updated_at=datetime.now(timezone.utc))
        )
        if delta < 0:
            stmt = stmt.where(SkuModel.stock >= -delta)
        result = self.session.execute(stmt.execution_options(synchronize_session="fetch"))
        if result.rowcount != 1:
            return None
        self.session.flush()
        new_stock = int(self.session.scalar(select(SkuModel.stock).where(SkuModel.id == sku.id)))
        return StockChange(
            sku_id=sku.id,
            product_id=item.product_id,
            size=item.size,
            old_stock=new_stock - delta,
            new_stock=new_stock,
        )

    def _run(self, items: list[InventoryItem], sign: int, verb: str) -> InventoryResult:
        result = InventoryResult(success=True)
        for item in items:
            try:
                change = self._apply(item, sign * item.quantity)
            except SQLAlchemyError as exc:
                logger.error("stock %s failed: product_id=%s size=%s error=%s", verb, item.product_id, item.size, exc)
                result.errors.append(f"{item.name} ({item.size}): storage error")
                result.success = False
                continue
            if change is None:
                logger.warning(
                    "stock %s rejected: product_id=%s size=%s qty=%s", verb, item.product_id, item.size, item.quantity
                )
                result.errors.append(f"{item.name} ({item.size}): unknown sku or insufficient stock")
                result.success = False
                continue
            logger.info(
                "stock %s: product_id=%s size=%s %s->%s",
                verb,
                item.product_id,
                item.size,
                change.old_stock,
                change.new_stock,
            )
            result.updated_items.append(change)
        return result

    def decrease(self, items: list[InventoryItem]) -> InventoryResult:
        return self._run(items, -1, "decrease")

    def increase(self, items: list[InventoryItem]) -> InventoryResult:
        return self._run(items, 1, "increase")
