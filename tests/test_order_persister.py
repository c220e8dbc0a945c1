from __future__ import annotations

import json
from uuid import uuid4

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker

from orderdesk.domain.orders.persister import OrderPersister, build_order_payload, title_case_name
from orderdesk.domain.orders.repository import OrderRepository, StorageError
from orderdesk.notifications.channels import DeliveryReceipt
from orderdesk.payments.checkout import CheckoutSession
from orderdesk.payments.line_items import (
    IdentifierExtractor,
    LineItemReconciler,
    ProductTypeShippingMatcher,
    TextualShippingMatcher,
)
from orderdesk.persistence.models import SkuModel

SCENARIO_A_LINES = [
    {"description": "Tričko Logo", "quantity": 2, "amount_total": 1000},
    {"description": "Mikina Classic", "quantity": 1, "amount_total": 1200},
    {"description": "Zásilkovna - výdejní místo", "quantity": 1, "amount_total": 79},
]


class StaticSource:
    def __init__(self, lines=None, error: Exception | None = None):
        self.lines = lines or []
        self.error = error

    def list_line_items(self, session_id: str):
        if self.error is not None:
            raise self.error
        return self.lines


class RecordingNotifier:
    def __init__(self):
        self.confirmed: list[dict] = []

    def order_confirmed(self, order: dict) -> list[DeliveryReceipt]:
        self.confirmed.append(order)
        return [DeliveryReceipt(channel="email", delivered=True)]


def _reconciler(lines=None, error=None) -> LineItemReconciler:
    return LineItemReconciler(
        source=StaticSource(lines, error),
        matcher=ProductTypeShippingMatcher(TextualShippingMatcher(["zásilkovna", "doručení", "doprava"])),
        extractor=IdentifierExtractor(["Velikost"]),
    )


def _checkout(**overrides) -> CheckoutSession:
    obj = {
        "id": f"cs_test_{uuid4().hex[:12]}",
        "amount_total": 2279,
        "customer_details": {"email": "jana@example.com", "name": "jana nováková"},
        "shipping_cost": {"amount_total": 79},
        "metadata": {"delivery_method": "pickup", "packeta_point_id": "4321"},
    }
    obj.update(overrides)
    return CheckoutSession.from_stripe(obj)


def test_scenario_a_drops_shipping_but_keeps_full_total(session):
    checkout = _checkout()
    outcome = OrderPersister(session, _reconciler(SCENARIO_A_LINES)).persist(checkout)

    order = OrderRepository(session).require(outcome.order_id)
    assert len(outcome.items) == 2
    assert [item["description"] for item in order.items] == ["Tričko Logo", "Mikina Classic"]
    assert order.amount_total == 2279
    assert order.shipping_amount == 79
    assert order.status == "paid"
    assert order.packeta_point_id == "4321"
    assert order.stripe_session_id == checkout.id


def test_customer_name_is_title_cased_from_metadata(session):
    checkout = _checkout(metadata={"customer_first_name": "jana", "customer_last_name": "NOVÁKOVÁ"})
    outcome = OrderPersister(session, _reconciler()).persist(checkout)
    assert OrderRepository(session).require(outcome.order_id).customer_name == "Jana Nováková"


def test_title_case_handles_compound_names():
    assert title_case_name("anna-marie", "o'neil") == "Anna-Marie O'Neil"
    assert title_case_name(None, "  ") is None


def test_home_delivery_payload_carries_address():
    checkout = _checkout(
        metadata={
            "delivery_method": "home_delivery",
            "delivery_address": "Dlouhá 12",
            "delivery_city": "Praha",
            "delivery_postal_code": "11000",
        }
    )
    payload = build_order_payload("order-1", checkout, [])
    assert payload["delivery_method"] == "home_delivery"
    assert payload["delivery_country"] == "CZ"
    assert payload["delivery_city"] == "Praha"
    assert "packeta_point_id" not in payload


def test_replaying_same_session_creates_a_second_order(session):
    checkout = _checkout()
    persister = OrderPersister(session, _reconciler(SCENARIO_A_LINES))

    first = persister.persist(checkout)
    second = persister.persist(checkout)

    assert first.order_id != second.order_id
    assert len(OrderRepository(session).list_by_session(checkout.id)) == 2


def test_cart_metadata_drives_stock_decrement(session):
    product_id = f"tee-{uuid4().hex[:6]}"
    session.add(SkuModel(product_id=product_id, size="M", stock=3))
    session.commit()
    cart = json.dumps([{"productId": product_id, "size": "M", "quantity": 2, "name": "Tričko"}])
    checkout = _checkout(metadata={"packeta_point_id": "4321", "cart_items": cart})

    outcome = OrderPersister(session, _reconciler(SCENARIO_A_LINES)).persist(checkout)

    assert outcome.item_source.source == "cart"
    assert outcome.inventory.success is True
    assert outcome.inventory.updated_items[0].new_stock == 1


def test_provider_lines_drive_stock_when_cart_is_missing(session):
    product_id = f"hoodie-{uuid4().hex[:6]}"
    session.add(SkuModel(product_id=product_id, size="L", stock=4))
    session.commit()
    lines = [
        {
            "description": "Mikina (Velikost: L)",
            "quantity": 1,
            "amount_total": 1200,
            "price": {"product": {"metadata": {"product_id": product_id}}},
        }
    ]
    outcome = OrderPersister(session, _reconciler(lines)).persist(_checkout())

    assert outcome.item_source.source == "provider_heuristic"
    assert outcome.inventory.updated_items[0].new_stock == 3


def test_stock_failure_does_not_undo_the_order(session):
    cart = json.dumps([{"productId": "not-stocked", "size": "M", "quantity": 1}])
    outcome = OrderPersister(session, _reconciler()).persist(
        _checkout(metadata={"packeta_point_id": "4321", "cart_items": cart})
    )

    assert outcome.inventory.success is False
    assert OrderRepository(session).get(outcome.order_id) is not None


def test_provider_outage_still_persists_order(session):
    outcome = OrderPersister(session, _reconciler(error=RuntimeError("stripe down"))).persist(_checkout())

    order = OrderRepository(session).require(outcome.order_id)
    assert outcome.items == []
    assert order.items == []
    assert order.amount_total == 2279


def test_confirmation_is_sent_after_persisting(session):
    notifier = RecordingNotifier()
    outcome = OrderPersister(session, _reconciler(SCENARIO_A_LINES), notifier).persist(_checkout())

    assert [order["id"] for order in notifier.confirmed] == [outcome.order_id]
    assert len(notifier.confirmed[0]["items"]) == 2


LEGACY_ORDERS_DDL = """
CREATE TABLE orders (
    id VARCHAR(36) PRIMARY KEY,
    stripe_session_id VARCHAR(255),
    stripe_invoice_id VARCHAR(255),
    customer_email VARCHAR(255),
    customer_name VARCHAR(255),
    customer_phone VARCHAR(64),
    delivery_method VARCHAR(32) NOT NULL,
    delivery_address VARCHAR(255),
    delivery_city VARCHAR(128),
    delivery_postal_code VARCHAR(32),
    delivery_country VARCHAR(8),
    packeta_point_id VARCHAR(100),
    packeta_shipment_id VARCHAR(100),
    status VARCHAR(32) NOT NULL,
    amount_total BIGINT NOT NULL,
    items JSON NOT NULL,
    label_printed_at DATETIME,
    label_print_count INTEGER NOT NULL,
    version INTEGER NOT NULL,
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL
)
"""


@pytest.fixture()
def legacy_db(tmp_path):
    engines = []

    def _open(ddl: str = LEGACY_ORDERS_DDL):
        engine = create_engine(f"sqlite+pysqlite:///{tmp_path / f'legacy-{len(engines)}.sqlite'}", future=True)
        engines.append(engine)
        with engine.begin() as conn:
            conn.execute(text(ddl))
        SkuModel.__table__.create(engine)
        return sessionmaker(bind=engine, expire_on_commit=False)()

    yield _open
    for engine in engines:
        engine.dispose()


def test_missing_optional_column_is_dropped_and_insert_retried(legacy_db):
    legacy_session = legacy_db()
    outcome = OrderPersister(legacy_session, _reconciler(SCENARIO_A_LINES)).persist(_checkout())

    assert outcome.dropped_columns == ["shipping_amount"]
    row = legacy_session.execute(text("SELECT id, amount_total FROM orders")).one()
    assert row.id == outcome.order_id
    assert row.amount_total == 2279
    legacy_session.close()


def test_missing_required_column_fails_without_writing_an_order(legacy_db):
    ddl = LEGACY_ORDERS_DDL.replace("    customer_phone VARCHAR(64),\n", "")
    legacy_session = legacy_db(ddl)

    with pytest.raises(StorageError) as excinfo:
        OrderPersister(legacy_session, _reconciler(SCENARIO_A_LINES)).persist(_checkout())

    assert "customer_phone" in str(excinfo.value)
    assert legacy_session.execute(text("SELECT COUNT(*) FROM orders")).scalar_one() == 0
    legacy_session.close()
