from __future__ import annotations

import json
import time
from uuid import uuid4

import pytest

from orderdesk.api.deps import get_notifier, get_reconciler
from orderdesk.payments.line_items import IdentifierExtractor, LineItemReconciler, TextualShippingMatcher


class StaticSource:
    def list_line_items(self, session_id: str):
        return [
            {"description": "Tričko Logo", "quantity": 2, "amount_total": 1000},
            {"description": "Mikina Classic", "quantity": 1, "amount_total": 1200},
            {"description": "Zásilkovna", "quantity": 1, "amount_total": 79},
        ]


class SilentNotifier:
    def __init__(self):
        self.confirmed: list[str] = []

    def order_confirmed(self, order: dict):
        self.confirmed.append(order["id"])
        return []


@pytest.fixture()
def webhook_deps(client):
    from orderdesk.main import app

    notifier = SilentNotifier()
    reconciler = LineItemReconciler(StaticSource(), TextualShippingMatcher(["zásilkovna"]), IdentifierExtractor(["Velikost"]))
    app.dependency_overrides[get_reconciler] = lambda: reconciler
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield notifier
    app.dependency_overrides.pop(get_reconciler, None)
    app.dependency_overrides.pop(get_notifier, None)


def _event(session_obj: dict, event_type: str = "checkout.session.completed") -> bytes:
    return json.dumps({"id": f"evt_{uuid4().hex[:8]}", "type": event_type, "data": {"object": session_obj}}).encode()


@pytest.fixture()
def signed(stripe_signature):
    def _headers(payload: bytes) -> dict[str, str]:
        return {"Stripe-Signature": stripe_signature(payload), "Content-Type": "application/json"}

    return _headers


def _session_obj(**overrides) -> dict:
    obj = {
        "id": f"cs_test_{uuid4().hex[:12]}",
        "amount_total": 2279,
        "customer_details": {"email": "petr@example.com"},
        "metadata": {"customer_first_name": "petr", "customer_last_name": "svoboda", "packeta_point_id": "555"},
    }
    obj.update(overrides)
    return obj


def test_completed_checkout_creates_order(client, auth_headers, webhook_deps, signed):
    payload = _event(_session_obj())
    resp = client.post("/webhooks/stripe", content=payload, headers=signed(payload))

    assert resp.status_code == 200
    body = resp.json()
    assert body["items"] == 2
    assert body["item_source"] == "provider_heuristic"
    assert webhook_deps.confirmed == [body["order_id"]]

    order = client.get(f"/orders/{body['order_id']}", headers=auth_headers["operator"]).json()
    assert order["customer_name"] == "Petr Svoboda"
    assert order["amount_total"] == 2279
    assert order["packeta_point_id"] == "555"


def test_bad_signature_is_400(client, webhook_deps):
    payload = _event(_session_obj())
    headers = {"Stripe-Signature": f"t={int(time.time())},v1={'0' * 64}"}
    resp = client.post("/webhooks/stripe", content=payload, headers=headers)
    assert resp.status_code == 400
    assert webhook_deps.confirmed == []


def test_missing_amount_total_is_400(client, webhook_deps, signed):
    payload = _event(_session_obj(amount_total=None))
    resp = client.post("/webhooks/stripe", content=payload, headers=signed(payload))
    assert resp.status_code == 400


def test_other_events_are_acknowledged_and_ignored(client, webhook_deps, signed):
    payload = _event({"id": "pi_123"}, event_type="payment_intent.created")
    resp = client.post("/webhooks/stripe", content=payload, headers=signed(payload))

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "ignored": "payment_intent.created"}
    assert webhook_deps.confirmed == []
