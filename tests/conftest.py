from __future__ import annotations

import hmac
import io
import time
import xml.etree.ElementTree as ET
from hashlib import sha256
from pathlib import Path
from typing import Callable
from uuid import uuid4

import httpx
import pytest
from fastapi.testclient import TestClient
from pypdf import PdfWriter

import orderdesk.persistence.pg as pg
from orderdesk.carrier.client import CarrierConfig, LabelFetchClient, get_carrier_config
from orderdesk.core.config import get_settings
from orderdesk.domain.orders.repository import OrderRepository, order_to_dict
from orderdesk.persistence.models import Base

CARRIER_URL = "https://carrier.test/api/rest"
CARRIER_PASSWORD = "test-api-password"


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return tmp_path_factory.mktemp("db") / "test.sqlite"


@pytest.fixture(scope="session", autouse=True)
def configure_test_engine(test_db_path: Path):
    settings = get_settings()
    settings.label_backend = "local"
    settings.labels_dir = test_db_path.parent / "labels"
    settings.labels_public_base_url = "https://files.test"
    settings.packeta_api_password = CARRIER_PASSWORD
    settings.packeta_api_url = CARRIER_URL
    settings.stripe_secret_key = None
    settings.email_enabled = False
    settings.telegram_enabled = False
    settings.telegram_chat_id = None
    settings.packeta_status_sync_pause_seconds = 0.0
    get_carrier_config.cache_clear()

    engine = pg.create_engine_from_url(f"sqlite+pysqlite:///{test_db_path}")
    TestSessionLocal = pg.make_session_factory(engine)

    pg.engine = engine
    pg.SessionLocal = TestSessionLocal

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def client(configure_test_engine):
    from orderdesk.main import app

    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def session(configure_test_engine):
    with pg.session_scope() as s:
        yield s


@pytest.fixture()
def auth_headers():
    settings = get_settings()
    return {
        "operator": {"X-API-Key": settings.operator_api_key},
        "system": {"Authorization": f"Bearer {settings.system_api_key}"},
    }


@pytest.fixture()
def stripe_signature() -> Callable[..., str]:
    """Build a Stripe-Signature header the way Stripe signs webhook deliveries."""

    def _sign(payload: bytes, secret: str | None = None, timestamp: int | None = None) -> str:
        ts = int(time.time()) if timestamp is None else timestamp
        key = (secret or get_settings().stripe_webhook_secret).encode("utf-8")
        digest = hmac.new(key, f"{ts}.".encode("utf-8") + payload, sha256).hexdigest()
        return f"t={ts},v1={digest}"

    return _sign


@pytest.fixture()
def order_factory(session):
    def _make(**overrides) -> str:
        payload = {
            "id": str(uuid4()),
            "stripe_session_id": f"cs_test_{uuid4().hex[:12]}",
            "customer_email": "jana@example.com",
            "customer_name": "Jana Nováková",
            "delivery_method": "pickup",
            "packeta_point_id": "4321",
            "status": "paid",
            "amount_total": 2279,
            "items": [],
        }
        payload.update(overrides)
        OrderRepository(session).insert(payload)
        session.commit()
        return payload["id"]

    return _make


@pytest.fixture()
def load_order(configure_test_engine):
    def _load(order_id: str) -> dict:
        with pg.session_scope() as s:
            return order_to_dict(OrderRepository(s).require(order_id))

    return _load


@pytest.fixture()
def pdf_factory():
    """Blank PDFs whose page widths identify them after merging."""

    def _make(*widths: int) -> bytes:
        writer = PdfWriter()
        for width in widths or (200,):
            writer.add_blank_page(width=width, height=300)
        buf = io.BytesIO()
        writer.write(buf)
        return buf.getvalue()

    return _make


@pytest.fixture()
def carrier_config() -> CarrierConfig:
    return CarrierConfig(api_password=CARRIER_PASSWORD, api_url=CARRIER_URL)


class CarrierStub:
    """Packeta double: answers by request root tag and records every call."""

    def __init__(self, config: CarrierConfig):
        self.requests: list[ET.Element] = []
        self.responders: dict[str, Callable[[ET.Element], httpx.Response]] = {}
        self.delays: list[float] = []
        self.client = LabelFetchClient(
            config,
            client=httpx.Client(transport=httpx.MockTransport(self._handle)),
            sleep=self.delays.append,
        )

    def _handle(self, request: httpx.Request) -> httpx.Response:
        root = ET.fromstring(request.content)
        self.requests.append(root)
        responder = self.responders.get(root.tag)
        if responder is None:
            return httpx.Response(500, text="no responder")
        return responder(root)

    def on(self, operation: str, responder: Callable[[ET.Element], httpx.Response]) -> None:
        self.responders[operation] = responder

    def calls(self, operation: str) -> list[ET.Element]:
        return [r for r in self.requests if r.tag == operation]

    @staticmethod
    def pdf(data: bytes) -> httpx.Response:
        return httpx.Response(200, content=data, headers={"content-type": "application/pdf"})

    @staticmethod
    def xml(text: str, status_code: int = 200) -> httpx.Response:
        return httpx.Response(status_code, content=text.encode("utf-8"), headers={"content-type": "text/xml; charset=utf-8"})


@pytest.fixture()
def carrier_stub(carrier_config):
    from orderdesk.api.deps import get_label_client
    from orderdesk.main import app

    stub = CarrierStub(carrier_config)
    app.dependency_overrides[get_label_client] = lambda: stub.client
    yield stub
    app.dependency_overrides.pop(get_label_client, None)
