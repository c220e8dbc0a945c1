from __future__ import annotations

import re
from pathlib import Path

from sqlalchemy.exc import OperationalError

from orderdesk.domain.orders.repository import OrderRepository, StorageError
from orderdesk.labels.delivery import LabelDeliveryService, label_filename
from orderdesk.labels.storage import LabelStorageError, LocalLabelStore


class RecordingStore:
    backend = "memory"

    def __init__(self, fail_upload: bool = False, fail_url: bool = False):
        self.fail_upload = fail_upload
        self.fail_url = fail_url
        self.objects: dict[str, bytes] = {}

    def upload(self, object_key: str, data: bytes, content_type: str = "application/pdf") -> None:
        if self.fail_upload:
            raise LabelStorageError("bucket unreachable")
        self.objects[object_key] = data

    def public_url(self, object_key: str) -> str:
        if self.fail_url:
            raise LabelStorageError("cannot sign")
        return f"https://files.test/{object_key}"


def test_filename_is_prefixed_stamped_and_randomised():
    first = label_filename("labels-bulk")
    second = label_filename("labels-bulk")
    assert re.fullmatch(r"labels-bulk-\d{8}T\d{6}Z-[0-9a-f]{8}\.pdf", first)
    assert first != second


def test_stored_mode_uploads_and_returns_url(session, order_factory, load_order):
    order_id = order_factory(packeta_shipment_id="7001")
    store = RecordingStore()

    delivery = LabelDeliveryService(session, store).deliver(b"%PDF-doc", [order_id])

    assert delivery.mode == "stored"
    assert delivery.document is None
    assert delivery.url == f"https://files.test/labels/{delivery.filename}"
    assert store.objects == {f"labels/{delivery.filename}": b"%PDF-doc"}
    assert load_order(order_id)["label_print_count"] == 1


def test_upload_failure_degrades_to_direct(session, order_factory, load_order):
    order_id = order_factory(packeta_shipment_id="7002")

    delivery = LabelDeliveryService(session, RecordingStore(fail_upload=True)).deliver(b"%PDF-doc", [order_id])

    assert delivery.mode == "direct"
    assert delivery.document == b"%PDF-doc"
    assert delivery.url is None
    stamped = load_order(order_id)
    assert stamped["label_print_count"] == 1
    assert stamped["label_printed_at"] is not None


def test_url_failure_after_upload_degrades_to_direct(session, order_factory):
    order_id = order_factory(packeta_shipment_id="7003")
    store = RecordingStore(fail_url=True)

    delivery = LabelDeliveryService(session, store).deliver(b"%PDF-doc", [order_id])

    assert delivery.mode == "direct"
    assert len(store.objects) == 1


def test_direct_mode_never_touches_storage(session, order_factory):
    order_id = order_factory(packeta_shipment_id="7004")
    store = RecordingStore()

    delivery = LabelDeliveryService(session, store).deliver(b"%PDF-doc", [order_id], direct=True)

    assert delivery.mode == "direct"
    assert store.objects == {}


def test_repeated_prints_keep_counting(session, order_factory, load_order):
    order_id = order_factory(packeta_shipment_id="7005")
    service = LabelDeliveryService(session, RecordingStore())

    service.deliver(b"%PDF-1", [order_id], direct=True)
    service.deliver(b"%PDF-2", [order_id], direct=True)

    order = load_order(order_id)
    assert order["label_print_count"] == 2
    assert order["version"] == 3


def test_stamp_failure_does_not_fail_delivery(session, order_factory, monkeypatch):
    order_id = order_factory(packeta_shipment_id="7006")

    def _broken(self, order_ids, printed_at=None):
        raise StorageError("database is locked")

    monkeypatch.setattr(OrderRepository, "stamp_label_printed", _broken)

    delivery = LabelDeliveryService(session, RecordingStore()).deliver(b"%PDF-doc", [order_id])
    assert delivery.mode == "stored"


def test_commit_failure_while_stamping_still_returns_document(session, order_factory, load_order, monkeypatch):
    order_id = order_factory(packeta_shipment_id="7007")

    def _locked():
        raise OperationalError("UPDATE orders", {}, Exception("database is locked"))

    monkeypatch.setattr(session, "commit", _locked)

    delivery = LabelDeliveryService(session, None).deliver(b"%PDF-doc", [order_id], direct=True)

    assert delivery.mode == "direct"
    assert delivery.document == b"%PDF-doc"
    monkeypatch.undo()
    assert load_order(order_id)["label_print_count"] == 0


def test_local_store_writes_file_and_builds_public_url(tmp_path: Path):
    store = LocalLabelStore(tmp_path, public_base_url="https://files.test/")
    store.upload("labels/a.pdf", b"%PDF-a")

    assert (tmp_path / "labels" / "a.pdf").read_bytes() == b"%PDF-a"
    assert store.public_url("labels/a.pdf") == "https://files.test/labels/a.pdf"


def test_local_store_without_base_url_uses_file_uri(tmp_path: Path):
    store = LocalLabelStore(tmp_path)
    store.upload("labels/b.pdf", b"%PDF-b")
    assert store.public_url("labels/b.pdf").startswith("file://")
