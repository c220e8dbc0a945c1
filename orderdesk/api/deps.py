from __future__ import annotations

from orderdesk.carrier.client import LabelFetchClient, build_label_client
from orderdesk.core.config import get_settings
from orderdesk.labels.aggregator import LabelAggregator
from orderdesk.labels.storage import LabelStore, build_label_store
from orderdesk.notifications.notifier import OrderNotifier
from orderdesk.payments.line_items import LineItemReconciler


def get_label_client() -> LabelFetchClient:
    return build_label_client()


def build_aggregator(client: LabelFetchClient) -> LabelAggregator:
    return LabelAggregator(client, concurrency=get_settings().label_fallback_concurrency)


def get_label_store() -> LabelStore:
    return build_label_store()


def get_reconciler() -> LineItemReconciler:
    return LineItemReconciler.from_settings()


def get_notifier() -> OrderNotifier:
    return OrderNotifier()
