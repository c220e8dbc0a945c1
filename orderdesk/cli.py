from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from orderdesk.carrier.client import build_label_client
from orderdesk.carrier.errors import CarrierError
from orderdesk.carrier.tracking import StatusSync
from orderdesk.core.config import get_settings
from orderdesk.core.logging import configure_logging
from orderdesk.domain.orders.persister import OrderPersister
from orderdesk.domain.orders.repository import OrderRepository
from orderdesk.labels.aggregator import LabelAggregator, NoLabelsProducedError
from orderdesk.labels.delivery import LabelDeliveryService, group_by_shipment, label_filename, orders_for
from orderdesk.notifications.notifier import OrderNotifier
from orderdesk.payments.checkout import CheckoutSession, InvalidSessionError
from orderdesk.payments.line_items import LineItemReconciler
from orderdesk.persistence.pg import init_db, session_scope

logger = logging.getLogger(__name__)


def _load_session_object(path: Path) -> dict:
    obj = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(obj, dict):
        raise ValueError("expected a JSON object")
    # Accept either a bare session object or a full webhook event.
    if obj.get("object") == "event" or "data" in obj:
        obj = (obj.get("data") or {}).get("object") or {}
    return obj


def cmd_labels_print(args: argparse.Namespace) -> int:
    with session_scope() as session:
        orders = OrderRepository(session).list_by_ids(args.order_ids)
        by_shipment = group_by_shipment(orders)
        covered = set(orders_for(by_shipment, by_shipment))
        skipped = [oid for oid in args.order_ids if oid not in covered]
        for order_id in skipped:
            print(f"skipped {order_id}: unknown order or no shipment", file=sys.stderr)
        if not by_shipment:
            return 2

        aggregator = LabelAggregator(build_label_client(), concurrency=get_settings().label_fallback_concurrency)
        try:
            bundle = aggregator.collect(list(by_shipment))
        except NoLabelsProducedError as exc:
            print(f"no labels produced: {exc}", file=sys.stderr)
            return 3 if exc.transient else 1
        except CarrierError as exc:
            print(f"carrier error: {exc}", file=sys.stderr)
            return 3 if exc.transient else 1

        out = Path(args.out or label_filename("labels"))
        out.write_bytes(bundle.document)
        included = orders_for(by_shipment, bundle.included)
        LabelDeliveryService(session).deliver(bundle.document, included, direct=True)

    for failure in bundle.failures:
        for order_id in by_shipment[failure.shipment_id]:
            print(f"failed {order_id}: {failure.error}", file=sys.stderr)
    print(f"wrote {out} ({len(included)} of {len(args.order_ids)} labels)")
    return 0


def cmd_orders_replay(args: argparse.Namespace) -> int:
    try:
        raw = _load_session_object(Path(args.session_json))
    except (OSError, ValueError) as exc:
        print(f"cannot read session: {exc}", file=sys.stderr)
        return 1
    checkout = CheckoutSession.from_stripe(raw)
    with session_scope() as session:
        notifier = None if args.no_notify else OrderNotifier()
        outcome = OrderPersister(session, LineItemReconciler.from_settings(), notifier).persist(checkout)
    print(
        json.dumps(
            {
                "order_id": outcome.order_id,
                "items": len(outcome.items),
                "item_source": outcome.item_source.source,
                "inventory": outcome.inventory.to_dict(),
            },
            indent=2,
            ensure_ascii=False,
        )
    )
    return 0


def cmd_shipments_sync(args: argparse.Namespace) -> int:
    settings = get_settings()
    with session_scope() as session:
        notifier = None if args.no_notify else OrderNotifier()
        sync = StatusSync(session, build_label_client(), notifier, pause_seconds=settings.packeta_status_sync_pause_seconds)
        report = sync.run(args.order_ids or None)
    print(json.dumps(report.to_dict(), indent=2, ensure_ascii=False))
    return 1 if report.errors else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="orderdesk", description="Order and shipping label operations")
    sub = parser.add_subparsers(dest="group", required=True)

    labels = sub.add_parser("labels", help="carrier labels").add_subparsers(dest="command", required=True)
    print_cmd = labels.add_parser("print", help="fetch labels for orders into one PDF")
    print_cmd.add_argument("order_ids", nargs="+")
    print_cmd.add_argument("--out", help="output PDF path")
    print_cmd.set_defaults(func=cmd_labels_print)

    orders = sub.add_parser("orders", help="orders").add_subparsers(dest="command", required=True)
    replay = orders.add_parser("replay", help="persist an order from a saved checkout session JSON")
    replay.add_argument("session_json")
    replay.add_argument("--no-notify", action="store_true", help="skip customer and operator notifications")
    replay.set_defaults(func=cmd_orders_replay)

    shipments = sub.add_parser("shipments", help="carrier shipments").add_subparsers(dest="command", required=True)
    sync = shipments.add_parser("sync", help="pull carrier tracking status into open orders")
    sync.add_argument("order_ids", nargs="*", help="limit to these orders (default: every open shipment)")
    sync.add_argument("--no-notify", action="store_true", help="skip customer status e-mails")
    sync.set_defaults(func=cmd_shipments_sync)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    init_db()
    try:
        return args.func(args)
    except InvalidSessionError as exc:
        print(f"invalid session: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
