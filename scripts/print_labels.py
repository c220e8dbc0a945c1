#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
import sys

import requests


def main() -> None:
    parser = argparse.ArgumentParser(description="Bulk-print carrier labels through the orderdesk API")
    parser.add_argument("order_ids", nargs="+")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default=os.environ.get("OD_OPERATOR_API_KEY", "od-operator-dev-key"))
    parser.add_argument("--out", default="labels.pdf")
    parser.add_argument("--stored", action="store_true", help="store the PDF and print its URL instead")
    args = parser.parse_args()

    resp = requests.post(
        f"{args.base_url}/shipping/labels/bulk",
        params={"direct": "false" if args.stored else "true"},
        json={"order_ids": args.order_ids},
        headers={"X-API-Key": args.api_key},
        timeout=120,
    )
    if resp.status_code >= 400:
        print(f"HTTP {resp.status_code}: {resp.text}", file=sys.stderr)
        sys.exit(3 if resp.status_code == 503 else 1)

    requested = resp.headers.get("X-Labels-Requested")
    included = resp.headers.get("X-Labels-Included")
    if resp.headers.get("content-type", "").startswith("application/pdf"):
        with open(args.out, "wb") as fh:
            fh.write(resp.content)
        print(f"Wrote {args.out}: {included} of {requested} labels")
    else:
        payload = resp.json()
        print(f"Stored {payload['filename']}: {included} of {requested} labels")
        print(payload["url"])
        for failed in payload.get("failed", []):
            print(f"  failed {failed['order_id']}: {failed['error']}")
        for order_id in payload.get("skipped", []):
            print(f"  skipped {order_id}: no shipment")


if __name__ == "__main__":
    main()
