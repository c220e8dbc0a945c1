"""Reconcile purchased lines reported by Stripe into canonical line items.

Stripe is the source of truth for what was paid for; the cart metadata
captured at checkout only refines product ids and sizes. Shipping is sold
as an ordinary line, so it has to be recognised and dropped here.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Iterable, Protocol

import httpx

from orderdesk.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

UNKNOWN_PRODUCT = "Unknown product"


@dataclass(frozen=True)
class CanonicalLineItem:
    description: str
    quantity: int
    amount_total: int
    product_id: str | None = None
    size: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


class LineItemSource(Protocol):
    def list_line_items(self, session_id: str) -> list[dict[str, Any]]:
        ...


class StripeLineItemSource:
    def __init__(self, settings: Settings | None = None, client: httpx.Client | None = None):
        self.settings = settings or get_settings()
        self.base_url = self.settings.stripe_api_base.rstrip("/")
        self.client = client

    def _headers(self) -> dict[str, str]:
        if not self.settings.stripe_secret_key:
            raise RuntimeError("OD_STRIPE_SECRET_KEY is not configured")
        return {"Authorization": f"Bearer {self.settings.stripe_secret_key}"}

    def _get(self, url: str, params: list[tuple[str, str]]) -> dict[str, Any]:
        if self.client is not None:
            response = self.client.get(url, params=params, headers=self._headers())
        else:
            with httpx.Client(timeout=self.settings.stripe_timeout_seconds) as client:
                response = client.get(url, params=params, headers=self._headers())
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError(f"unexpected Stripe payload: {type(payload).__name__}")
        return payload

    def list_line_items(self, session_id: str) -> list[dict[str, Any]]:
        url = f"{self.base_url}/v1/checkout/sessions/{session_id}/line_items"
        lines: list[dict[str, Any]] = []
        starting_after: str | None = None
        while True:
            params = [("expand[]", "data.price.product"), ("limit", "100")]
            if starting_after:
                params.append(("starting_after", starting_after))
            page = self._get(url, params)
            data = page.get("data") or []
            lines.extend(item for item in data if isinstance(item, dict))
            if not page.get("has_more") or not data:
                return lines
            starting_after = str(data[-1].get("id"))


def _product(line: dict[str, Any]) -> dict[str, Any]:
    price = line.get("price") or {}
    product = price.get("product")
    return product if isinstance(product, dict) else {}


def resolve_description(line: dict[str, Any]) -> str:
    price = line.get("price") or {}
    for candidate in (line.get("description"), _product(line).get("name"), price.get("nickname")):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return UNKNOWN_PRODUCT


class ShippingLineMatcher(Protocol):
    def is_shipping(self, line: dict[str, Any], description: str) -> bool:
        ...


class TextualShippingMatcher:
    """Freight detection for providers that do not tag line types."""

    def __init__(self, synonyms: Iterable[str]):
        self.synonyms = tuple(s.casefold() for s in synonyms if s)

    def is_shipping(self, line: dict[str, Any], description: str) -> bool:
        folded = description.casefold()
        return any(synonym in folded for synonym in self.synonyms)


class ProductTypeShippingMatcher:
    """Uses an explicit product-level type tag, text only when it is missing."""

    type_key = "line_type"

    def __init__(self, fallback: ShippingLineMatcher):
        self.fallback = fallback

    def is_shipping(self, line: dict[str, Any], description: str) -> bool:
        metadata = _product(line).get("metadata") or {}
        value = metadata.get(self.type_key)
        if value:
            return str(value).casefold() in {"shipping", "freight", "delivery"}
        return self.fallback.is_shipping(line, description)


def build_shipping_matcher(settings: Settings | None = None) -> ShippingLineMatcher:
    cfg = settings or get_settings()
    textual = TextualShippingMatcher(cfg.shipping_line_synonyms)
    if cfg.shipping_matcher == "textual":
        return textual
    return ProductTypeShippingMatcher(fallback=textual)


class IdentifierExtractor:
    def __init__(self, size_labels: Iterable[str], product_hints: dict[str, str] | None = None):
        labels = "|".join(re.escape(label) for label in size_labels if label)
        self.size_pattern = re.compile(rf"(?:{labels})\s*:\s*([A-Za-z0-9]+)", re.IGNORECASE) if labels else None
        self.product_hints = {k.casefold(): v for k, v in (product_hints or {}).items()}

    def extract(self, line: dict[str, Any], description: str) -> tuple[str | None, str | None]:
        metadata = _product(line).get("metadata") or {}
        product_id = metadata.get("product_id") or None
        size = metadata.get("size") or None

        if size is None and self.size_pattern is not None:
            product_description = _product(line).get("description") or ""
            for text in (description, product_description):
                match = self.size_pattern.search(text)
                if match:
                    size = match.group(1).upper()
                    break

        if product_id is None:
            folded = description.casefold()
            for needle, code in self.product_hints.items():
                if needle in folded:
                    product_id = code
                    break
        return product_id, size


class LineItemReconciler:
    def __init__(
        self,
        source: LineItemSource,
        matcher: ShippingLineMatcher,
        extractor: IdentifierExtractor,
    ):
        self.source = source
        self.matcher = matcher
        self.extractor = extractor

    @classmethod
    def from_settings(cls, settings: Settings | None = None, client: httpx.Client | None = None) -> "LineItemReconciler":
        cfg = settings or get_settings()
        return cls(
            source=StripeLineItemSource(cfg, client=client),
            matcher=build_shipping_matcher(cfg),
            extractor=IdentifierExtractor(cfg.size_labels, cfg.product_code_hints),
        )

    def normalize(self, lines: Iterable[dict[str, Any]]) -> list[CanonicalLineItem]:
        items: list[CanonicalLineItem] = []
        for line in lines:
            description = resolve_description(line)
            if self.matcher.is_shipping(line, description):
                continue
            product_id, size = self.extractor.extract(line, description)
            quantity = line.get("quantity")
            amount = line.get("amount_total")
            items.append(
                CanonicalLineItem(
                    description=description,
                    quantity=quantity if isinstance(quantity, int) and quantity > 0 else 1,
                    amount_total=amount if isinstance(amount, int) else 0,
                    product_id=str(product_id) if product_id else None,
                    size=str(size) if size else None,
                )
            )
        return items

    def reconcile(self, session_id: str) -> list[CanonicalLineItem]:
        try:
            lines = self.source.list_line_items(session_id)
        except (httpx.HTTPError, RuntimeError, ValueError) as exc:
            logger.warning("line items unavailable, persisting order without items: session_id=%s error=%s", session_id, exc)
            return []
        return self.normalize(lines)
