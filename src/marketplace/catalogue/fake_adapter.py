"""In-memory catalog for development and testing.

Holds raw CMS-shaped documents and validates them on every fetch, the way a
real store adapter would. Stock counters are adjusted under a lock so
concurrent checkouts never lose an update or drive a counter negative.
"""

import copy
import threading
import time
from collections.abc import Callable

from marketplace.catalogue.port import CatalogPort, Course, DeliveryZone, Product, parse_catalog_entry
from marketplace.errors import InsufficientStockError, NotFoundError


class InMemoryCatalog(CatalogPort):
    """Catalog adapter backed by dictionaries."""

    def __init__(self) -> None:
        self._documents: dict[str, dict] = {}
        self._zones: dict[str, dict] = {}
        self._lock = threading.RLock()
        self.latency: float = 0.0
        self.stock_adjustments: list[dict] = []
        self._listeners: list[Callable[[str], None]] = []

    def configure(self, latency: float = 0.0) -> None:
        """Simulate a slow store on fetches."""
        self.latency = latency

    # -------------------------------------------------------------------
    # Seeding
    # -------------------------------------------------------------------
    def add_product(self, ref: str, title: str, price: int, **fields) -> None:
        document = {"kind": "PRODUCT", "ref": ref, "title": title, "price": price, **fields}
        if document.get("variants"):
            document.setdefault("has_variants", True)
        parse_catalog_entry(document)
        with self._lock:
            self._documents[ref] = document
        self._notify(ref)

    def add_course(self, ref: str, title: str, price: int, **fields) -> None:
        document = {"kind": "COURSE", "ref": ref, "title": title, "price": price, **fields}
        parse_catalog_entry(document)
        with self._lock:
            self._documents[ref] = document
        self._notify(ref)

    def add_zone(self, ref: str, name: str, fee: int, is_active: bool = True) -> None:
        with self._lock:
            self._zones[ref] = {"ref": ref, "name": name, "fee": fee, "is_active": is_active}

    def update_entry(self, ref: str, **fields) -> None:
        """Edit a catalog document in place (price changes, renames)."""
        with self._lock:
            if ref not in self._documents:
                raise NotFoundError("CatalogEntry", ref)
            self._documents[ref].update(fields)
        self._notify(ref)

    def _notify(self, ref: str) -> None:
        for listener in list(self._listeners):
            listener(ref)

    # -------------------------------------------------------------------
    # CatalogPort
    # -------------------------------------------------------------------
    def fetch_entries(self, refs: list[str]) -> dict[str, Product | Course]:
        if self.latency:
            time.sleep(self.latency)
        with self._lock:
            documents = {ref: copy.deepcopy(self._documents[ref]) for ref in refs if ref in self._documents}
        return {ref: parse_catalog_entry(document) for ref, document in documents.items()}

    def on_change(self, listener: Callable[[str], None]) -> None:
        self._listeners.append(listener)

    def fetch_zone(self, zone_ref: str) -> DeliveryZone | None:
        with self._lock:
            document = self._zones.get(zone_ref)
        return DeliveryZone.model_validate(document) if document else None

    def available_stock(self, product_ref: str, variant_sku: str | None) -> int:
        with self._lock:
            document, variant = self._stock_target(product_ref, variant_sku)
            return variant["stock"] if variant is not None else document.get("total_stock", 0)

    def adjust_stock(self, product_ref: str, variant_sku: str | None, delta: int) -> int:
        with self._lock:
            document, variant = self._stock_target(product_ref, variant_sku)
            holder, key = (variant, "stock") if variant is not None else (document, "total_stock")
            current = holder.get(key, 0)
            if current + delta < 0:
                raise InsufficientStockError(product_ref, variant_sku, -delta, current)
            holder[key] = current + delta
            self.stock_adjustments.append(
                {"product_ref": product_ref, "variant_sku": variant_sku, "delta": delta, "level": holder[key]}
            )
            return holder[key]

    def _stock_target(self, product_ref: str, variant_sku: str | None) -> tuple[dict, dict | None]:
        document = self._documents.get(product_ref)
        if document is None or document.get("kind") != "PRODUCT":
            raise NotFoundError("Product", product_ref)
        if not document.get("variants"):
            return document, None
        variant = next((v for v in document["variants"] if v.get("sku") == variant_sku), None)
        if variant is None:
            raise NotFoundError("Variant", f"{product_ref}/{variant_sku}", code="VARIANT_NOT_FOUND")
        variant.setdefault("stock", 0)
        return document, variant
