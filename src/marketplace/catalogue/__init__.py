"""Catalog adapters — product/course pricing data and the stock ledger."""

from marketplace.catalogue.fake_adapter import InMemoryCatalog
from marketplace.catalogue.port import CatalogPort, Course, DeliveryZone, Discount, LineKind, Product, Variant

__all__ = [
    "CatalogPort",
    "Course",
    "DeliveryZone",
    "Discount",
    "InMemoryCatalog",
    "LineKind",
    "Product",
    "Variant",
]
