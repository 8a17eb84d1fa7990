"""Catalog port — typed view of the product/course documents held in the CMS.

Documents fetched from the store are validated into ``Product`` or
``Course`` here, at the boundary, so pricing never sees an untyped payload.
``CatalogEntry`` is the tagged union of the two, discriminated on ``kind``.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class LineKind(Enum):
    PRODUCT = "PRODUCT"
    COURSE = "COURSE"


class Discount(BaseModel):
    model_config = ConfigDict(frozen=True)

    percentage: int = Field(ge=0, le=100)
    is_active: bool = False
    title: str | None = None


class Variant(BaseModel):
    model_config = ConfigDict(frozen=True)

    sku: str
    price: int = Field(ge=0)
    stock: int = Field(default=0, ge=0)
    attributes: dict[str, str] = Field(default_factory=dict)


class Product(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["PRODUCT"] = "PRODUCT"
    ref: str
    title: str
    price: int = Field(ge=0)
    discount: Discount | None = None
    has_variants: bool = False
    variants: tuple[Variant, ...] = ()
    total_stock: int = Field(default=0, ge=0)

    def variant(self, sku: str) -> Variant | None:
        return next((v for v in self.variants if v.sku == sku), None)


class Course(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["COURSE"] = "COURSE"
    ref: str
    title: str
    price: int = Field(ge=0)
    discount: Discount | None = None
    duration: str | None = None
    skill_level: str | None = None
    start_date: str | None = None


CatalogEntry = Annotated[Product | Course, Field(discriminator="kind")]

catalog_entry_adapter: TypeAdapter[Product | Course] = TypeAdapter(CatalogEntry)


def parse_catalog_entry(document: dict) -> Product | Course:
    """Validate a raw store document into a typed catalog entry."""
    return catalog_entry_adapter.validate_python(document)


class DeliveryZone(BaseModel):
    model_config = ConfigDict(frozen=True)

    ref: str
    name: str
    fee: int = Field(ge=0)
    is_active: bool = True


class CatalogPort(ABC):
    """Abstract interface to the product/course catalog and stock ledger."""

    @abstractmethod
    def fetch_entries(self, refs: list[str]) -> dict[str, Product | Course]:
        """Return current catalog entries keyed by ref; missing refs are omitted."""
        ...

    @abstractmethod
    def fetch_zone(self, zone_ref: str) -> DeliveryZone | None:
        ...

    @abstractmethod
    def available_stock(self, product_ref: str, variant_sku: str | None) -> int:
        ...

    @abstractmethod
    def adjust_stock(self, product_ref: str, variant_sku: str | None, delta: int) -> int:
        """Atomically add ``delta`` to the stock counter and return the new level.

        Raises ``InsufficientStockError`` instead of going below zero.
        """
        ...

    @abstractmethod
    def on_change(self, listener: Callable[[str], None]) -> None:
        """Register ``listener(ref)`` to run after a catalog entry is created or edited."""
        ...
