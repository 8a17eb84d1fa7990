"""Cart aggregate (CQRS) — the mutable pre-order container owned by one customer.

A cart holds at most one line per (kind, ref, variant_sku) key: adding or
merging a line with an existing key sums quantities. The cart never stores
prices; ``subtotal`` is derived by the pricing calculator in the cart view.
Stock is not checked here.
"""

import json
from datetime import UTC, datetime

from protean import invariant
from protean.exceptions import ValidationError as FieldValidationError
from protean.fields import Date, DateTime, HasMany, Identifier, Integer, String, Text

from marketplace.catalogue.port import LineKind
from marketplace.domain import marketplace
from marketplace.errors import NotFoundError, ValidationError

# Merge tokens remembered per cart; older tokens can be replayed
MAX_SYNC_TOKENS = 20


@marketplace.entity(part_of="Cart")
class CartLine:
    kind = String(required=True, choices=LineKind)
    product_ref = Identifier()
    course_ref = Identifier()
    variant_sku = String(max_length=100)
    quantity = Integer(required=True, min_value=1)
    added_at = DateTime()
    preferred_start_date = Date()

    @invariant.post
    def line_references_exactly_one_entry(self):
        if self.kind == LineKind.PRODUCT.value:
            if not self.product_ref or self.course_ref:
                raise FieldValidationError({"product_ref": ["A product line references exactly one product"]})
            if self.preferred_start_date is not None:
                raise FieldValidationError({"preferred_start_date": ["Only course lines carry a start date"]})
        else:
            if not self.course_ref or self.product_ref:
                raise FieldValidationError({"course_ref": ["A course line references exactly one course"]})
            if self.variant_sku is not None:
                raise FieldValidationError({"variant_sku": ["Course lines have no variant"]})

    @property
    def line_kind(self) -> LineKind:
        return LineKind(self.kind)

    @property
    def ref(self) -> str:
        return str(self.product_ref if self.kind == LineKind.PRODUCT.value else self.course_ref)

    @property
    def key(self) -> tuple[str, str, str | None]:
        return (self.kind, self.ref, self.variant_sku)

    @classmethod
    def new(cls, kind: LineKind, ref: str, variant_sku=None, quantity: int = 1, preferred_start_date=None):
        refs = {"product_ref": ref} if kind is LineKind.PRODUCT else {"course_ref": ref}
        return cls(
            kind=kind.value,
            variant_sku=variant_sku,
            quantity=quantity,
            preferred_start_date=preferred_start_date,
            added_at=datetime.now(UTC),
            **refs,
        )


def _validate_quantity(quantity: int, allow_zero: bool = False) -> None:
    if quantity < 0 or (quantity == 0 and not allow_zero):
        raise ValidationError(
            "Quantity must be at least 1" if not allow_zero else "Quantity cannot be negative",
            code="INVALID_QUANTITY",
            details={"quantity": quantity},
        )


@marketplace.aggregate
class Cart:
    customer_ref = Identifier(required=True, unique=True)
    lines = HasMany(CartLine)
    merged_sync_tokens = Text()  # JSON array, newest last
    version = Integer(default=0)
    created_at = DateTime()
    updated_at = DateTime()

    @invariant.post
    def line_keys_are_unique(self):
        keys = [line.key for line in self.lines]
        if len(keys) != len(set(keys)):
            raise FieldValidationError({"lines": ["A cart holds one line per product, course and variant"]})

    # -------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------
    @classmethod
    def create(cls, customer_ref):
        now = datetime.now(UTC)
        return cls(
            customer_ref=customer_ref,
            merged_sync_tokens=json.dumps([]),
            created_at=now,
            updated_at=now,
        )

    # -------------------------------------------------------------------
    # Derived values
    # -------------------------------------------------------------------
    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self.lines)

    @property
    def is_empty(self) -> bool:
        return not self.lines

    @property
    def sync_tokens(self) -> list[str]:
        return json.loads(self.merged_sync_tokens) if self.merged_sync_tokens else []

    def find_line(self, line_id) -> CartLine:
        line = next((line for line in self.lines if str(line.id) == str(line_id)), None)
        if line is None:
            raise NotFoundError("CartLine", str(line_id), message="Item not found in cart")
        return line

    def _matching(self, key) -> CartLine | None:
        return next((line for line in self.lines if line.key == key), None)

    def _touch(self) -> None:
        self.updated_at = datetime.now(UTC)

    # -------------------------------------------------------------------
    # Line management
    # -------------------------------------------------------------------
    def add_line(self, kind: LineKind, ref: str, variant_sku=None, quantity: int = 1, preferred_start_date=None):
        """Add a line, or increase the quantity of the line with the same key."""
        _validate_quantity(quantity)

        existing = self._matching((kind.value, ref, variant_sku))
        if existing:
            existing.quantity += quantity
            if preferred_start_date is not None:
                existing.preferred_start_date = preferred_start_date
            line = existing
        else:
            line = CartLine.new(kind, ref, variant_sku, quantity, preferred_start_date)
            self.add_lines(line)

        self._touch()
        return line

    def update_quantity(self, line_id, new_quantity: int) -> CartLine | None:
        """Replace a line's quantity; zero removes the line."""
        _validate_quantity(new_quantity, allow_zero=True)

        line = self.find_line(line_id)
        if new_quantity == 0:
            self.remove_lines(line)
            self._touch()
            return None

        line.quantity = new_quantity
        self._touch()
        return line

    def change_variant(self, line_id, variant_sku: str) -> CartLine:
        """Re-select the variant of a product line, merging into a matching line if one exists."""
        line = self.find_line(line_id)
        if line.line_kind is not LineKind.PRODUCT:
            raise ValidationError("Only product lines have variants", code="VALIDATION")
        if line.variant_sku == variant_sku:
            return line

        existing = self._matching((line.kind, line.ref, variant_sku))
        if existing:
            existing.quantity += line.quantity
            self.remove_lines(line)
            self._touch()
            return existing

        line.variant_sku = variant_sku
        self._touch()
        return line

    def remove_line(self, line_id) -> None:
        self.remove_lines(self.find_line(line_id))
        self._touch()

    def clear(self) -> None:
        """Drop every line; the cart itself is kept."""
        for line in list(self.lines):
            self.remove_lines(line)
        self._touch()

    # -------------------------------------------------------------------
    # Anonymous cart merge
    # -------------------------------------------------------------------
    def merge_from(self, incoming_lines: list[CartLine], sync_token: str | None = None) -> int:
        """Merge lines from an anonymous cart by summing matching keys.

        Returns the number of lines merged. A ``sync_token`` among the last
        ``MAX_SYNC_TOKENS`` merged makes the call a no-op; without one, the
        caller must discard the source after a successful merge.
        """
        if sync_token is not None and sync_token in self.sync_tokens:
            return 0

        for incoming in incoming_lines:
            _validate_quantity(incoming.quantity)
            existing = self._matching(incoming.key)
            if existing:
                existing.quantity += incoming.quantity
                if incoming.preferred_start_date is not None and existing.preferred_start_date is None:
                    existing.preferred_start_date = incoming.preferred_start_date
            else:
                self.add_lines(
                    CartLine.new(
                        incoming.line_kind,
                        incoming.ref,
                        incoming.variant_sku,
                        incoming.quantity,
                        incoming.preferred_start_date,
                    )
                )

        if sync_token is not None:
            self.merged_sync_tokens = json.dumps([*self.sync_tokens, sync_token][-MAX_SYNC_TOKENS:])
        self._touch()
        return len(incoming_lines)
