"""Error taxonomy for the marketplace core.

Every failure that crosses a module boundary is a ``MarketplaceError`` with a
``kind`` (how callers should react) and a stable ``code`` (what happened).
The API layer maps ``kind`` to an HTTP status; ``stage`` is set by the
checkout stage runner and only surfaced to admins.
"""

from enum import Enum
from typing import Any

from protean.exceptions import ExpectedVersionError
from protean.exceptions import ValidationError as ProteanValidationError


class ErrorKind(Enum):
    NOT_FOUND = "NOT_FOUND"
    VALIDATION = "VALIDATION"
    CONFLICT = "CONFLICT"
    UPSTREAM_FAILURE = "UPSTREAM_FAILURE"
    INTERNAL = "INTERNAL"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    FORBIDDEN = "FORBIDDEN"


class MarketplaceError(Exception):
    """Base exception for the marketplace core."""

    kind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        code: str | None = None,
        stage: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.code = code or self.kind.value
        self.stage = stage
        self.details = details or {}
        super().__init__(message)

    def at_stage(self, stage: str) -> "MarketplaceError":
        """Attach the failing stage name unless one is already recorded."""
        if self.stage is None:
            self.stage = stage
        return self

    def to_dict(self, include_stage: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code,
            "kind": self.kind.value,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        if include_stage and self.stage:
            payload["stage"] = self.stage
        return payload


class NotFoundError(MarketplaceError):
    """Raised when an entity is missing or not owned by the caller."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, entity: str, ref: str, message: str | None = None, code: str | None = None) -> None:
        self.entity = entity
        self.ref = ref
        super().__init__(message or f"{entity} not found: {ref}", code=code)


class ValidationError(MarketplaceError):
    """Raised for malformed input, before any side effect."""

    kind = ErrorKind.VALIDATION


class ConflictError(MarketplaceError):
    """Raised when the current state does not permit the operation."""

    kind = ErrorKind.CONFLICT


class InsufficientStockError(ConflictError):
    def __init__(self, product_ref: str, variant_sku: str | None, requested: int, available: int) -> None:
        self.product_ref = product_ref
        self.variant_sku = variant_sku
        self.requested = requested
        self.available = available
        target = f"{product_ref}/{variant_sku}" if variant_sku else product_ref
        super().__init__(
            f"Insufficient stock for {target}: requested {requested}, available {available}",
            code="INSUFFICIENT_STOCK",
            details={"product_ref": product_ref, "variant_sku": variant_sku, "available": available},
        )


class UpstreamFailure(MarketplaceError):
    """Raised when the store or an external service fails or times out."""

    kind = ErrorKind.UPSTREAM_FAILURE

    def __init__(self, message: str, code: str | None = None, stage: str | None = None, retryable: bool = True) -> None:
        self.retryable = retryable
        super().__init__(message, code=code, stage=stage)

    def to_dict(self, include_stage: bool = False) -> dict[str, Any]:
        payload = super().to_dict(include_stage)
        payload["retryable"] = self.retryable
        return payload


class StageTimeout(UpstreamFailure):
    def __init__(self, stage: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(
            f"The request took too long to complete ({stage}). Please try again.",
            code="STAGE_TIMEOUT",
            stage=stage,
        )


class InternalError(MarketplaceError):
    kind = ErrorKind.INTERNAL


class PricingInvariantError(InternalError):
    """Raised when a pricing intermediate goes negative or exceeds its base."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="PRICING_INVARIANT")


class UnauthenticatedError(MarketplaceError):
    kind = ErrorKind.UNAUTHENTICATED

    def __init__(self, message: str = "Authentication required", code: str = "UNAUTHENTICATED") -> None:
        super().__init__(message, code=code)


class ForbiddenError(MarketplaceError):
    kind = ErrorKind.FORBIDDEN

    def __init__(self, message: str = "Admin role required") -> None:
        super().__init__(message, code="FORBIDDEN")


STALE_WRITE = "STALE_WRITE"


def from_protean(exc: Exception) -> MarketplaceError | None:
    """Map a protean persistence or field-validation error onto the taxonomy above.

    Returns ``None`` for anything that is not a protean error.
    """
    if isinstance(exc, ExpectedVersionError):
        return ConflictError(str(exc), code=STALE_WRITE)
    if isinstance(exc, ProteanValidationError):
        return ValidationError("Invalid data", code="VALIDATION", details=exc.messages)
    return None
