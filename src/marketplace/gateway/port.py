"""Payment gateway port (abstract interface).

Defines the contract a mobile-money/card gateway adapter (PESAPAL in
production) must implement: callback registration, payment submission,
refunds, and verification of the asynchronous payment notifications.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum


class NotificationStatus(Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REVERSED = "REVERSED"
    INVALID = "INVALID"


class RefundOutcome(Enum):
    COMPLETED = "COMPLETED"
    PENDING = "PENDING"
    FAILED = "FAILED"


@dataclass(frozen=True)
class PaymentRequest:
    """What is sent to the gateway to start a payment."""

    order_id: str
    order_number: str
    amount: int
    currency: str
    description: str
    callback_url: str
    notification_id: str
    customer_ref: str


@dataclass(frozen=True)
class SubmissionResult:
    """Result of submitting a payment request."""

    success: bool
    redirect_url: str | None = None
    tracking_id: str | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class RefundResult:
    """Result of a refund request; only COMPLETED settles a refund."""

    outcome: RefundOutcome
    gateway_refund_id: str | None = None
    gateway_status: str | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class PaymentNotification:
    """Asynchronous status update pushed by the gateway."""

    tracking_id: str
    merchant_reference: str
    status: NotificationStatus
    confirmation_code: str | None = None
    description: str | None = None


class PaymentGateway(ABC):
    """Abstract payment gateway interface."""

    @abstractmethod
    def register_callback(self, url: str) -> str:
        """Register the notification URL and return its notification id."""
        ...

    @abstractmethod
    def submit_payment(self, request: PaymentRequest) -> SubmissionResult:
        """Submit a payment and return where to send the customer."""
        ...

    @abstractmethod
    def refund(self, confirmation_code: str, amount: int, reason: str) -> RefundResult:
        """Refund (part of) a captured payment."""
        ...

    @abstractmethod
    def verify_signature(self, payload: str, signature: str) -> bool:
        """Verify that a notification payload is authentically from the gateway."""
        ...
