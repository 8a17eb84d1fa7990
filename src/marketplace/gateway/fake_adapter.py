"""Configurable fake payment gateway for development and testing.

Simulates the gateway without external calls. It can be configured at
runtime to succeed, fail, answer refunds with "pending", raise transport
errors or respond slowly, which covers every branch of the payment and
refund flows.
"""

import time
from uuid import uuid4

from marketplace.gateway.port import (
    PaymentGateway,
    PaymentRequest,
    RefundOutcome,
    RefundResult,
    SubmissionResult,
)


class GatewayUnavailable(ConnectionError):
    """Transport-level failure talking to the gateway."""


class FakeGateway(PaymentGateway):
    """Configurable fake payment gateway."""

    def __init__(self) -> None:
        self.should_succeed: bool = True
        self.failure_reason: str = "Payment declined"
        self.refund_outcome: RefundOutcome = RefundOutcome.COMPLETED
        self.unavailable: bool = False
        self.latency: float = 0.0
        self.calls: list[dict] = []

    def configure(
        self,
        should_succeed: bool = True,
        failure_reason: str = "Payment declined",
        refund_outcome: RefundOutcome = RefundOutcome.COMPLETED,
        unavailable: bool = False,
        latency: float = 0.0,
    ) -> None:
        """Configure gateway behavior at runtime."""
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason
        self.refund_outcome = refund_outcome
        self.unavailable = unavailable
        self.latency = latency

    def _call(self, method: str, **fields) -> None:
        self.calls.append({"method": method, **fields})
        if self.latency:
            time.sleep(self.latency)
        if self.unavailable:
            raise GatewayUnavailable("Gateway unreachable")

    def register_callback(self, url: str) -> str:
        self._call("register_callback", url=url)
        return f"fake_ipn_{uuid4().hex[:12]}"

    def submit_payment(self, request: PaymentRequest) -> SubmissionResult:
        self._call("submit_payment", order_number=request.order_number, amount=request.amount)

        if self.should_succeed:
            tracking_id = f"fake_trk_{uuid4().hex[:12]}"
            return SubmissionResult(
                success=True,
                redirect_url=f"https://pay.example.test/redirect/{tracking_id}",
                tracking_id=tracking_id,
            )
        return SubmissionResult(success=False, failure_reason=self.failure_reason)

    def refund(self, confirmation_code: str, amount: int, reason: str) -> RefundResult:
        self._call("refund", confirmation_code=confirmation_code, amount=amount, reason=reason)

        if self.refund_outcome is RefundOutcome.COMPLETED:
            return RefundResult(
                outcome=RefundOutcome.COMPLETED,
                gateway_refund_id=f"fake_ref_{uuid4().hex[:12]}",
                gateway_status="succeeded",
            )
        if self.refund_outcome is RefundOutcome.PENDING:
            return RefundResult(outcome=RefundOutcome.PENDING, gateway_status="pending")
        return RefundResult(outcome=RefundOutcome.FAILED, gateway_status="failed", failure_reason=self.failure_reason)

    def verify_signature(self, payload: str, signature: str) -> bool:  # noqa: ARG002
        return signature == "test-signature"
