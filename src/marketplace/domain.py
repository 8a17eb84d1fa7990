"""Marketplace bounded context — carts, orders, payments and refunds.

Cart, Order and Refund are standard CQRS aggregates persisted through the
domain's repositories. The external collaborators (catalog, coupons,
address book, payment gateway, notifier) are wired in by
``marketplace.application.build_marketplace``.
"""

import structlog
from protean.domain import Domain

marketplace = Domain(name="marketplace")

logger = structlog.get_logger(__name__)
