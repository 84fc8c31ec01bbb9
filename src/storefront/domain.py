"""Storefront bounded context — Shopping Cart and Checkout.

Holds a shopper's in-progress cart, derives per-seller totals, reconciles the
cart against the catalog, and drives the multi-step checkout that splits one
cart into one order per seller.
"""

import structlog
from protean.domain import Domain

storefront = Domain(name="storefront")

logger = structlog.get_logger(__name__)
