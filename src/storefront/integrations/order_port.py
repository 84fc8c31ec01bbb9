"""Order service port.

One call carries every seller group being checked out; the service creates
one order per group and answers with their identifiers, or fails as a whole.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass(frozen=True)
class OrderLine:
    product_id: str
    quantity: int
    unit_price: float
    variant_id: str | None = None


@dataclass(frozen=True)
class SellerOrderRequest:
    seller_id: str
    items: tuple[OrderLine, ...]
    subtotal: float
    discount: float
    tax: float
    shipping_cost: float
    total: float
    shipping_method: str
    notes: str = ""


@dataclass(frozen=True)
class OrderSubmission:
    owner_id: str
    shipping_address: dict
    payment_method: str
    groups: tuple[SellerOrderRequest, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class OrderReceipt:
    order_id: str
    order_number: str
    seller_id: str | None = None


class OrderServiceError(Exception):
    """The order service could not create the orders."""


class OrderService(ABC):
    @abstractmethod
    async def create_orders(self, submission: OrderSubmission) -> list[OrderReceipt]:
        """Create one order per seller group. Raises OrderServiceError on failure."""
        ...
