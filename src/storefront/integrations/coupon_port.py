"""Coupon service port.

The service decides whether a code is valid for a subtotal and what kind of
discount it carries. Turning that into an amount is the coupon engine's job.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum


class DiscountType(Enum):
    PERCENTAGE = "percentage"
    ABSOLUTE = "absolute"


@dataclass(frozen=True)
class CouponQuote:
    code: str
    discount_type: DiscountType
    discount_value: float
    max_discount: float | None = None


class CouponRejected(Exception):
    """The coupon service refused the code. ``reason`` is safe to show the shopper."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class CouponService(ABC):
    @abstractmethod
    async def validate_coupon(self, code: str, subtotal: float) -> CouponQuote:
        """Quote for a code at the given subtotal. Raises CouponRejected when not applicable."""
        ...
