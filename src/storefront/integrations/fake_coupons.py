"""In-memory coupon service for development and tests.

Applies the usual marketplace rules: the code must exist and be active, not
be past its expiry, meet the minimum purchase, and have uses left.
"""

from dataclasses import dataclass
from datetime import UTC, datetime

from storefront.integrations.coupon_port import CouponQuote, CouponRejected, CouponService, DiscountType


@dataclass
class CouponRecord:
    code: str
    discount_type: DiscountType
    discount_value: float
    max_discount: float | None = None
    min_purchase_amount: float = 0.0
    valid_until: datetime | None = None
    usage_limit: int | None = None
    usage_count: int = 0
    is_active: bool = True


class FakeCouponService(CouponService):
    def __init__(self, coupons: list[CouponRecord] | None = None) -> None:
        self.coupons = {c.code.upper(): c for c in coupons or []}
        self.calls: list[tuple[str, float]] = []

    def register(self, coupon: CouponRecord) -> None:
        self.coupons[coupon.code.upper()] = coupon

    async def validate_coupon(self, code: str, subtotal: float) -> CouponQuote:
        self.calls.append((code, subtotal))

        coupon = self.coupons.get(code.upper())
        if coupon is None or not coupon.is_active:
            raise CouponRejected("Invalid coupon code")
        if coupon.valid_until and coupon.valid_until < datetime.now(UTC):
            raise CouponRejected("Coupon has expired")
        if subtotal < coupon.min_purchase_amount:
            raise CouponRejected(f"Minimum purchase amount is ${coupon.min_purchase_amount:.2f}")
        if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
            raise CouponRejected("Coupon usage limit reached")

        return CouponQuote(
            code=coupon.code.upper(),
            discount_type=coupon.discount_type,
            discount_value=coupon.discount_value,
            max_discount=coupon.max_discount,
        )


# Codes offered by "auto-apply best coupon", seeded into the default adapter
DEMO_COUPONS = [
    CouponRecord(code="WELCOME10", discount_type=DiscountType.PERCENTAGE, discount_value=10),
    CouponRecord(code="SAVE20", discount_type=DiscountType.PERCENTAGE, discount_value=20, max_discount=50.0),
    CouponRecord(
        code="FLASH50",
        discount_type=DiscountType.PERCENTAGE,
        discount_value=50,
        max_discount=100.0,
        min_purchase_amount=100.0,
    ),
]
