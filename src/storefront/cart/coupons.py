"""Coupon engine — turns a coupon service quote into a discount amount.

The coupon service owns validity, discount type and caps. This module owns
the arithmetic: the discount never exceeds the subtotal it applies to, so a
coupon can never produce a negative total. Every attempt is a single call;
retrying is up to the shopper.
"""

import math

import structlog
from protean.exceptions import ValidationError

from storefront.cart.cart import AppliedCoupon, ShoppingCart
from storefront.cart.pricing import to_cents
from storefront.exceptions import InvalidCoupon
from storefront.integrations.coupon_port import CouponQuote, CouponRejected, CouponService, DiscountType

logger = structlog.get_logger(__name__)

# Codes tried, in order, by "auto-apply best coupon"
AUTO_APPLY_CODES = ("WELCOME10", "SAVE20", "FLASH50")


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def compute_discount(quote: CouponQuote, subtotal: float) -> float:
    if quote.discount_type == DiscountType.PERCENTAGE:
        cap = quote.max_discount if quote.max_discount is not None else math.inf
        discount = min(subtotal * quote.discount_value / 100, cap)
    else:
        discount = quote.discount_value
    return to_cents(max(0.0, min(discount, subtotal)))


class CouponEngine:
    def __init__(self, coupon_service: CouponService) -> None:
        self.coupon_service = coupon_service

    async def apply(self, code: str, subtotal: float, seller_id: str | None = None) -> AppliedCoupon:
        """Quote ``code`` against ``subtotal`` and return the coupon to store for the scope.

        Raises InvalidCoupon when the service rejects the code or the discount
        comes out at zero. The caller's cart is not touched either way.
        """
        if subtotal is None or subtotal < 0:
            raise ValidationError({"subtotal": ["Subtotal cannot be negative"]})

        code = normalize_code(code)
        if not code:
            raise InvalidCoupon({"coupon_code": ["Enter a coupon code"]})

        try:
            quote = await self.coupon_service.validate_coupon(code, subtotal)
        except CouponRejected as exc:
            logger.info("Coupon rejected", coupon_code=code, seller_id=seller_id, reason=exc.reason)
            raise InvalidCoupon({"coupon_code": [exc.reason]}) from exc

        discount = compute_discount(quote, subtotal)
        if discount <= 0:
            raise InvalidCoupon({"coupon_code": [f"Coupon {code} does not discount this order"]})

        logger.info("Coupon quoted", coupon_code=code, seller_id=seller_id, discount=discount)
        return AppliedCoupon(code=normalize_code(quote.code) or code, discount_amount=discount)

    async def auto_apply(
        self, subtotal: float, seller_id: str | None = None, candidates=AUTO_APPLY_CODES
    ) -> AppliedCoupon:
        """Try each candidate code in turn and return the first that applies."""
        for code in candidates:
            try:
                return await self.apply(code, subtotal, seller_id=seller_id)
            except InvalidCoupon:
                continue
        raise InvalidCoupon({"coupon_code": ["No applicable coupons found"]})

    @staticmethod
    def remove(cart: ShoppingCart, seller_id: str | None = None) -> AppliedCoupon | None:
        """Clear the coupon stored for one scope. Other scopes are left alone."""
        return cart.remove_coupon(seller_id=seller_id)
