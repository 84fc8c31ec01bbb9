"""Seller group aggregation — one slice of the cart per seller, with its own totals.

Groups are derived on demand from cart items plus seller lookups and are
never stored. All seller lookups for one aggregation run concurrently and the
groups are only assembled once every lookup has finished, so a caller never
sees a half-built result.

Per group:
    subtotal                = sum(unit price * quantity), variant price first
    subtotal_after_discount = max(0, subtotal - seller coupon)
    tax                     = subtotal_after_discount * tax rate
    total                   = subtotal_after_discount + tax + shipping cost
"""

import asyncio
from dataclasses import dataclass, field

import structlog

from storefront.cart.cart import AppliedCoupon, CartItem
from storefront.cart.pricing import PricingConfig, ShippingMethod, to_cents
from storefront.integrations.seller_port import SellerDirectory, SellerProfile

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SellerGroup:
    seller_id: str
    seller: SellerProfile | None
    items: tuple[CartItem, ...]
    subtotal: float
    discount: float
    subtotal_after_discount: float
    tax: float
    shipping_method: str
    shipping_cost: float
    total: float
    is_available: bool = True
    warnings: tuple[str, ...] = ()
    coupon: AppliedCoupon | None = None

    @property
    def item_ids(self) -> list[str]:
        return [str(item.id) for item in self.items]

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def display_name(self) -> str:
        return self.seller.display_name if self.seller else self.seller_id


@dataclass(frozen=True)
class CartTotals:
    """Overall figures across a set of seller groups (normally the selected ones)."""

    subtotal: float = 0.0
    seller_discount: float = 0.0
    global_discount: float = 0.0
    tax: float = 0.0
    shipping: float = 0.0
    total: float = 0.0
    item_count: int = 0
    amount_to_free_shipping: float = 0.0
    group_count: int = 0
    warnings: tuple[str, ...] = field(default_factory=tuple)


def partition_by_seller(items) -> dict[str, list[CartItem]]:
    """Group items by seller, in order of first appearance. Items without a seller are dropped."""
    partitions: dict[str, list[CartItem]] = {}
    for item in items:
        if not item.seller_id:
            logger.debug("Item has no seller and cannot be grouped", item_id=str(item.id))
            continue
        partitions.setdefault(item.seller_id, []).append(item)
    return partitions


class SellerGroupAggregator:
    def __init__(self, seller_directory: SellerDirectory, pricing: PricingConfig | None = None) -> None:
        self.seller_directory = seller_directory
        self.pricing = pricing or PricingConfig()

    async def aggregate(
        self,
        items,
        coupons: dict[str, AppliedCoupon] | None = None,
        shipping_methods: dict[str, str] | None = None,
    ) -> list[SellerGroup]:
        coupons = coupons or {}
        shipping_methods = shipping_methods or {}
        partitions = partition_by_seller(items)
        seller_ids = list(partitions)

        lookups = await asyncio.gather(
            *(self.seller_directory.get_seller(seller_id) for seller_id in seller_ids),
            return_exceptions=True,
        )

        groups = []
        for seller_id, lookup in zip(seller_ids, lookups, strict=True):
            warnings = []
            if isinstance(lookup, Exception):
                logger.warning("Seller lookup failed", seller_id=seller_id, error=str(lookup))
                seller = None
                warnings.append(f"Details for seller {seller_id} could not be loaded")
            else:
                seller = lookup
                if seller is None:
                    warnings.append(f"Seller {seller_id} could not be found")

            groups.append(
                self.build_group(
                    seller_id,
                    seller,
                    partitions[seller_id],
                    coupon=coupons.get(seller_id),
                    shipping_method=shipping_methods.get(seller_id),
                    warnings=warnings,
                )
            )
        return groups

    def build_group(self, seller_id, seller, items, coupon=None, shipping_method=None, warnings=()) -> SellerGroup:
        method = shipping_method or ShippingMethod.STANDARD.value
        warnings = list(warnings)

        subtotal = to_cents(sum(item.line_total for item in items))
        discount = to_cents(min(coupon.discount_amount, subtotal)) if coupon else 0.0
        subtotal_after_discount = to_cents(max(0.0, subtotal - discount))
        tax = self.pricing.tax_on(subtotal_after_discount)
        shipping_cost = self.pricing.shipping_cost(method)
        total = to_cents(subtotal_after_discount + tax + shipping_cost)

        is_available = seller.is_available if seller else True
        if not is_available:
            warnings.append(f"{seller.display_name} is currently unavailable")

        return SellerGroup(
            seller_id=seller_id,
            seller=seller,
            items=tuple(items),
            subtotal=subtotal,
            discount=discount,
            subtotal_after_discount=subtotal_after_discount,
            tax=tax,
            shipping_method=method,
            shipping_cost=shipping_cost,
            total=total,
            is_available=is_available,
            warnings=tuple(warnings),
            coupon=coupon,
        )

    def totals(self, groups: list[SellerGroup], global_coupon: AppliedCoupon | None = None) -> CartTotals:
        """Sum the groups, then take the cart-wide coupon off the overall total.

        Seller coupons and the cart-wide coupon stack; the cart-wide discount
        is capped so the discounted subtotal never drops below zero.
        """
        subtotal = to_cents(sum(g.subtotal for g in groups))
        seller_discount = to_cents(sum(g.discount for g in groups))
        discounted = to_cents(sum(g.subtotal_after_discount for g in groups))
        global_discount = to_cents(min(global_coupon.discount_amount, discounted)) if global_coupon else 0.0
        total = to_cents(sum(g.total for g in groups) - global_discount)

        return CartTotals(
            subtotal=subtotal,
            seller_discount=seller_discount,
            global_discount=global_discount,
            tax=to_cents(sum(g.tax for g in groups)),
            shipping=to_cents(sum(g.shipping_cost for g in groups)),
            total=max(0.0, total),
            item_count=sum(g.item_count for g in groups),
            amount_to_free_shipping=to_cents(max(0.0, self.pricing.free_shipping_threshold - subtotal)),
            group_count=len(groups),
            warnings=tuple(w for g in groups for w in g.warnings),
        )
