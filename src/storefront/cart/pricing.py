"""Pricing configuration — flat tax rate and the shipping tier table.

The same tier table feeds both per-seller shipping cost and the delivery
estimate shown after checkout, so the two can never disagree.
"""

import os
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum


class ShippingMethod(Enum):
    STANDARD = "standard"
    EXPRESS = "express"
    INTERNATIONAL = "international"


@dataclass(frozen=True)
class ShippingTier:
    base_fee: float
    lead_time_days: int


DEFAULT_TAX_RATE = 0.10
DEFAULT_FREE_SHIPPING_THRESHOLD = 50.0

DEFAULT_SHIPPING_TIERS = {
    ShippingMethod.STANDARD.value: ShippingTier(base_fee=5.0, lead_time_days=7),
    ShippingMethod.EXPRESS.value: ShippingTier(base_fee=15.0, lead_time_days=3),
    ShippingMethod.INTERNATIONAL.value: ShippingTier(base_fee=25.0, lead_time_days=14),
}


def to_cents(amount: float) -> float:
    return round(amount, 2)


@dataclass(frozen=True)
class PricingConfig:
    """Tax and shipping parameters used everywhere totals are computed."""

    tax_rate: float = DEFAULT_TAX_RATE
    shipping_tiers: dict[str, ShippingTier] = field(default_factory=lambda: dict(DEFAULT_SHIPPING_TIERS))
    free_shipping_threshold: float = DEFAULT_FREE_SHIPPING_THRESHOLD

    @classmethod
    def from_env(cls) -> "PricingConfig":
        return cls(
            tax_rate=float(os.getenv("STOREFRONT_TAX_RATE", DEFAULT_TAX_RATE)),
            free_shipping_threshold=float(
                os.getenv("STOREFRONT_FREE_SHIPPING_THRESHOLD", DEFAULT_FREE_SHIPPING_THRESHOLD)
            ),
        )

    def tier_for(self, method: str | None) -> ShippingTier:
        method = method or ShippingMethod.STANDARD.value
        if method not in self.shipping_tiers:
            raise ValueError(f"Unknown shipping method: {method}")
        return self.shipping_tiers[method]

    def shipping_cost(self, method: str | None) -> float:
        return self.tier_for(method).base_fee

    def tax_on(self, amount: float) -> float:
        return to_cents(amount * self.tax_rate)

    def estimate_delivery(self, methods: list[str | None], today: date | None = None) -> date:
        """Latest arrival across the given shipping methods, counted from today."""
        today = today or date.today()
        lead_time = max((self.tier_for(m).lead_time_days for m in methods), default=0)
        return today + timedelta(days=lead_time)
