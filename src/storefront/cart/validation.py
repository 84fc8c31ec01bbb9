"""Cart validation — reconcile cart items against the live catalog.

The cart keeps a snapshot of price and stock from when each item was added.
Before checkout submits anything, every item is checked against the catalog:

- product missing, inactive, or variant gone  -> unavailable (blocking)
- stock below the cart quantity                 -> stock changed (blocking)
- price differs from the snapshot               -> price changed (warning only)

Products are fetched once each, concurrently. The cart itself is never
modified here.
"""

import asyncio
from dataclasses import dataclass

import structlog

from storefront.cart.cart import CartItem
from storefront.cart.pricing import to_cents
from storefront.integrations.catalog_port import CatalogProduct, CatalogService

logger = structlog.get_logger(__name__)

LOW_STOCK_THRESHOLD = 10
SCARCE_STOCK_THRESHOLD = 5


@dataclass(frozen=True)
class CartValidation:
    item_id: str
    product_id: str
    variant_id: str | None
    seller_id: str | None
    is_valid: bool = True
    price_changed: bool = False
    stock_changed: bool = False
    unavailable: bool = False
    current_price: float | None = None
    current_stock: int | None = None
    warnings: tuple[str, ...] = ()

    @property
    def is_blocking(self) -> bool:
        return not self.is_valid


def stock_advisory(stock: int) -> str | None:
    """Shopper-facing stock badge for a quantity on hand."""
    if stock <= 0:
        return "Out of stock – remove or replace"
    if stock < SCARCE_STOCK_THRESHOLD:
        return f"Only {stock} left"
    if stock < LOW_STOCK_THRESHOLD:
        return "Low stock – almost sold out"
    return None


def blocking_by_seller(validations: list[CartValidation]) -> dict[str, list[str]]:
    """Blocking warnings keyed by seller id, for sellers with at least one blocked item."""
    blocked: dict[str, list[str]] = {}
    for validation in validations:
        if validation.is_blocking:
            blocked.setdefault(validation.seller_id or "unknown", []).extend(validation.warnings)
    return blocked


class CartValidator:
    def __init__(self, catalog: CatalogService) -> None:
        self.catalog = catalog

    async def validate(self, items: list[CartItem]) -> list[CartValidation]:
        product_ids = list(dict.fromkeys(str(item.product_id) for item in items))
        lookups = await asyncio.gather(
            *(self.catalog.get_product(product_id) for product_id in product_ids),
            return_exceptions=True,
        )
        products = dict(zip(product_ids, lookups, strict=True))

        validations = [self.check_item(item, products[str(item.product_id)]) for item in items]

        invalid = [v.item_id for v in validations if not v.is_valid]
        if invalid:
            logger.info("Cart validation found blocking items", item_ids=invalid)
        return validations

    def check_item(self, item: CartItem, product: CatalogProduct | Exception | None) -> CartValidation:
        base = {
            "item_id": str(item.id),
            "product_id": str(item.product_id),
            "variant_id": str(item.variant_id) if item.variant_id else None,
            "seller_id": item.seller_id,
        }
        title = item.product.title if item.product and item.product.title else str(item.product_id)

        if isinstance(product, Exception):
            logger.warning("Catalog lookup failed", product_id=str(item.product_id), error=str(product))
            return CartValidation(
                **base,
                is_valid=False,
                unavailable=True,
                warnings=(f"Could not verify availability of {title}",),
            )

        if product is None or not product.is_active:
            return CartValidation(
                **base,
                is_valid=False,
                unavailable=True,
                warnings=(f"{title} is no longer available",),
            )

        if item.variant_id:
            variant = product.variant(item.variant_id)
            if variant is None:
                return CartValidation(
                    **base,
                    is_valid=False,
                    unavailable=True,
                    warnings=(f"The selected option of {title} is no longer available",),
                )
            current_price = variant.price if variant.price is not None else product.price
            current_stock = variant.stock_quantity
        else:
            current_price = product.price
            current_stock = product.stock_quantity

        warnings = []
        is_valid = True

        price_changed = to_cents(current_price) != to_cents(item.unit_price)
        if price_changed:
            warnings.append(f"Price of {title} changed from ${item.unit_price:.2f} to ${current_price:.2f}")

        stock_changed = current_stock < item.quantity
        if stock_changed:
            is_valid = False
            warnings.append(f"Only {current_stock} of {title} available, {item.quantity} in cart")

        return CartValidation(
            **base,
            is_valid=is_valid,
            price_changed=price_changed,
            stock_changed=stock_changed,
            current_price=current_price,
            current_stock=current_stock,
            warnings=tuple(warnings),
        )
