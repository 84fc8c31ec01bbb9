"""Cart store: the single writer of one owner's shopping cart.

A ``CartStore`` is created per owner (user or guest session) with its
collaborators passed in. Every mutation:

    1. waits for the owner's lock, so mutations run one after another
    2. is applied to a working copy rebuilt from the last saved record
    3. is written through to cart storage
    4. replaces the live cart only once the write succeeded

If anything in steps 2-3 fails the working copy is dropped and the live cart
is exactly what was last saved. Reads (groups, totals, validation) never
mutate the cart.

Guests and users only differ in the storage key and record lifetime.
"""

import asyncio
import json
import os
import uuid
from contextlib import asynccontextmanager

import structlog

from storefront.cart.aggregation import CartTotals, SellerGroup, SellerGroupAggregator
from storefront.cart.cart import CartItem, ProductSnapshot, ShoppingCart, VariantSnapshot
from storefront.cart.coupons import CouponEngine
from storefront.cart.pricing import PricingConfig, to_cents
from storefront.cart.validation import CartValidation, CartValidator
from storefront.exceptions import CartPersistenceError, InvalidCoupon
from storefront.integrations.catalog_port import CatalogProduct, CatalogService, CatalogVariant
from storefront.integrations.coupon_port import CouponService
from storefront.integrations.seller_port import SellerDirectory
from storefront.integrations.storage_port import CartStorage, StorageError

logger = structlog.get_logger(__name__)

GUEST_PREFIX = "guest:"
DEFAULT_GUEST_CART_TTL = 7 * 24 * 60 * 60
GLOBAL_SCOPE = "global"


# ---------------------------------------------------------------------------
# Owner identity and storage keys
# ---------------------------------------------------------------------------
def is_guest(owner_id: str) -> bool:
    return str(owner_id).startswith(GUEST_PREFIX)


def new_guest_owner() -> str:
    return f"{GUEST_PREFIX}{uuid.uuid4().hex}"


def owner_key(owner_id: str) -> str:
    if is_guest(owner_id):
        return f"guest:{str(owner_id)[len(GUEST_PREFIX) :]}"
    return f"user:{owner_id}"


def cart_key(owner_id: str) -> str:
    return f"cart:{owner_key(owner_id)}"


def addresses_key(owner_id: str) -> str:
    return f"addresses:{owner_key(owner_id)}"


def guest_cart_ttl() -> int:
    return int(os.environ.get("STOREFRONT_GUEST_CART_TTL", DEFAULT_GUEST_CART_TTL))


def record_ttl(owner_id: str) -> int | None:
    """Guest records expire; user records are kept until deleted."""
    return guest_cart_ttl() if is_guest(owner_id) else None


# ---------------------------------------------------------------------------
# Catalog record -> cart snapshot
# ---------------------------------------------------------------------------
def product_snapshot(product: CatalogProduct) -> ProductSnapshot:
    return ProductSnapshot(
        title=product.title,
        price=product.price,
        stock_quantity=product.stock_quantity,
        seller_id=product.seller_id,
        images=json.dumps(list(product.images)),
    )


def variant_snapshot(variant: CatalogVariant) -> VariantSnapshot:
    return VariantSnapshot(name=variant.name, price=variant.price, stock_quantity=variant.stock_quantity)


class CartStore:
    def __init__(
        self,
        owner_id: str,
        *,
        catalog: CatalogService,
        sellers: SellerDirectory,
        coupons: CouponService,
        storage: CartStorage,
        pricing: PricingConfig | None = None,
    ) -> None:
        self.owner_id = str(owner_id)
        self.catalog = catalog
        self.storage = storage
        self.pricing = pricing or PricingConfig.from_env()
        self.coupon_engine = CouponEngine(coupons)
        self.aggregator = SellerGroupAggregator(sellers, self.pricing)
        self.validator = CartValidator(catalog)

        self._lock = asyncio.Lock()
        self._cart = ShoppingCart.create(self.owner_id)
        self._confirmed = self._cart.to_snapshot()

    @property
    def cart(self) -> ShoppingCart:
        """The live cart. Treat as read-only; mutate through the store."""
        return self._cart

    # -------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------
    async def load(self) -> ShoppingCart:
        """Read the persisted cart for this owner. Missing or unreadable records start an empty cart."""
        try:
            record = await self.storage.load(cart_key(self.owner_id))
        except StorageError as exc:
            logger.warning("Persisted cart could not be read", owner_id=self.owner_id, error=str(exc))
            record = None

        async with self._lock:
            self._cart = ShoppingCart.from_snapshot(record) if record else ShoppingCart.create(self.owner_id)
            self._confirmed = self._cart.to_snapshot()

        logger.info("Cart loaded", owner_id=self.owner_id, item_count=len(self._cart.items))
        return self.get_snapshot()

    def get_snapshot(self) -> ShoppingCart:
        """A detached copy of the live cart."""
        return ShoppingCart.from_snapshot(self._cart.to_snapshot())

    @asynccontextmanager
    async def _transaction(self, action: str):
        async with self._lock:
            working = ShoppingCart.from_snapshot(self._confirmed)
            yield working

            record = working.to_snapshot()
            try:
                await self.storage.save(cart_key(self.owner_id), record, ttl_seconds=record_ttl(self.owner_id))
            except StorageError as exc:
                logger.error(
                    "Cart write failed, changes discarded", owner_id=self.owner_id, action=action, error=str(exc)
                )
                raise CartPersistenceError({"cart": ["Your cart could not be saved. Please try again."]}) from exc

            self._confirmed = record
            self._cart = working

    # -------------------------------------------------------------------
    # Items
    # -------------------------------------------------------------------
    async def add_item(
        self, product: CatalogProduct, variant: CatalogVariant | None = None, quantity: int = 1
    ) -> CartItem:
        async with self._transaction("add_item") as cart:
            item = cart.add_item(
                product.product_id,
                quantity=quantity,
                variant_id=variant.variant_id if variant else None,
                product=product_snapshot(product),
                variant=variant_snapshot(variant) if variant else None,
            )

        logger.info(
            "Item added to cart",
            owner_id=self.owner_id,
            product_id=str(product.product_id),
            quantity=quantity,
            line_quantity=item.quantity,
        )
        return item

    async def update_quantity(self, item_id, quantity: int) -> None:
        async with self._transaction("update_quantity") as cart:
            cart.update_item_quantity(item_id, quantity)

    async def remove_item(self, item_id) -> None:
        async with self._transaction("remove_item") as cart:
            cart.remove_item(item_id)

    async def remove_items_by_seller(self, seller_id) -> list[str]:
        async with self._transaction("remove_items_by_seller") as cart:
            removed = cart.remove_items_by_seller(seller_id)
        logger.info("Seller removed from cart", owner_id=self.owner_id, seller_id=str(seller_id), removed=len(removed))
        return removed

    async def remove_items(self, item_ids) -> list[str]:
        """Remove the given lines. Ids that are already gone are ignored."""
        async with self._transaction("remove_items") as cart:
            return cart.remove_fulfilled(item_ids)

    async def complete_order(self, item_ids, seller_ids) -> list[str]:
        """Clear what an order consumed: its lines, its sellers' coupons and the cart-wide coupon."""
        async with self._transaction("complete_order") as cart:
            removed = cart.remove_fulfilled(item_ids)
            consumed = cart.consume_coupons(seller_ids)
        logger.info("Ordered lines cleared", owner_id=self.owner_id, removed=len(removed), coupons=consumed)
        return removed

    async def save_for_later(self, item_id) -> None:
        async with self._transaction("save_for_later") as cart:
            cart.save_for_later(item_id)

    async def move_to_cart(self, item_id) -> CartItem:
        async with self._transaction("move_to_cart") as cart:
            return cart.move_to_cart(item_id)

    async def clear(self) -> None:
        async with self._transaction("clear") as cart:
            cart.clear()
        logger.info("Cart cleared", owner_id=self.owner_id)

    # -------------------------------------------------------------------
    # Coupons
    # -------------------------------------------------------------------
    @staticmethod
    def _scope_subtotal(cart: ShoppingCart, seller_id=None) -> float:
        """Amount a coupon for the scope is quoted against.

        A seller coupon sees that seller's active lines. The cart-wide coupon
        sees the selected lines after seller coupons have been taken off.
        """
        if seller_id:
            return to_cents(sum(i.line_total for i in cart.active_items if i.seller_id == str(seller_id)))

        items = cart.checkout_items()
        subtotal = sum(i.line_total for i in items)
        selected_sellers = {i.seller_id for i in items}
        seller_discounts = sum(
            coupon.discount_amount for sid, coupon in cart.seller_coupon_map().items() if sid in selected_sellers
        )
        return to_cents(max(0.0, subtotal - seller_discounts))

    async def apply_coupon(self, code: str, subtotal: float | None = None, seller_id=None):
        """Quote and store a coupon for the scope. On InvalidCoupon the cart is left as it was."""
        async with self._transaction("apply_coupon") as cart:
            if subtotal is None:
                subtotal = self._scope_subtotal(cart, seller_id)
            coupon = await self.coupon_engine.apply(code, subtotal, seller_id=seller_id)
            cart.apply_coupon(coupon, seller_id=seller_id)
        return coupon

    async def auto_apply_coupon(self, seller_id=None):
        async with self._transaction("auto_apply_coupon") as cart:
            coupon = await self.coupon_engine.auto_apply(self._scope_subtotal(cart, seller_id), seller_id=seller_id)
            cart.apply_coupon(coupon, seller_id=seller_id)
        return coupon

    async def remove_coupon(self, seller_id=None):
        async with self._transaction("remove_coupon") as cart:
            return self.coupon_engine.remove(cart, seller_id=seller_id)

    async def revalidate_coupons(self) -> dict[str, list[str]]:
        """Re-quote every stored coupon against the current cart.

        Coupons the service now rejects are dropped; the others are refreshed
        to their current discount. Returns the reasons for each dropped
        scope, keyed by seller id or ``"global"``.
        """
        dropped: dict[str, list[str]] = {}
        if self._cart.global_coupon is None and not self._cart.seller_coupon_map():
            return dropped

        async with self._transaction("revalidate_coupons") as cart:
            # Seller coupons first: the cart-wide quote depends on them
            for seller_id, coupon in cart.seller_coupon_map().items():
                await self._requote(cart, coupon, seller_id, dropped)
            if cart.global_coupon is not None:
                await self._requote(cart, cart.global_coupon, None, dropped)

        if dropped:
            logger.info("Stale coupons dropped", owner_id=self.owner_id, scopes=sorted(dropped))
        return dropped

    async def _requote(self, cart, coupon, seller_id, dropped):
        try:
            refreshed = await self.coupon_engine.apply(
                coupon.code, self._scope_subtotal(cart, seller_id), seller_id=seller_id
            )
        except InvalidCoupon as exc:
            cart.remove_coupon(seller_id=seller_id)
            dropped[seller_id or GLOBAL_SCOPE] = exc.messages.get("coupon_code", [])
            return
        if refreshed.discount_amount != coupon.discount_amount:
            cart.apply_coupon(refreshed, seller_id=seller_id)

    # -------------------------------------------------------------------
    # Derived views
    # -------------------------------------------------------------------
    async def get_seller_groups(self, selected_only=False, shipping_methods=None) -> list[SellerGroup]:
        cart = self._cart
        items = cart.checkout_items() if selected_only else cart.active_items
        return await self.aggregator.aggregate(items, cart.seller_coupon_map(), shipping_methods)

    async def get_selected_groups(self, shipping_methods=None) -> list[SellerGroup]:
        return await self.get_seller_groups(selected_only=True, shipping_methods=shipping_methods)

    async def get_totals(self, shipping_methods=None) -> CartTotals:
        groups = await self.get_selected_groups(shipping_methods)
        return self.aggregator.totals(groups, self._cart.global_coupon)

    async def get_selected_subtotal(self) -> float:
        return (await self.get_totals()).subtotal

    async def get_selected_total(self, shipping_methods=None) -> float:
        return (await self.get_totals(shipping_methods)).total

    async def validate_cart(self, selected_only=False) -> list[CartValidation]:
        cart = self._cart
        items = cart.checkout_items() if selected_only else cart.active_items
        return await self.validator.validate(items)

    # -------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------
    async def select_item(self, item_id, selected=True) -> None:
        async with self._transaction("select_item") as cart:
            cart.select_item(item_id, selected)

    async def select_seller(self, seller_id, selected=True) -> None:
        async with self._transaction("select_seller") as cart:
            cart.select_seller(seller_id, selected)

    async def select_all_items(self, selected=True) -> None:
        async with self._transaction("select_all_items") as cart:
            cart.select_all_items(selected)

    async def select_all_sellers(self, selected=True) -> None:
        async with self._transaction("select_all_sellers") as cart:
            cart.select_all_sellers(selected)

    async def clear_selection(self) -> None:
        async with self._transaction("clear_selection") as cart:
            cart.clear_selection()

    # -------------------------------------------------------------------
    # Guest sign-in
    # -------------------------------------------------------------------
    async def adopt_owner(self, user_id) -> int:
        """Hand this cart over to ``user_id`` after a guest signs in.

        The guest's lines are merged into whatever the user already has
        persisted, the merged cart is saved under the user's key and the
        guest record is deleted. Returns the number of lines merged.
        """
        user_id = str(user_id)
        if user_id == self.owner_id:
            return 0

        async with self._lock:
            try:
                record = await self.storage.load(cart_key(user_id))
            except StorageError as exc:
                message = "Your saved cart could not be loaded. Please try again."
                raise CartPersistenceError({"cart": [message]}) from exc

            target = ShoppingCart.from_snapshot(record) if record else ShoppingCart.create(user_id)
            merged = target.merge_guest_cart(self._cart) if self._cart.items else 0

            user_record = target.to_snapshot()
            try:
                await self.storage.save(cart_key(user_id), user_record, ttl_seconds=record_ttl(user_id))
            except StorageError as exc:
                logger.error("Merged cart could not be saved", owner_id=self.owner_id, user_id=user_id, error=str(exc))
                raise CartPersistenceError({"cart": ["Your cart could not be saved. Please try again."]}) from exc

            previous_owner = self.owner_id
            try:
                await self.storage.delete(cart_key(previous_owner))
            except StorageError as exc:
                logger.warning("Guest cart record left to expire", owner_id=previous_owner, error=str(exc))

            self.owner_id = user_id
            self._cart = target
            self._confirmed = user_record

        logger.info("Guest cart adopted", guest_id=previous_owner, user_id=user_id, merged=merged)
        return merged
