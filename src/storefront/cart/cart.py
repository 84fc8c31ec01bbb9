"""Shopping Cart aggregate — one owner's in-progress selections.

The cart is a plain aggregate held in memory by a ``CartStore`` and written
through to the cart storage port as a JSON snapshot. It tracks active lines,
saved-for-later lines, the checkout selection, and coupons. Totals are never
stored here; they are derived on demand by the seller group aggregator.

Owners are either authenticated users or anonymous sessions. Nothing in this
module distinguishes between the two.
"""

import json
from datetime import UTC, datetime

from protean.exceptions import ValidationError
from protean.fields import Boolean, DateTime, Float, HasMany, Identifier, Integer, String, Text, ValueObject

from storefront.cart.events import (
    CartCleared,
    CartCouponApplied,
    CartCouponRemoved,
    CartItemAdded,
    CartItemMovedToCart,
    CartItemRemoved,
    CartItemSavedForLater,
    CartItemsFulfilled,
    CartQuantityUpdated,
    CartsMerged,
)
from storefront.domain import storefront
from storefront.exceptions import CartItemNotFound


# ---------------------------------------------------------------------------
# Value Objects
# ---------------------------------------------------------------------------
@storefront.value_object(part_of="ShoppingCart")
class ProductSnapshot:
    """Product details captured when the item was added, for display without a catalog call."""

    title = String(max_length=255)
    price = Float(required=True, min_value=0.0)
    stock_quantity = Integer(default=0)
    seller_id = Identifier()
    images = Text()  # JSON list of image URLs


@storefront.value_object(part_of="ShoppingCart")
class VariantSnapshot:
    name = String(max_length=255)
    price = Float(min_value=0.0)  # Falls back to the product price when empty
    stock_quantity = Integer(default=0)


@storefront.value_object(part_of="ShoppingCart")
class AppliedCoupon:
    """A coupon code and the absolute discount it was worth when applied."""

    code = String(required=True, max_length=50)
    discount_amount = Float(required=True, min_value=0.0)


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------
@storefront.entity(part_of="ShoppingCart")
class CartItem:
    product_id = Identifier(required=True)
    variant_id = Identifier()
    quantity = Integer(required=True, min_value=1)
    saved_for_later = Boolean(default=False)
    product = ValueObject(ProductSnapshot)
    variant = ValueObject(VariantSnapshot)
    created_at = DateTime()
    updated_at = DateTime()

    @property
    def unit_price(self) -> float:
        """Variant price first, product price otherwise. Used for every total."""
        if self.variant is not None and self.variant.price is not None:
            return self.variant.price
        if self.product is not None:
            return self.product.price
        return 0.0

    @property
    def line_total(self) -> float:
        return self.unit_price * self.quantity

    @property
    def seller_id(self) -> str | None:
        if self.product is None or not self.product.seller_id:
            return None
        return str(self.product.seller_id)

    @property
    def stock_quantity(self) -> int:
        if self.variant_id and self.variant is not None:
            return self.variant.stock_quantity or 0
        if self.product is not None:
            return self.product.stock_quantity or 0
        return 0

    def matches(self, product_id, variant_id) -> bool:
        return str(self.product_id) == str(product_id) and _optional_id(self.variant_id) == _optional_id(variant_id)


def _optional_id(value) -> str | None:
    return str(value) if value else None


def _load_ids(raw: str | None) -> set[str] | None:
    return None if raw is None else set(json.loads(raw))


def _dump_ids(ids: set[str] | None) -> str | None:
    return None if ids is None else json.dumps(sorted(ids))


# ---------------------------------------------------------------------------
# Aggregate Root
# ---------------------------------------------------------------------------
@storefront.aggregate
class ShoppingCart:
    owner_id = String(required=True, max_length=255)
    items = HasMany(CartItem)  # Active and saved-for-later lines
    global_coupon = ValueObject(AppliedCoupon)
    seller_coupons = Text()  # JSON object: seller id -> {code, discount_amount}
    selected_item_ids = Text()  # JSON list; empty field means "everything selected"
    selected_seller_ids = Text()  # JSON list; empty field means "every seller selected"
    created_at = DateTime()
    updated_at = DateTime()

    # -------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------
    @classmethod
    def create(cls, owner_id):
        now = datetime.now(UTC)
        return cls(owner_id=owner_id, seller_coupons=json.dumps({}), created_at=now, updated_at=now)

    # -------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------
    @property
    def active_items(self) -> list[CartItem]:
        return [item for item in self.items if not item.saved_for_later]

    @property
    def saved_items(self) -> list[CartItem]:
        return [item for item in self.items if item.saved_for_later]

    def find_item(self, item_id) -> CartItem | None:
        return next((i for i in self.items if str(i.id) == str(item_id)), None)

    def _get_item(self, item_id, saved_for_later=False) -> CartItem:
        item = self.find_item(item_id)
        if item is None or item.saved_for_later != saved_for_later:
            where = "saved for later" if saved_for_later else "in cart"
            raise CartItemNotFound({"item_id": [f"Item {item_id} not found {where}"]})
        return item

    def seller_ids(self) -> set[str]:
        return {item.seller_id for item in self.active_items if item.seller_id}

    # -------------------------------------------------------------------
    # Item management
    # -------------------------------------------------------------------
    def add_item(self, product_id, quantity=1, variant_id=None, product=None, variant=None) -> CartItem:
        """Add a product to the cart, or increase the quantity of the existing line."""
        if quantity is None or quantity < 1:
            raise ValidationError({"quantity": ["Quantity must be at least 1"]})

        now = datetime.now(UTC)
        existing = next((i for i in self.active_items if i.matches(product_id, variant_id)), None)

        if existing:
            existing.quantity += quantity
            existing.updated_at = now
            if product is not None:
                existing.product = product
            if variant is not None:
                existing.variant = variant
            item = existing
        else:
            item = CartItem(
                product_id=product_id,
                variant_id=variant_id,
                quantity=quantity,
                product=product,
                variant=variant,
                created_at=now,
                updated_at=now,
            )
            self.add_items(item)

        self.updated_at = now
        self.raise_(
            CartItemAdded(
                owner_id=self.owner_id,
                item_id=str(item.id),
                product_id=str(product_id),
                variant_id=_optional_id(variant_id),
                quantity=quantity,
            )
        )
        return item

    def update_item_quantity(self, item_id, new_quantity):
        if new_quantity is None or new_quantity < 1:
            raise ValidationError({"quantity": ["Quantity must be at least 1"]})

        item = self._get_item(item_id)
        previous_quantity = item.quantity
        now = datetime.now(UTC)
        item.quantity = new_quantity
        item.updated_at = now
        self.updated_at = now

        self.raise_(
            CartQuantityUpdated(
                owner_id=self.owner_id,
                item_id=str(item_id),
                previous_quantity=previous_quantity,
                new_quantity=new_quantity,
            )
        )

    def remove_item(self, item_id):
        """Remove a line, whether it is active or saved for later."""
        item = self.find_item(item_id)
        if item is None:
            raise CartItemNotFound({"item_id": [f"Item {item_id} not found in cart"]})

        self._discard(item)
        self.updated_at = datetime.now(UTC)
        self.raise_(CartItemRemoved(owner_id=self.owner_id, item_id=str(item_id)))

    def remove_items_by_seller(self, seller_id) -> list[str]:
        removed = [item for item in self.active_items if item.seller_id == str(seller_id)]
        for item in removed:
            self._discard(item)
            self.raise_(CartItemRemoved(owner_id=self.owner_id, item_id=str(item.id)))

        self._release_seller_coupon(str(seller_id))

        sellers = _load_ids(self.selected_seller_ids)
        if sellers is not None:
            sellers.discard(str(seller_id))
            self.selected_seller_ids = _dump_ids(sellers)

        self.updated_at = datetime.now(UTC)
        return [str(item.id) for item in removed]

    def remove_fulfilled(self, item_ids) -> list[str]:
        """Drop items that orders were placed for. Ids no longer in the cart are skipped."""
        removed = []
        for item_id in item_ids:
            item = self.find_item(item_id)
            if item is None or item.saved_for_later:
                continue
            self._discard(item)
            removed.append(str(item_id))

        if removed:
            self.updated_at = datetime.now(UTC)
            self.raise_(CartItemsFulfilled(owner_id=self.owner_id, item_ids=json.dumps(removed)))
        return removed

    def _discard(self, item):
        self.remove_items(item)
        selected = _load_ids(self.selected_item_ids)
        if selected is not None:
            selected.discard(str(item.id))
            self.selected_item_ids = _dump_ids(selected)
        self._release_seller_coupon(item.seller_id)

    def _release_seller_coupon(self, seller_id):
        """Drop a seller's coupon once that seller has no active lines left."""
        if seller_id is None or seller_id in self.seller_ids():
            return
        if self.seller_coupon(seller_id) is not None:
            self.remove_coupon(seller_id=seller_id)

    def consume_coupons(self, seller_ids) -> list[str]:
        """Retire the coupons an order was placed with: the cart-wide one and those of ``seller_ids``."""
        consumed = []
        for seller_id in seller_ids:
            removed = self.remove_coupon(seller_id=seller_id)
            if removed is not None:
                consumed.append(removed.code)
        removed = self.remove_coupon()
        if removed is not None:
            consumed.append(removed.code)
        return consumed

    # -------------------------------------------------------------------
    # Saved for later
    # -------------------------------------------------------------------
    def save_for_later(self, item_id):
        item = self._get_item(item_id)
        item.saved_for_later = True
        item.updated_at = datetime.now(UTC)

        selected = _load_ids(self.selected_item_ids)
        if selected is not None:
            selected.discard(str(item.id))
            self.selected_item_ids = _dump_ids(selected)
        self._release_seller_coupon(item.seller_id)

        self.updated_at = item.updated_at
        self.raise_(CartItemSavedForLater(owner_id=self.owner_id, item_id=str(item_id)))

    def move_to_cart(self, item_id) -> CartItem:
        """Return a saved line to the cart, folding it into a matching active line if one exists."""
        item = self._get_item(item_id, saved_for_later=True)
        now = datetime.now(UTC)

        existing = next((i for i in self.active_items if i.matches(item.product_id, item.variant_id)), None)
        if existing:
            existing.quantity += item.quantity
            existing.updated_at = now
            self.remove_items(item)
            target = existing
        else:
            item.saved_for_later = False
            item.updated_at = now
            target = item

        self.updated_at = now
        self.raise_(CartItemMovedToCart(owner_id=self.owner_id, item_id=str(item_id)))
        return target

    # -------------------------------------------------------------------
    # Coupon management
    # -------------------------------------------------------------------
    def _seller_coupon_records(self) -> dict:
        return json.loads(self.seller_coupons) if self.seller_coupons else {}

    def seller_coupon(self, seller_id) -> AppliedCoupon | None:
        record = self._seller_coupon_records().get(str(seller_id))
        return AppliedCoupon(**record) if record else None

    def seller_coupon_map(self) -> dict[str, AppliedCoupon]:
        return {seller_id: AppliedCoupon(**record) for seller_id, record in self._seller_coupon_records().items()}

    def apply_coupon(self, coupon: AppliedCoupon, seller_id=None):
        """Apply a coupon to the whole cart, or to one seller's subtotal.

        A coupon already applied to the same scope is replaced.
        """
        if seller_id:
            coupons = self._seller_coupon_records()
            coupons[str(seller_id)] = {"code": coupon.code, "discount_amount": coupon.discount_amount}
            self.seller_coupons = json.dumps(coupons)
        else:
            self.global_coupon = coupon

        self.updated_at = datetime.now(UTC)
        self.raise_(
            CartCouponApplied(
                owner_id=self.owner_id,
                coupon_code=coupon.code,
                discount_amount=coupon.discount_amount,
                seller_id=_optional_id(seller_id),
            )
        )

    def remove_coupon(self, seller_id=None) -> AppliedCoupon | None:
        if seller_id:
            coupons = self._seller_coupon_records()
            record = coupons.pop(str(seller_id), None)
            removed = AppliedCoupon(**record) if record else None
            self.seller_coupons = json.dumps(coupons)
        else:
            removed = self.global_coupon
            self.global_coupon = None

        if removed is not None:
            self.updated_at = datetime.now(UTC)
            self.raise_(
                CartCouponRemoved(
                    owner_id=self.owner_id,
                    coupon_code=removed.code,
                    seller_id=_optional_id(seller_id),
                )
            )
        return removed

    # -------------------------------------------------------------------
    # Checkout selection
    # -------------------------------------------------------------------
    def is_seller_selected(self, seller_id) -> bool:
        sellers = _load_ids(self.selected_seller_ids)
        return sellers is None or str(seller_id) in sellers

    def is_item_selected(self, item_id) -> bool:
        selected = _load_ids(self.selected_item_ids)
        return selected is None or str(item_id) in selected

    def selected_sellers(self) -> set[str]:
        sellers = _load_ids(self.selected_seller_ids)
        present = self.seller_ids()
        return present if sellers is None else sellers & present

    def select_seller(self, seller_id, selected=True):
        sellers = _load_ids(self.selected_seller_ids)
        if sellers is None:
            sellers = self.seller_ids()
        if selected:
            sellers.add(str(seller_id))
        else:
            sellers.discard(str(seller_id))
        self.selected_seller_ids = _dump_ids(sellers)

    def select_item(self, item_id, selected=True):
        self._get_item(item_id)
        items = _load_ids(self.selected_item_ids)
        if items is None:
            items = {str(i.id) for i in self.active_items}
        if selected:
            items.add(str(item_id))
        else:
            items.discard(str(item_id))
        self.selected_item_ids = _dump_ids(items)

    def select_all_sellers(self, selected=True):
        self.selected_seller_ids = _dump_ids(self.seller_ids() if selected else set())

    def select_all_items(self, selected=True):
        self.selected_item_ids = _dump_ids({str(i.id) for i in self.active_items} if selected else set())

    def clear_selection(self):
        """Back to the default: every seller and every item selected."""
        self.selected_item_ids = None
        self.selected_seller_ids = None

    def checkout_items(self) -> list[CartItem]:
        """Active items that belong to a selected seller and are themselves selected."""
        return [
            item
            for item in self.active_items
            if item.seller_id and self.is_seller_selected(item.seller_id) and self.is_item_selected(item.id)
        ]

    # -------------------------------------------------------------------
    # Cart lifecycle
    # -------------------------------------------------------------------
    def clear(self):
        """Empty the active cart and drop all coupons. Saved-for-later lines stay parked."""
        for item in self.active_items:
            self.remove_items(item)
        self.global_coupon = None
        self.seller_coupons = json.dumps({})
        self.clear_selection()
        self.updated_at = datetime.now(UTC)
        self.raise_(CartCleared(owner_id=self.owner_id))

    def merge_guest_cart(self, guest_cart: "ShoppingCart") -> int:
        """Fold a guest cart's lines into this cart, summing quantities of matching lines."""
        now = datetime.now(UTC)
        merged = 0

        for guest_item in guest_cart.items:
            pool = self.saved_items if guest_item.saved_for_later else self.active_items
            existing = next((i for i in pool if i.matches(guest_item.product_id, guest_item.variant_id)), None)
            if existing:
                existing.quantity += guest_item.quantity
                existing.updated_at = now
            else:
                self.add_items(
                    CartItem(
                        product_id=guest_item.product_id,
                        variant_id=guest_item.variant_id,
                        quantity=guest_item.quantity,
                        saved_for_later=guest_item.saved_for_later,
                        product=guest_item.product,
                        variant=guest_item.variant,
                        created_at=guest_item.created_at or now,
                        updated_at=now,
                    )
                )
            merged += 1

        if self.global_coupon is None and guest_cart.global_coupon is not None:
            self.global_coupon = guest_cart.global_coupon

        self.updated_at = now
        self.raise_(
            CartsMerged(
                owner_id=self.owner_id,
                source_owner_id=guest_cart.owner_id,
                items_merged_count=merged,
            )
        )
        return merged

    # -------------------------------------------------------------------
    # Persistence record
    # -------------------------------------------------------------------
    def to_snapshot(self) -> dict:
        """JSON-safe record of the cart, as written to cart storage."""
        return {
            "owner_id": self.owner_id,
            "items": [_item_record(item) for item in self.items],
            "global_coupon": (
                {"code": self.global_coupon.code, "discount_amount": self.global_coupon.discount_amount}
                if self.global_coupon
                else None
            ),
            "seller_coupons": self._seller_coupon_records(),
            "selected_item_ids": json.loads(self.selected_item_ids) if self.selected_item_ids else None,
            "selected_seller_ids": json.loads(self.selected_seller_ids) if self.selected_seller_ids else None,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }

    @classmethod
    def from_snapshot(cls, record: dict) -> "ShoppingCart":
        global_coupon = record.get("global_coupon")
        selected_items = record.get("selected_item_ids")
        selected_sellers = record.get("selected_seller_ids")

        cart = cls(
            owner_id=record["owner_id"],
            global_coupon=AppliedCoupon(**global_coupon) if global_coupon else None,
            seller_coupons=json.dumps(record.get("seller_coupons") or {}),
            selected_item_ids=None if selected_items is None else json.dumps(selected_items),
            selected_seller_ids=None if selected_sellers is None else json.dumps(selected_sellers),
            created_at=_parse_datetime(record.get("created_at")),
            updated_at=_parse_datetime(record.get("updated_at")),
        )
        for item_record in record.get("items", []):
            cart.add_items(_item_from_record(item_record))
        return cart


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_datetime(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _item_record(item: CartItem) -> dict:
    product = item.product
    variant = item.variant
    return {
        "id": str(item.id),
        "product_id": str(item.product_id),
        "variant_id": _optional_id(item.variant_id),
        "quantity": item.quantity,
        "saved_for_later": bool(item.saved_for_later),
        "product": (
            {
                "title": product.title,
                "price": product.price,
                "stock_quantity": product.stock_quantity,
                "seller_id": _optional_id(product.seller_id),
                "images": json.loads(product.images) if product.images else [],
            }
            if product
            else None
        ),
        "variant": (
            {"name": variant.name, "price": variant.price, "stock_quantity": variant.stock_quantity}
            if variant
            else None
        ),
        "created_at": _isoformat(item.created_at),
        "updated_at": _isoformat(item.updated_at),
    }


def _item_from_record(record: dict) -> CartItem:
    product = record.get("product")
    variant = record.get("variant")
    return CartItem(
        id=record["id"],
        product_id=record["product_id"],
        variant_id=record.get("variant_id"),
        quantity=record["quantity"],
        saved_for_later=record.get("saved_for_later", False),
        product=(
            ProductSnapshot(
                title=product.get("title"),
                price=product["price"],
                stock_quantity=product.get("stock_quantity", 0),
                seller_id=product.get("seller_id"),
                images=json.dumps(product.get("images") or []),
            )
            if product
            else None
        ),
        variant=VariantSnapshot(**variant) if variant else None,
        created_at=_parse_datetime(record.get("created_at")),
        updated_at=_parse_datetime(record.get("updated_at")),
    )
