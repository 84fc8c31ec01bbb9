"""Domain events for the ShoppingCart aggregate."""

from protean.fields import Float, Identifier, Integer, String, Text

from storefront.domain import storefront


@storefront.event(part_of="ShoppingCart")
class CartItemAdded:
    """A product (optionally a variant) was added to the cart."""

    __version__ = 1

    owner_id = String(required=True)
    item_id = Identifier(required=True)
    product_id = Identifier(required=True)
    variant_id = Identifier()
    quantity = Integer(required=True)


@storefront.event(part_of="ShoppingCart")
class CartQuantityUpdated:
    __version__ = 1

    owner_id = String(required=True)
    item_id = Identifier(required=True)
    previous_quantity = Integer(required=True)
    new_quantity = Integer(required=True)


@storefront.event(part_of="ShoppingCart")
class CartItemRemoved:
    __version__ = 1

    owner_id = String(required=True)
    item_id = Identifier(required=True)


@storefront.event(part_of="ShoppingCart")
class CartItemSavedForLater:
    __version__ = 1

    owner_id = String(required=True)
    item_id = Identifier(required=True)


@storefront.event(part_of="ShoppingCart")
class CartItemMovedToCart:
    """A saved-for-later item returned to the active cart."""

    __version__ = 1

    owner_id = String(required=True)
    item_id = Identifier(required=True)


@storefront.event(part_of="ShoppingCart")
class CartCouponApplied:
    __version__ = 1

    owner_id = String(required=True)
    coupon_code = String(required=True)
    discount_amount = Float(required=True)
    seller_id = Identifier()  # Empty for the cart-wide coupon


@storefront.event(part_of="ShoppingCart")
class CartCouponRemoved:
    __version__ = 1

    owner_id = String(required=True)
    coupon_code = String(required=True)
    seller_id = Identifier()


@storefront.event(part_of="ShoppingCart")
class CartsMerged:
    """A guest cart's items were merged into an authenticated shopper's cart."""

    __version__ = 1

    owner_id = String(required=True)
    source_owner_id = String(required=True)
    items_merged_count = Integer(required=True)


@storefront.event(part_of="ShoppingCart")
class CartItemsFulfilled:
    """Items were removed from the cart because orders were placed for them."""

    __version__ = 1

    owner_id = String(required=True)
    item_ids = Text(required=True)  # JSON list of item ids


@storefront.event(part_of="ShoppingCart")
class CartCleared:
    __version__ = 1

    owner_id = String(required=True)
