"""Domain events for the CheckoutSession aggregate."""

from protean.fields import Float, String, Text

from storefront.domain import storefront


@storefront.event(part_of="CheckoutSession")
class CheckoutStepChanged:
    __version__ = 1

    owner_id = String(required=True)
    from_step = String(required=True)
    to_step = String(required=True)


@storefront.event(part_of="CheckoutSession")
class OrdersPlaced:
    """The order service confirmed one order per submitted seller group."""

    __version__ = 1

    owner_id = String(required=True)
    orders = Text(required=True)  # JSON: list of {order_id, order_number, seller_id}
    total = Float(required=True)
    estimated_delivery = String(max_length=10)  # ISO date


@storefront.event(part_of="CheckoutSession")
class CheckoutFailed:
    __version__ = 1

    owner_id = String(required=True)
    reason = Text(required=True)


@storefront.event(part_of="CheckoutSession")
class SavedAddressesChanged:
    __version__ = 1

    owner_id = String(required=True)
    address_id = String(required=True)
    change = String(required=True)  # added, updated, removed
