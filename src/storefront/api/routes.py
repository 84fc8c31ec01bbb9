"""FastAPI routes for the Storefront — carts and checkout.

Each owner (user id, or ``guest:<session>``) gets one CartStore and at most
one checkout in progress, built from the configured integration adapters the
first time the owner is seen.
"""

import os
from collections import OrderedDict

import structlog
from fastapi import APIRouter, HTTPException
from protean.exceptions import ValidationError

from storefront.api.schemas import (
    AddItemRequest,
    AddressSchema,
    AdoptCartRequest,
    AdoptCartResponse,
    AdvanceRequest,
    ApplyCouponRequest,
    AutoApplyCouponRequest,
    CartItemResponse,
    CartResponse,
    CartTotalsResponse,
    CartValidationResponse,
    CheckoutSessionResponse,
    CouponSchema,
    OrderReceiptSchema,
    RemovedItemsResponse,
    ReviewResponse,
    SaveAddressRequest,
    SavedAddressResponse,
    SelectionRequest,
    SellerGroupResponse,
    StatusResponse,
    UpdateQuantityRequest,
)
from storefront.cart.cart import ShoppingCart
from storefront.cart.store import CartStore
from storefront.cart.validation import stock_advisory
from storefront.checkout.flow import CheckoutStateMachine
from storefront.checkout.session import CheckoutStep
from storefront.exceptions import InvalidCheckoutTransition
from storefront.integrations import CATALOG, COUPONS, ORDERS, SELLERS, STORAGE, get_adapter
from storefront.utils.logging import bind_owner

logger = structlog.get_logger(__name__)

DEFAULT_MAX_OPEN_CARTS = 1000

# Least recently used first
_stores: OrderedDict[str, CartStore] = OrderedDict()
_flows: dict[str, CheckoutStateMachine] = {}


def max_open_carts() -> int:
    return int(os.environ.get("STOREFRONT_MAX_OPEN_CARTS", DEFAULT_MAX_OPEN_CARTS))


def _evict_idle_stores() -> None:
    """Forget the least recently used carts beyond the limit. Carts with a checkout open stay."""
    excess = len(_stores) - max_open_carts()
    for owner_id in list(_stores):
        if excess <= 0:
            break
        if owner_id in _flows:
            continue
        del _stores[owner_id]
        excess -= 1
        logger.debug("Idle cart evicted", owner_id=owner_id)


async def get_cart_store(owner_id: str) -> CartStore:
    """The owner's cart store, loaded from storage on first use."""
    bind_owner(owner_id)
    store = _stores.get(owner_id)
    if store is None:
        store = CartStore(
            owner_id,
            catalog=get_adapter(CATALOG),
            sellers=get_adapter(SELLERS),
            coupons=get_adapter(COUPONS),
            storage=get_adapter(STORAGE),
        )
        await store.load()
        _stores[owner_id] = store
        _evict_idle_stores()
    else:
        _stores.move_to_end(owner_id)
    return store


def get_checkout(owner_id: str) -> CheckoutStateMachine:
    flow = _flows.get(owner_id)
    if flow is None:
        raise HTTPException(status_code=404, detail=f"No checkout in progress for {owner_id}")
    return flow


def _checkout_settled(owner_id: str, flow: CheckoutStateMachine) -> None:
    """A checkout that reached confirmation is finished and no longer tracked."""
    if flow.step == CheckoutStep.CONFIRMATION and _flows.get(owner_id) is flow:
        del _flows[owner_id]


def _owner_changed(previous_owner: str, store: CartStore) -> None:
    """Re-register a store (and its checkout) under the owner it now belongs to."""
    if store.owner_id == previous_owner:
        return
    _stores.pop(previous_owner, None)
    _stores[store.owner_id] = store
    flow = _flows.pop(previous_owner, None)
    if flow is not None:
        _flows[store.owner_id] = flow


def reset_sessions() -> None:
    """Forget every cart store and checkout (useful for testing)."""
    _stores.clear()
    _flows.clear()


# ---------------------------------------------------------------------------
# Serializers
# ---------------------------------------------------------------------------
def _coupon(coupon) -> CouponSchema | None:
    return CouponSchema(code=coupon.code, discount_amount=coupon.discount_amount) if coupon else None


def _item(cart: ShoppingCart, item) -> CartItemResponse:
    return CartItemResponse(
        item_id=str(item.id),
        product_id=str(item.product_id),
        variant_id=str(item.variant_id) if item.variant_id else None,
        seller_id=item.seller_id,
        title=item.product.title if item.product else None,
        quantity=item.quantity,
        unit_price=item.unit_price,
        line_total=item.line_total,
        saved_for_later=bool(item.saved_for_later),
        selected=not item.saved_for_later and cart.is_item_selected(item.id),
        stock_advisory=stock_advisory(item.stock_quantity),
    )


def _cart(cart: ShoppingCart) -> CartResponse:
    return CartResponse(
        owner_id=cart.owner_id,
        items=[_item(cart, i) for i in cart.active_items],
        saved_items=[_item(cart, i) for i in cart.saved_items],
        global_coupon=_coupon(cart.global_coupon),
        seller_coupons={sid: _coupon(c) for sid, c in cart.seller_coupon_map().items()},
    )


def _group(cart: ShoppingCart, group) -> SellerGroupResponse:
    return SellerGroupResponse(
        seller_id=group.seller_id,
        display_name=group.display_name,
        item_ids=group.item_ids,
        subtotal=group.subtotal,
        discount=group.discount,
        subtotal_after_discount=group.subtotal_after_discount,
        tax=group.tax,
        shipping_method=group.shipping_method,
        shipping_cost=group.shipping_cost,
        total=group.total,
        is_available=group.is_available,
        selected=cart.is_seller_selected(group.seller_id),
        warnings=list(group.warnings),
        coupon=_coupon(group.coupon),
    )


def _totals(totals) -> CartTotalsResponse:
    return CartTotalsResponse(
        subtotal=totals.subtotal,
        seller_discount=totals.seller_discount,
        global_discount=totals.global_discount,
        tax=totals.tax,
        shipping=totals.shipping,
        total=totals.total,
        item_count=totals.item_count,
        amount_to_free_shipping=totals.amount_to_free_shipping,
        group_count=totals.group_count,
        warnings=list(totals.warnings),
    )


def _session(session) -> CheckoutSessionResponse:
    return CheckoutSessionResponse(
        owner_id=session.owner_id,
        step=session.step,
        authenticated=bool(session.authenticated),
        shipping_address=AddressSchema(**session.shipping_address.to_dict()) if session.shipping_address else None,
        selected_address_id=str(session.selected_address_id) if session.selected_address_id else None,
        payment_method=session.payment_method,
        shipping_methods=session.shipping_method_map(),
        notes=session.note_map(),
        accepted_terms=bool(session.accepted_terms),
        error_message=session.error_message,
        orders=[OrderReceiptSchema(**receipt) for receipt in session.order_receipts()],
        estimated_delivery=session.estimated_delivery,
        addresses=[_saved_address(a) for a in session.addresses],
    )


def _saved_address(address) -> SavedAddressResponse:
    return SavedAddressResponse(address_id=str(address.id), is_default=bool(address.is_default), **address.to_dict())


# ---------------------------------------------------------------------------
# Cart Router
# ---------------------------------------------------------------------------
cart_router = APIRouter(prefix="/carts", tags=["carts"])


@cart_router.get("/{owner_id}", response_model=CartResponse)
async def get_cart(owner_id: str) -> CartResponse:
    store = await get_cart_store(owner_id)
    return _cart(store.cart)


@cart_router.delete("/{owner_id}", response_model=CartResponse)
async def clear_cart(owner_id: str) -> CartResponse:
    store = await get_cart_store(owner_id)
    await store.clear()
    return _cart(store.cart)


@cart_router.post("/{owner_id}/items", status_code=201, response_model=CartResponse)
async def add_cart_item(owner_id: str, body: AddItemRequest) -> CartResponse:
    store = await get_cart_store(owner_id)
    product = await store.catalog.get_product(body.product_id)
    if product is None or not product.is_active:
        raise ValidationError({"product_id": [f"Product {body.product_id} is not available"]})

    variant = None
    if body.variant_id:
        variant = product.variant(body.variant_id)
        if variant is None:
            raise ValidationError({"variant_id": [f"Variant {body.variant_id} is not available"]})

    await store.add_item(product, variant=variant, quantity=body.quantity)
    return _cart(store.cart)


@cart_router.put("/{owner_id}/items/{item_id}", response_model=CartResponse)
async def update_cart_item_quantity(owner_id: str, item_id: str, body: UpdateQuantityRequest) -> CartResponse:
    store = await get_cart_store(owner_id)
    await store.update_quantity(item_id, body.quantity)
    return _cart(store.cart)


@cart_router.delete("/{owner_id}/items/{item_id}", response_model=CartResponse)
async def remove_cart_item(owner_id: str, item_id: str) -> CartResponse:
    store = await get_cart_store(owner_id)
    await store.remove_item(item_id)
    return _cart(store.cart)


@cart_router.post("/{owner_id}/items/{item_id}/save-for-later", response_model=CartResponse)
async def save_item_for_later(owner_id: str, item_id: str) -> CartResponse:
    store = await get_cart_store(owner_id)
    await store.save_for_later(item_id)
    return _cart(store.cart)


@cart_router.post("/{owner_id}/items/{item_id}/move-to-cart", response_model=CartResponse)
async def move_item_to_cart(owner_id: str, item_id: str) -> CartResponse:
    store = await get_cart_store(owner_id)
    await store.move_to_cart(item_id)
    return _cart(store.cart)


@cart_router.delete("/{owner_id}/sellers/{seller_id}", response_model=RemovedItemsResponse)
async def remove_seller_items(owner_id: str, seller_id: str) -> RemovedItemsResponse:
    store = await get_cart_store(owner_id)
    removed = await store.remove_items_by_seller(seller_id)
    return RemovedItemsResponse(removed_item_ids=removed)


@cart_router.post("/{owner_id}/coupons", response_model=CouponSchema)
async def apply_cart_coupon(owner_id: str, body: ApplyCouponRequest) -> CouponSchema:
    store = await get_cart_store(owner_id)
    coupon = await store.apply_coupon(body.coupon_code, subtotal=body.subtotal, seller_id=body.seller_id)
    return _coupon(coupon)


@cart_router.post("/{owner_id}/coupons/auto-apply", response_model=CouponSchema)
async def auto_apply_cart_coupon(owner_id: str, body: AutoApplyCouponRequest) -> CouponSchema:
    store = await get_cart_store(owner_id)
    coupon = await store.auto_apply_coupon(seller_id=body.seller_id)
    return _coupon(coupon)


@cart_router.delete("/{owner_id}/coupons", response_model=StatusResponse)
async def remove_cart_coupon(owner_id: str, seller_id: str | None = None) -> StatusResponse:
    store = await get_cart_store(owner_id)
    await store.remove_coupon(seller_id=seller_id)
    return StatusResponse()


@cart_router.get("/{owner_id}/groups", response_model=list[SellerGroupResponse])
async def get_seller_groups(owner_id: str, selected_only: bool = False) -> list[SellerGroupResponse]:
    store = await get_cart_store(owner_id)
    groups = await store.get_seller_groups(selected_only=selected_only)
    return [_group(store.cart, g) for g in groups]


@cart_router.get("/{owner_id}/totals", response_model=CartTotalsResponse)
async def get_cart_totals(owner_id: str) -> CartTotalsResponse:
    store = await get_cart_store(owner_id)
    return _totals(await store.get_totals())


@cart_router.get("/{owner_id}/validation", response_model=list[CartValidationResponse])
async def validate_cart(owner_id: str) -> list[CartValidationResponse]:
    store = await get_cart_store(owner_id)
    validations = await store.validate_cart()
    return [
        CartValidationResponse(
            item_id=v.item_id,
            product_id=v.product_id,
            variant_id=v.variant_id,
            seller_id=v.seller_id,
            is_valid=v.is_valid,
            price_changed=v.price_changed,
            stock_changed=v.stock_changed,
            unavailable=v.unavailable,
            current_price=v.current_price,
            current_stock=v.current_stock,
            warnings=list(v.warnings),
        )
        for v in validations
    ]


@cart_router.put("/{owner_id}/items/{item_id}/selection", response_model=StatusResponse)
async def select_cart_item(owner_id: str, item_id: str, body: SelectionRequest) -> StatusResponse:
    store = await get_cart_store(owner_id)
    await store.select_item(item_id, body.selected)
    return StatusResponse()


@cart_router.put("/{owner_id}/sellers/{seller_id}/selection", response_model=StatusResponse)
async def select_cart_seller(owner_id: str, seller_id: str, body: SelectionRequest) -> StatusResponse:
    store = await get_cart_store(owner_id)
    await store.select_seller(seller_id, body.selected)
    return StatusResponse()


@cart_router.put("/{owner_id}/selection", response_model=StatusResponse)
async def select_everything(owner_id: str, body: SelectionRequest) -> StatusResponse:
    store = await get_cart_store(owner_id)
    await store.select_all_sellers(body.selected)
    await store.select_all_items(body.selected)
    return StatusResponse()


@cart_router.delete("/{owner_id}/selection", response_model=StatusResponse)
async def reset_selection(owner_id: str) -> StatusResponse:
    store = await get_cart_store(owner_id)
    await store.clear_selection()
    return StatusResponse()


@cart_router.post("/{owner_id}/adopt", response_model=AdoptCartResponse)
async def adopt_cart(owner_id: str, body: AdoptCartRequest) -> AdoptCartResponse:
    """Move a guest cart onto the user who just signed in."""
    store = await get_cart_store(owner_id)
    merged = await store.adopt_owner(body.user_id)
    _owner_changed(owner_id, store)
    return AdoptCartResponse(owner_id=store.owner_id, merged_items=merged)


# ---------------------------------------------------------------------------
# Checkout Router
# ---------------------------------------------------------------------------
checkout_router = APIRouter(prefix="/checkout", tags=["checkout"])


@checkout_router.post("/{owner_id}", status_code=201, response_model=CheckoutSessionResponse)
async def start_checkout(owner_id: str) -> CheckoutSessionResponse:
    """Begin a new checkout, replacing any unfinished one for this owner.

    A checkout whose order submission is still in flight cannot be replaced.
    """
    current = _flows.get(owner_id)
    if current is not None and current.in_flight:
        raise InvalidCheckoutTransition({"step": ["An order is already being placed for this checkout"]})

    store = await get_cart_store(owner_id)
    flow = CheckoutStateMachine(store, get_adapter(ORDERS))
    await flow.start()
    _flows[owner_id] = flow
    return _session(flow.session)


@checkout_router.get("/{owner_id}", response_model=CheckoutSessionResponse)
async def get_checkout_session(owner_id: str) -> CheckoutSessionResponse:
    return _session(get_checkout(owner_id).session)


@checkout_router.post("/{owner_id}/advance", response_model=CheckoutSessionResponse)
async def advance_checkout(owner_id: str, body: AdvanceRequest) -> CheckoutSessionResponse:
    flow = get_checkout(owner_id)
    payload = body.model_dump(exclude={"step"}, exclude_none=True)
    await flow.advance(body.step, **payload)
    _owner_changed(owner_id, flow.cart_store)
    _checkout_settled(flow.session.owner_id, flow)
    return _session(flow.session)


@checkout_router.post("/{owner_id}/back", response_model=CheckoutSessionResponse)
async def checkout_back(owner_id: str) -> CheckoutSessionResponse:
    flow = get_checkout(owner_id)
    flow.back()
    return _session(flow.session)


@checkout_router.post("/{owner_id}/place-order", response_model=CheckoutSessionResponse)
async def place_order(owner_id: str) -> CheckoutSessionResponse:
    flow = get_checkout(owner_id)
    await flow.place_order()
    _checkout_settled(owner_id, flow)
    return _session(flow.session)


@checkout_router.get("/{owner_id}/review", response_model=ReviewResponse)
async def review_checkout(owner_id: str) -> ReviewResponse:
    flow = get_checkout(owner_id)
    summary = await flow.review()
    cart = flow.cart_store.cart
    return ReviewResponse(groups=[_group(cart, g) for g in summary.groups], totals=_totals(summary.totals))


@checkout_router.post("/{owner_id}/addresses", status_code=201, response_model=SavedAddressResponse)
async def save_address(owner_id: str, body: SaveAddressRequest) -> SavedAddressResponse:
    flow = get_checkout(owner_id)
    address = await flow.add_address(body.address.model_dump(), is_default=body.is_default)
    return _saved_address(address)


@checkout_router.get("/{owner_id}/addresses/{address_id}", response_model=AddressSchema)
async def edit_address(owner_id: str, address_id: str) -> AddressSchema:
    flow = get_checkout(owner_id)
    return AddressSchema(**flow.edit_address(address_id))


@checkout_router.put("/{owner_id}/addresses/{address_id}", response_model=SavedAddressResponse)
async def update_address(owner_id: str, address_id: str, body: AddressSchema) -> SavedAddressResponse:
    flow = get_checkout(owner_id)
    address = await flow.update_address(address_id, body.model_dump(exclude_none=True))
    return _saved_address(address)


@checkout_router.delete("/{owner_id}/addresses/{address_id}", response_model=StatusResponse)
async def delete_address(owner_id: str, address_id: str, confirmed: bool = False) -> StatusResponse:
    flow = get_checkout(owner_id)
    await flow.delete_address(address_id, confirmed=confirmed)
    return StatusResponse()
