"""Checkout flow — drives a CheckoutSession against the live cart.

The flow is the only place where the cart, the session and the order
service meet:

    1. auth      sign in (the guest cart is merged) or continue as guest
    2. address   pick or enter a complete address; saved addresses persist
    3. payment   choose stripe or flutterwave
    4. review    live totals, per-seller shipping and notes, accept terms
    5. place     re-check everything, then ONE order service call carrying
                 every selected seller group

Ordered items leave the cart only after the order service has answered with
success. A failed call leaves the cart as it was and returns the session to
review with the reason attached.
"""

import asyncio
from dataclasses import asdict, dataclass

import structlog

from storefront.cart.aggregation import CartTotals, SellerGroup
from storefront.cart.pricing import to_cents
from storefront.cart.store import CartStore, addresses_key, is_guest, record_ttl
from storefront.cart.validation import blocking_by_seller
from storefront.checkout.session import CheckoutSession, CheckoutStep, SavedAddress
from storefront.exceptions import (
    CartPersistenceError,
    CheckoutBlocked,
    EmptySelection,
    InvalidCheckoutTransition,
    InvalidCoupon,
    OrderSubmissionFailed,
)
from storefront.integrations.order_port import (
    OrderLine,
    OrderService,
    OrderServiceError,
    OrderSubmission,
    SellerOrderRequest,
)
from storefront.integrations.storage_port import CartStorage, StorageError

logger = structlog.get_logger(__name__)

DEFAULT_FAILURE_MESSAGE = "Your order could not be placed. Please try again."


@dataclass(frozen=True)
class ReviewSummary:
    groups: tuple[SellerGroup, ...]
    totals: CartTotals


def allocate_discount(groups: list[SellerGroup], amount: float) -> dict[str, float]:
    """Split a cart-wide discount across groups in proportion to their discounted subtotals.

    The last group takes the rounding remainder so the shares add up exactly.
    """
    shares = {group.seller_id: 0.0 for group in groups}
    base = sum(group.subtotal_after_discount for group in groups)
    if amount <= 0 or base <= 0:
        return shares

    remaining = amount
    for group in groups[:-1]:
        share = to_cents(amount * group.subtotal_after_discount / base)
        shares[group.seller_id] = share
        remaining -= share
    shares[groups[-1].seller_id] = to_cents(remaining)
    return shares


class CheckoutStateMachine:
    def __init__(
        self,
        cart_store: CartStore,
        order_service: OrderService,
        *,
        storage: CartStorage | None = None,
        authenticated: bool | None = None,
    ) -> None:
        self.cart_store = cart_store
        self.order_service = order_service
        self.storage = storage or cart_store.storage
        if authenticated is None:
            authenticated = not is_guest(cart_store.owner_id)
        self.session = CheckoutSession.start(cart_store.owner_id, authenticated=authenticated)
        self._submitting = False

    @property
    def step(self) -> CheckoutStep:
        return self.session.current_step

    @property
    def in_flight(self) -> bool:
        """True from the moment an order submission begins until it settles."""
        return self._submitting or self.session.current_step == CheckoutStep.PROCESSING

    async def start(self) -> CheckoutSession:
        """Load the owner's saved addresses and preselect the default one."""
        await self._load_addresses()
        return self.session

    # -------------------------------------------------------------------
    # Saved addresses
    # -------------------------------------------------------------------
    async def _load_addresses(self):
        try:
            record = await self.storage.load(addresses_key(self.session.owner_id))
        except StorageError as exc:
            logger.warning("Saved addresses could not be read", owner_id=self.session.owner_id, error=str(exc))
            record = None

        self.session.replace_addresses((record or {}).get("addresses", []))
        default = next((a for a in self.session.addresses if a.is_default), None)
        if default is not None and self.session.shipping_address is None:
            self.session.select_address(default.id)

    async def _save_addresses(self, previous: list[dict]):
        owner_id = self.session.owner_id
        try:
            await self.storage.save(
                addresses_key(owner_id),
                {"addresses": self.session.addresses_record()},
                ttl_seconds=record_ttl(owner_id),
            )
        except StorageError as exc:
            self.session.replace_addresses(previous)
            logger.error("Saved addresses could not be written", owner_id=owner_id, error=str(exc))
            raise CartPersistenceError({"addresses": ["Your address could not be saved. Please try again."]}) from exc

    async def add_address(self, data: dict, is_default=False) -> SavedAddress:
        previous = self.session.addresses_record()
        address = self.session.add_address(data, is_default=is_default)
        await self._save_addresses(previous)
        return address

    def edit_address(self, address_id) -> dict:
        """Values to pre-fill the edit form with."""
        return self.session.address_form(address_id)

    async def update_address(self, address_id, data: dict) -> SavedAddress:
        previous = self.session.addresses_record()
        address = self.session.update_address(address_id, data)
        await self._save_addresses(previous)
        return address

    async def delete_address(self, address_id, confirmed=False) -> None:
        previous = self.session.addresses_record()
        self.session.remove_address(address_id, confirmed=confirmed)
        await self._save_addresses(previous)

    # -------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------
    async def authenticate(self, user_id) -> CheckoutSession:
        """Sign the shopper in: the guest cart moves onto the user and their addresses are loaded."""
        self.session.assert_step(CheckoutStep.AUTH)
        merged = await self.cart_store.adopt_owner(user_id)
        self.session.authenticate(user_id)
        await self._load_addresses()
        logger.info("Checkout authenticated", owner_id=str(user_id), merged_items=merged)
        return self.session

    def continue_as_guest(self) -> CheckoutSession:
        self.session.continue_as_guest()
        return self.session

    async def submit_address(self, address: dict | None = None, address_id=None, save=False) -> CheckoutSession:
        self.session.assert_step(CheckoutStep.ADDRESS)
        if address_id:
            self.session.select_address(address_id)
        elif address is not None:
            if save:
                saved = await self.add_address(address)
                self.session.select_address(saved.id)
            else:
                self.session.set_shipping_address(address)

        self.session.submit_address()
        return self.session

    def submit_payment(self, payment_method=None) -> CheckoutSession:
        self.session.assert_step(CheckoutStep.PAYMENT)
        if payment_method is not None:
            self.session.select_payment_method(payment_method)
        self.session.submit_payment()
        return self.session

    def set_shipping_method(self, seller_id, method):
        self.session.set_shipping_method(seller_id, method)

    def set_note(self, seller_id, note):
        self.session.set_note(seller_id, note)

    def accept_terms(self, accepted=True):
        self.session.accept_terms(accepted)

    async def review(self) -> ReviewSummary:
        """Selected seller groups and overall totals, computed from the cart as it is now."""
        groups = await self.cart_store.get_selected_groups(self.session.shipping_method_map())
        totals = self.cart_store.aggregator.totals(groups, self.cart_store.cart.global_coupon)
        return ReviewSummary(groups=tuple(groups), totals=totals)

    def back(self) -> CheckoutSession:
        self.session.back()
        return self.session

    async def advance(self, step=None, **payload) -> CheckoutSession:
        """Complete the current step with ``payload`` and move on.

        ``step`` names the step the caller believes it is completing; a
        mismatch means the caller is out of date and nothing happens.
        """
        current = self.session.current_step
        if step is not None:
            try:
                expected = CheckoutStep(step)
            except ValueError as exc:
                raise InvalidCheckoutTransition({"step": [f"Unknown checkout step {step}"]}) from exc
            if expected != current:
                raise InvalidCheckoutTransition({"step": [f"Checkout is at {current.value}, not {expected.value}"]})

        if current == CheckoutStep.AUTH:
            if payload.get("user_id"):
                await self.authenticate(payload["user_id"])
            else:
                self.continue_as_guest()
        elif current == CheckoutStep.ADDRESS:
            await self.submit_address(
                address=payload.get("address"),
                address_id=payload.get("address_id"),
                save=payload.get("save_address", False),
            )
        elif current == CheckoutStep.PAYMENT:
            self.submit_payment(payload.get("payment_method"))
        elif current == CheckoutStep.REVIEW:
            for seller_id, method in (payload.get("shipping_methods") or {}).items():
                self.set_shipping_method(seller_id, method)
            for seller_id, note in (payload.get("notes") or {}).items():
                self.set_note(seller_id, note)
            if "accepted_terms" in payload:
                self.accept_terms(payload["accepted_terms"])
            await self.place_order()
        elif current == CheckoutStep.PROCESSING:
            logger.info("Checkout already processing", owner_id=self.session.owner_id)
        else:
            raise InvalidCheckoutTransition({"step": [f"Nothing to complete at {current.value}"]})

        return self.session

    # -------------------------------------------------------------------
    # Order placement
    # -------------------------------------------------------------------
    async def place_order(self) -> CheckoutSession:
        """Submit every selected seller group in one call.

        A trigger that arrives while a submission is in flight is ignored.
        """
        if self.in_flight:
            logger.info("Duplicate order submission ignored", owner_id=self.session.owner_id)
            return self.session

        self.session.assert_step(CheckoutStep.REVIEW)
        self._submitting = True
        try:
            groups = await self._prepare_submission()
            return await self._submit(groups)
        finally:
            self._submitting = False

    async def _prepare_submission(self) -> list[SellerGroup]:
        if not self.cart_store.cart.checkout_items():
            raise EmptySelection({"selection": ["Select at least one item to check out"]})

        self.session.require_terms()
        self.session.require_shipping_address()
        self.session.require_payment_method()

        dropped = await self.cart_store.revalidate_coupons()
        if dropped:
            raise InvalidCoupon(
                {scope: [f"Coupon removed: {reason}" for reason in reasons] for scope, reasons in dropped.items()}
            )

        validations, groups = await asyncio.gather(
            self.cart_store.validate_cart(selected_only=True),
            self.cart_store.get_selected_groups(self.session.shipping_method_map()),
        )

        blocked = blocking_by_seller(validations)
        for group in groups:
            if not group.is_available:
                blocked.setdefault(group.seller_id, []).append(f"{group.display_name} is currently unavailable")
        if blocked:
            logger.info("Checkout blocked", owner_id=self.session.owner_id, sellers=sorted(blocked))
            raise CheckoutBlocked(blocked)

        return groups

    def _order_request(self, group: SellerGroup, global_share: float, notes: dict) -> SellerOrderRequest:
        return SellerOrderRequest(
            seller_id=group.seller_id,
            items=tuple(
                OrderLine(
                    product_id=str(item.product_id),
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    variant_id=str(item.variant_id) if item.variant_id else None,
                )
                for item in group.items
            ),
            subtotal=group.subtotal,
            discount=to_cents(group.discount + global_share),
            tax=group.tax,
            shipping_cost=group.shipping_cost,
            total=to_cents(max(0.0, group.total - global_share)),
            shipping_method=group.shipping_method,
            notes=notes.get(group.seller_id, ""),
        )

    async def _submit(self, groups: list[SellerGroup]) -> CheckoutSession:
        totals = self.cart_store.aggregator.totals(groups, self.cart_store.cart.global_coupon)
        shares = allocate_discount(groups, totals.global_discount)
        notes = self.session.note_map()
        submission = OrderSubmission(
            owner_id=self.session.owner_id,
            shipping_address=self.session.shipping_address.to_dict(),
            payment_method=self.session.payment_method,
            groups=tuple(self._order_request(g, shares[g.seller_id], notes) for g in groups),
        )

        self.session.begin_processing()
        try:
            receipts = await self.order_service.create_orders(submission)
        except (OrderServiceError, ConnectionError, TimeoutError) as exc:
            message = str(exc) or DEFAULT_FAILURE_MESSAGE
            logger.warning("Order submission failed", owner_id=self.session.owner_id, error=message)
            self.session.fail(message)
            raise OrderSubmissionFailed({"order": [message]}) from exc
        except Exception as exc:
            logger.exception("Order service call raised", owner_id=self.session.owner_id, error=repr(exc))
            self.session.fail(DEFAULT_FAILURE_MESSAGE)
            raise OrderSubmissionFailed({"order": [DEFAULT_FAILURE_MESSAGE]}) from exc

        submitted = [item_id for group in groups for item_id in group.item_ids]
        try:
            await self.cart_store.complete_order(submitted, [g.seller_id for g in groups])
        except CartPersistenceError:
            logger.error(
                "Ordered items could not be removed from the cart",
                owner_id=self.session.owner_id,
                item_ids=submitted,
            )

        estimated = self.cart_store.pricing.estimate_delivery([g.shipping_method for g in groups])
        self.session.complete([asdict(r) for r in receipts], totals.total, estimated)

        logger.info(
            "Orders placed",
            owner_id=self.session.owner_id,
            order_numbers=[r.order_number for r in receipts],
            total=totals.total,
        )
        return self.session
