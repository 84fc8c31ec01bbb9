"""Checkout Session aggregate — one pass through the checkout steps.

A session lives only as long as one checkout attempt. It records what the
shopper has entered so far and which step they are on; cart contents and
totals are always read live from the cart store, never copied here.

State Machine:
    AUTH → ADDRESS → PAYMENT → REVIEW → PROCESSING → CONFIRMATION
    PROCESSING → ERROR → REVIEW (order service failed, shopper may retry)
    back(): ADDRESS → AUTH (guests only), PAYMENT → ADDRESS, REVIEW → PAYMENT

AUTH is skipped for sessions that start with a signed-in shopper.
"""

import json
from datetime import UTC, datetime
from enum import Enum

from protean.exceptions import ValidationError
from protean.fields import Boolean, DateTime, HasMany, Identifier, String, Text, ValueObject

from storefront.cart.pricing import ShippingMethod
from storefront.checkout.events import CheckoutFailed, CheckoutStepChanged, OrdersPlaced, SavedAddressesChanged
from storefront.domain import storefront
from storefront.exceptions import (
    IncompleteAddress,
    InvalidCheckoutTransition,
    NoPaymentMethodSelected,
    TermsNotAccepted,
)


class CheckoutStep(Enum):
    AUTH = "auth"
    ADDRESS = "address"
    PAYMENT = "payment"
    REVIEW = "review"
    PROCESSING = "processing"
    CONFIRMATION = "confirmation"
    ERROR = "error"


class PaymentMethod(Enum):
    STRIPE = "stripe"
    FLUTTERWAVE = "flutterwave"


_VALID_TRANSITIONS = {
    CheckoutStep.AUTH: {CheckoutStep.ADDRESS},
    CheckoutStep.ADDRESS: {CheckoutStep.PAYMENT, CheckoutStep.AUTH},
    CheckoutStep.PAYMENT: {CheckoutStep.REVIEW, CheckoutStep.ADDRESS},
    CheckoutStep.REVIEW: {CheckoutStep.PROCESSING, CheckoutStep.PAYMENT},
    CheckoutStep.PROCESSING: {CheckoutStep.CONFIRMATION, CheckoutStep.ERROR},
    CheckoutStep.ERROR: {CheckoutStep.REVIEW},
    CheckoutStep.CONFIRMATION: set(),  # Terminal
}

_PREVIOUS_STEP = {
    CheckoutStep.ADDRESS: CheckoutStep.AUTH,
    CheckoutStep.PAYMENT: CheckoutStep.ADDRESS,
    CheckoutStep.REVIEW: CheckoutStep.PAYMENT,
    CheckoutStep.ERROR: CheckoutStep.REVIEW,
}

# Steps after which nothing the shopper entered may change
_LOCKED_STEPS = {CheckoutStep.PROCESSING, CheckoutStep.CONFIRMATION}

REQUIRED_ADDRESS_FIELDS = ("full_name", "phone", "address_line1", "city", "state", "country")
OPTIONAL_ADDRESS_FIELDS = ("address_line2", "postal_code")
ADDRESS_FIELDS = REQUIRED_ADDRESS_FIELDS + OPTIONAL_ADDRESS_FIELDS

_FIELD_LABELS = {
    "full_name": "Full name",
    "phone": "Phone number",
    "address_line1": "Address line 1",
    "city": "City",
    "state": "State / province",
    "country": "Country",
}


def clean_address(data: dict | None) -> dict:
    """Strip every address field and check the required ones.

    Raises IncompleteAddress naming each missing field.
    """
    data = data or {}
    cleaned = {}
    for field_name in ADDRESS_FIELDS:
        value = data.get(field_name)
        cleaned[field_name] = str(value).strip() if value is not None else ""

    missing = {
        field_name: [f"{_FIELD_LABELS[field_name]} is required"]
        for field_name in REQUIRED_ADDRESS_FIELDS
        if not cleaned[field_name]
    }
    if missing:
        raise IncompleteAddress(missing)

    return {name: value or None for name, value in cleaned.items()}


# ---------------------------------------------------------------------------
# Value Objects
# ---------------------------------------------------------------------------
@storefront.value_object(part_of="CheckoutSession")
class ShippingAddress:
    """Where the orders from this checkout are delivered.

    Completeness is checked by ``clean_address`` rather than by required
    fields, so that every missing field is reported at once.
    """

    full_name = String(max_length=255)
    phone = String(max_length=50)
    address_line1 = String(max_length=255)
    address_line2 = String(max_length=255)
    city = String(max_length=100)
    state = String(max_length=100)
    postal_code = String(max_length=20)
    country = String(max_length=100)

    def to_dict(self) -> dict:
        return {name: getattr(self, name) for name in ADDRESS_FIELDS}


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------
@storefront.entity(part_of="CheckoutSession")
class SavedAddress:
    full_name = String(max_length=255)
    phone = String(max_length=50)
    address_line1 = String(max_length=255)
    address_line2 = String(max_length=255)
    city = String(max_length=100)
    state = String(max_length=100)
    postal_code = String(max_length=20)
    country = String(max_length=100)
    is_default = Boolean(default=False)

    def to_dict(self) -> dict:
        return {name: getattr(self, name) for name in ADDRESS_FIELDS}

    def to_shipping_address(self) -> ShippingAddress:
        return ShippingAddress(**self.to_dict())


# ---------------------------------------------------------------------------
# Aggregate Root
# ---------------------------------------------------------------------------
@storefront.aggregate
class CheckoutSession:
    owner_id = String(required=True, max_length=255)
    step = String(choices=CheckoutStep, default=CheckoutStep.AUTH.value)
    authenticated = Boolean(default=False)
    addresses = HasMany(SavedAddress)
    selected_address_id = Identifier()
    shipping_address = ValueObject(ShippingAddress)
    payment_method = String(choices=PaymentMethod)
    shipping_methods = Text()  # JSON object: seller id -> shipping method
    notes = Text()  # JSON object: seller id -> note for the seller
    accepted_terms = Boolean(default=False)
    error_message = Text()
    orders = Text()  # JSON list of {order_id, order_number, seller_id}
    estimated_delivery = String(max_length=10)  # ISO date string
    started_at = DateTime()
    updated_at = DateTime()

    @classmethod
    def start(cls, owner_id, authenticated=False):
        now = datetime.now(UTC)
        step = CheckoutStep.ADDRESS if authenticated else CheckoutStep.AUTH
        return cls(
            owner_id=str(owner_id),
            step=step.value,
            authenticated=authenticated,
            shipping_methods=json.dumps({}),
            notes=json.dumps({}),
            started_at=now,
            updated_at=now,
        )

    # -------------------------------------------------------------------
    # State transitions
    # -------------------------------------------------------------------
    @property
    def current_step(self) -> CheckoutStep:
        return CheckoutStep(self.step)

    def _transition(self, target: CheckoutStep):
        current = self.current_step
        if target not in _VALID_TRANSITIONS.get(current, set()):
            raise InvalidCheckoutTransition({"step": [f"Cannot move from {current.value} to {target.value}"]})

        self.step = target.value
        self.updated_at = datetime.now(UTC)
        self.raise_(CheckoutStepChanged(owner_id=self.owner_id, from_step=current.value, to_step=target.value))

    def assert_step(self, *steps: CheckoutStep):
        if self.current_step not in steps:
            expected = " or ".join(s.value for s in steps)
            raise InvalidCheckoutTransition(
                {"step": [f"Expected checkout to be at {expected}, but it is at {self.step}"]}
            )

    def _assert_editable(self):
        if self.current_step in _LOCKED_STEPS:
            raise InvalidCheckoutTransition({"step": [f"Checkout can no longer be changed at {self.step}"]})

    def authenticate(self, user_id):
        self.assert_step(CheckoutStep.AUTH)
        self.owner_id = str(user_id)
        self.authenticated = True
        self._transition(CheckoutStep.ADDRESS)

    def continue_as_guest(self):
        self.assert_step(CheckoutStep.AUTH)
        self._transition(CheckoutStep.ADDRESS)

    def submit_address(self):
        self.assert_step(CheckoutStep.ADDRESS)
        self.require_shipping_address()
        self._transition(CheckoutStep.PAYMENT)

    def submit_payment(self):
        self.assert_step(CheckoutStep.PAYMENT)
        self.require_payment_method()
        self._transition(CheckoutStep.REVIEW)

    def begin_processing(self):
        self.assert_step(CheckoutStep.REVIEW)
        self.error_message = None
        self._transition(CheckoutStep.PROCESSING)

    def complete(self, receipts: list[dict], total: float, estimated_delivery):
        self.orders = json.dumps(receipts)
        self.estimated_delivery = estimated_delivery.isoformat() if estimated_delivery else None
        self._transition(CheckoutStep.CONFIRMATION)
        self.raise_(
            OrdersPlaced(
                owner_id=self.owner_id,
                orders=self.orders,
                total=total,
                estimated_delivery=self.estimated_delivery,
            )
        )

    def fail(self, message: str):
        """Record a failed submission and hand the shopper back to review."""
        self.error_message = message
        self._transition(CheckoutStep.ERROR)
        self.raise_(CheckoutFailed(owner_id=self.owner_id, reason=message))
        self._transition(CheckoutStep.REVIEW)

    def back(self):
        current = self.current_step
        previous = _PREVIOUS_STEP.get(current)
        if previous is None or (previous == CheckoutStep.AUTH and self.authenticated):
            raise InvalidCheckoutTransition({"step": [f"Cannot go back from {current.value}"]})
        self._transition(previous)

    # -------------------------------------------------------------------
    # Guards
    # -------------------------------------------------------------------
    def require_shipping_address(self):
        """The chosen address must still be complete, state included."""
        if self.shipping_address is None:
            raise IncompleteAddress({"shipping_address": ["Add a shipping address"]})
        clean_address(self.shipping_address.to_dict())

    def require_payment_method(self):
        if not self.payment_method:
            raise NoPaymentMethodSelected({"payment_method": ["Select a payment method"]})

    def require_terms(self):
        if not self.accepted_terms:
            raise TermsNotAccepted({"accepted_terms": ["You must accept the terms and conditions"]})

    # -------------------------------------------------------------------
    # Shipping address
    # -------------------------------------------------------------------
    def set_shipping_address(self, data: dict) -> ShippingAddress:
        self._assert_editable()
        self.shipping_address = ShippingAddress(**clean_address(data))
        self.selected_address_id = None
        self.updated_at = datetime.now(UTC)
        return self.shipping_address

    def select_address(self, address_id) -> ShippingAddress:
        self._assert_editable()
        address = self._get_address(address_id)
        self.shipping_address = address.to_shipping_address()
        self.selected_address_id = address.id
        self.updated_at = datetime.now(UTC)
        return self.shipping_address

    # -------------------------------------------------------------------
    # Saved addresses
    # -------------------------------------------------------------------
    def _get_address(self, address_id) -> SavedAddress:
        address = next((a for a in self.addresses if str(a.id) == str(address_id)), None)
        if address is None:
            raise ValidationError({"address_id": [f"Address {address_id} not found"]})
        return address

    def add_address(self, data: dict, is_default=False) -> SavedAddress:
        cleaned = clean_address(data)

        # First address is always default
        if not self.addresses:
            is_default = True
        if is_default:
            for addr in self.addresses:
                addr.is_default = False

        address = SavedAddress(**cleaned, is_default=is_default)
        self.add_addresses(address)
        self.raise_(SavedAddressesChanged(owner_id=self.owner_id, address_id=str(address.id), change="added"))
        return address

    def address_form(self, address_id) -> dict:
        """Current values of a saved address, for pre-filling the edit form."""
        return self._get_address(address_id).to_dict()

    def update_address(self, address_id, data: dict) -> SavedAddress:
        address = self._get_address(address_id)
        cleaned = clean_address({**address.to_dict(), **data})
        for name, value in cleaned.items():
            setattr(address, name, value)

        if str(self.selected_address_id or "") == str(address.id) and self.current_step not in _LOCKED_STEPS:
            self.shipping_address = address.to_shipping_address()

        self.raise_(SavedAddressesChanged(owner_id=self.owner_id, address_id=str(address.id), change="updated"))
        return address

    def remove_address(self, address_id, confirmed=False):
        address = self._get_address(address_id)
        if not confirmed:
            raise ValidationError({"address_id": ["Confirm that this address should be deleted"]})

        was_default = address.is_default
        self.remove_addresses(address)
        if was_default and self.addresses:
            self.addresses[0].is_default = True
        if str(self.selected_address_id or "") == str(address_id):
            self.selected_address_id = None
            if self.current_step not in _LOCKED_STEPS:
                self.shipping_address = None

        self.raise_(SavedAddressesChanged(owner_id=self.owner_id, address_id=str(address_id), change="removed"))

    def addresses_record(self) -> list[dict]:
        return [{"id": str(a.id), "is_default": bool(a.is_default), **a.to_dict()} for a in self.addresses]

    def replace_addresses(self, records: list[dict]):
        for address in list(self.addresses):
            self.remove_addresses(address)
        self.load_addresses(records)

    def load_addresses(self, records: list[dict]):
        for record in records:
            self.add_addresses(
                SavedAddress(
                    id=record["id"],
                    is_default=record.get("is_default", False),
                    **{name: record.get(name) for name in ADDRESS_FIELDS},
                )
            )

    # -------------------------------------------------------------------
    # Payment and review choices
    # -------------------------------------------------------------------
    def select_payment_method(self, method):
        self._assert_editable()
        if not method:
            raise NoPaymentMethodSelected({"payment_method": ["Select a payment method"]})
        allowed = [m.value for m in PaymentMethod]
        if method not in allowed:
            raise NoPaymentMethodSelected(
                {"payment_method": [f"Unsupported payment method {method}; choose one of {', '.join(allowed)}"]}
            )
        self.payment_method = method

    def shipping_method_map(self) -> dict[str, str]:
        return json.loads(self.shipping_methods) if self.shipping_methods else {}

    def set_shipping_method(self, seller_id, method):
        self._assert_editable()
        allowed = [m.value for m in ShippingMethod]
        if method not in allowed:
            raise ValidationError({"shipping_method": [f"Unknown shipping method {method}"]})
        methods = self.shipping_method_map()
        methods[str(seller_id)] = method
        self.shipping_methods = json.dumps(methods)

    def note_map(self) -> dict[str, str]:
        return json.loads(self.notes) if self.notes else {}

    def set_note(self, seller_id, note):
        self._assert_editable()
        notes = self.note_map()
        if note and note.strip():
            notes[str(seller_id)] = note.strip()
        else:
            notes.pop(str(seller_id), None)
        self.notes = json.dumps(notes)

    def accept_terms(self, accepted=True):
        self._assert_editable()
        self.accepted_terms = bool(accepted)

    def order_receipts(self) -> list[dict]:
        return json.loads(self.orders) if self.orders else []
