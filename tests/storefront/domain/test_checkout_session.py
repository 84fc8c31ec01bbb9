"""Tests for the CheckoutSession aggregate and its step machine."""

import json
from datetime import date

import pytest
from protean.exceptions import ValidationError

from storefront.checkout.events import CheckoutFailed, CheckoutStepChanged, OrdersPlaced, SavedAddressesChanged
from storefront.checkout.session import CheckoutSession, CheckoutStep, clean_address
from storefront.exceptions import (
    IncompleteAddress,
    InvalidCheckoutTransition,
    NoPaymentMethodSelected,
    TermsNotAccepted,
)

ADDRESS = {
    "full_name": "Ada Obi",
    "phone": "+2348000000000",
    "address_line1": "12 Marina Road",
    "city": "Lagos",
    "state": "Lagos",
    "country": "NG",
}


def _at_review():
    session = CheckoutSession.start("user-001", authenticated=True)
    session.set_shipping_address(ADDRESS)
    session.submit_address()
    session.select_payment_method("stripe")
    session.submit_payment()
    return session


class TestCleanAddress:
    def test_complete_address(self):
        cleaned = clean_address({**ADDRESS, "city": "  Lagos  "})
        assert cleaned["city"] == "Lagos"
        assert cleaned["postal_code"] is None

    def test_reports_every_missing_field(self):
        with pytest.raises(IncompleteAddress) as exc:
            clean_address({"full_name": "Ada Obi", "city": "Lagos"})
        assert set(exc.value.messages) == {"phone", "address_line1", "state", "country"}

    def test_blank_state_is_missing(self):
        with pytest.raises(IncompleteAddress) as exc:
            clean_address({**ADDRESS, "state": "   "})
        assert exc.value.messages == {"state": ["State / province is required"]}

    def test_optional_fields_may_be_empty(self):
        cleaned = clean_address({**ADDRESS, "address_line2": "", "postal_code": None})
        assert cleaned["address_line2"] is None


class TestStart:
    def test_guest_starts_at_auth(self):
        session = CheckoutSession.start("guest:abc")
        assert session.current_step == CheckoutStep.AUTH
        assert session.authenticated is False

    def test_signed_in_shopper_skips_auth(self):
        session = CheckoutSession.start("user-001", authenticated=True)
        assert session.current_step == CheckoutStep.ADDRESS


class TestTransitions:
    def test_full_forward_path(self):
        session = CheckoutSession.start("guest:abc")
        session.continue_as_guest()
        session.set_shipping_address(ADDRESS)
        session.submit_address()
        session.select_payment_method("flutterwave")
        session.submit_payment()
        session.accept_terms()
        session.begin_processing()
        receipts = [{"order_id": "o-1", "order_number": "ORD-1", "seller_id": "seller-a"}]
        session.complete(receipts, 87.0, date(2026, 3, 8))

        assert session.current_step == CheckoutStep.CONFIRMATION
        assert session.estimated_delivery == "2026-03-08"
        assert session.order_receipts()[0]["order_number"] == "ORD-1"

        steps = [(e.from_step, e.to_step) for e in session._events if isinstance(e, CheckoutStepChanged)]
        assert steps == [
            ("auth", "address"),
            ("address", "payment"),
            ("payment", "review"),
            ("review", "processing"),
            ("processing", "confirmation"),
        ]
        placed = next(e for e in session._events if isinstance(e, OrdersPlaced))
        assert json.loads(placed.orders)[0]["order_id"] == "o-1"
        assert placed.total == 87.0

    def test_authenticate_switches_owner(self):
        session = CheckoutSession.start("guest:abc")
        session.authenticate("user-001")
        assert session.owner_id == "user-001"
        assert session.authenticated is True
        assert session.current_step == CheckoutStep.ADDRESS

    def test_cannot_skip_payment(self):
        session = CheckoutSession.start("user-001", authenticated=True)
        session.set_shipping_address(ADDRESS)
        session.submit_address()
        with pytest.raises(InvalidCheckoutTransition):
            session.begin_processing()

    def test_address_required_before_payment(self):
        session = CheckoutSession.start("user-001", authenticated=True)
        with pytest.raises(IncompleteAddress):
            session.submit_address()
        assert session.current_step == CheckoutStep.ADDRESS

    def test_payment_method_required_before_review(self):
        session = CheckoutSession.start("user-001", authenticated=True)
        session.set_shipping_address(ADDRESS)
        session.submit_address()
        with pytest.raises(NoPaymentMethodSelected):
            session.submit_payment()

    def test_failure_returns_to_review(self):
        session = _at_review()
        session.begin_processing()
        session.fail("Order service unavailable")

        assert session.current_step == CheckoutStep.REVIEW
        assert session.error_message == "Order service unavailable"
        assert any(isinstance(e, CheckoutFailed) for e in session._events)

    def test_retry_clears_the_error(self):
        session = _at_review()
        session.begin_processing()
        session.fail("Order service unavailable")
        session.begin_processing()
        assert session.error_message is None

    def test_confirmation_is_terminal(self):
        session = _at_review()
        session.begin_processing()
        session.complete([], 0.0, None)
        with pytest.raises(InvalidCheckoutTransition):
            session.back()


class TestBack:
    def test_back_from_review_to_payment(self):
        session = _at_review()
        session.back()
        assert session.current_step == CheckoutStep.PAYMENT

    def test_back_keeps_entered_data(self):
        session = _at_review()
        session.back()
        session.back()
        assert session.current_step == CheckoutStep.ADDRESS
        assert session.shipping_address.city == "Lagos"
        assert session.payment_method == "stripe"

    def test_signed_in_shopper_cannot_go_back_to_auth(self):
        session = CheckoutSession.start("user-001", authenticated=True)
        with pytest.raises(InvalidCheckoutTransition):
            session.back()

    def test_guest_can_go_back_to_auth(self):
        session = CheckoutSession.start("guest:abc")
        session.continue_as_guest()
        session.back()
        assert session.current_step == CheckoutStep.AUTH

    def test_no_back_while_processing(self):
        session = _at_review()
        session.begin_processing()
        with pytest.raises(InvalidCheckoutTransition):
            session.back()


class TestChoices:
    def test_unknown_payment_method(self):
        session = CheckoutSession.start("user-001", authenticated=True)
        with pytest.raises(NoPaymentMethodSelected) as exc:
            session.select_payment_method("cash")
        assert "payment_method" in exc.value.messages

    def test_shipping_method_per_seller(self):
        session = _at_review()
        session.set_shipping_method("seller-a", "express")
        assert session.shipping_method_map() == {"seller-a": "express"}

    def test_unknown_shipping_method(self):
        session = _at_review()
        with pytest.raises(ValidationError):
            session.set_shipping_method("seller-a", "teleport")

    def test_notes_are_trimmed_and_blank_notes_dropped(self):
        session = _at_review()
        session.set_note("seller-a", "  Leave at the door ")
        session.set_note("seller-b", "note")
        session.set_note("seller-b", "   ")
        assert session.note_map() == {"seller-a": "Leave at the door"}

    def test_terms_guard(self):
        session = _at_review()
        with pytest.raises(TermsNotAccepted):
            session.require_terms()
        session.accept_terms()
        session.require_terms()

    def test_choices_locked_while_processing(self):
        session = _at_review()
        session.begin_processing()
        with pytest.raises(InvalidCheckoutTransition):
            session.select_payment_method("flutterwave")
        with pytest.raises(InvalidCheckoutTransition):
            session.set_shipping_address(ADDRESS)


class TestSavedAddresses:
    def test_first_address_is_default(self):
        session = CheckoutSession.start("user-001", authenticated=True)
        address = session.add_address(ADDRESS)
        assert address.is_default is True
        assert any(isinstance(e, SavedAddressesChanged) for e in session._events)

    def test_new_default_replaces_old(self):
        session = CheckoutSession.start("user-001", authenticated=True)
        first = session.add_address(ADDRESS)
        second = session.add_address({**ADDRESS, "city": "Abuja"}, is_default=True)
        assert first.is_default is False
        assert second.is_default is True

    def test_incomplete_address_is_not_saved(self):
        session = CheckoutSession.start("user-001", authenticated=True)
        with pytest.raises(IncompleteAddress):
            session.add_address({**ADDRESS, "state": ""})
        assert session.addresses == []

    def test_select_saved_address(self):
        session = CheckoutSession.start("user-001", authenticated=True)
        address = session.add_address(ADDRESS)
        session.select_address(address.id)
        assert str(session.selected_address_id) == str(address.id)
        assert session.shipping_address.full_name == "Ada Obi"

    def test_address_form_prefills(self):
        session = CheckoutSession.start("user-001", authenticated=True)
        address = session.add_address(ADDRESS)
        assert session.address_form(address.id)["address_line1"] == "12 Marina Road"

    def test_update_refreshes_selected_shipping_address(self):
        session = CheckoutSession.start("user-001", authenticated=True)
        address = session.add_address(ADDRESS)
        session.select_address(address.id)

        session.update_address(address.id, {"city": "Ibadan", "state": "Oyo"})

        assert session.shipping_address.city == "Ibadan"

    def test_update_cannot_blank_a_required_field(self):
        session = CheckoutSession.start("user-001", authenticated=True)
        address = session.add_address(ADDRESS)
        with pytest.raises(IncompleteAddress):
            session.update_address(address.id, {"phone": ""})
        assert session.addresses[0].phone == ADDRESS["phone"]

    def test_delete_needs_confirmation(self):
        session = CheckoutSession.start("user-001", authenticated=True)
        address = session.add_address(ADDRESS)
        with pytest.raises(ValidationError):
            session.remove_address(address.id)
        assert len(session.addresses) == 1

    def test_deleting_default_promotes_next(self):
        session = CheckoutSession.start("user-001", authenticated=True)
        first = session.add_address(ADDRESS)
        second = session.add_address({**ADDRESS, "city": "Abuja"})

        session.remove_address(first.id, confirmed=True)

        assert [str(a.id) for a in session.addresses] == [str(second.id)]
        assert session.addresses[0].is_default is True

    def test_deleting_selected_address_clears_shipping_address(self):
        session = _at_review()
        address = session.add_address({**ADDRESS, "city": "Abuja"})
        session.select_address(address.id)

        session.remove_address(address.id, confirmed=True)

        assert session.selected_address_id is None
        assert session.shipping_address is None
        with pytest.raises(IncompleteAddress):
            session.require_shipping_address()

    def test_deleting_another_address_keeps_selection(self):
        session = CheckoutSession.start("user-001", authenticated=True)
        kept = session.add_address(ADDRESS)
        other = session.add_address({**ADDRESS, "city": "Abuja"})
        session.select_address(kept.id)

        session.remove_address(other.id, confirmed=True)

        assert str(session.selected_address_id) == str(kept.id)
        assert session.shipping_address.city == "Lagos"

    def test_unknown_address(self):
        session = CheckoutSession.start("user-001", authenticated=True)
        with pytest.raises(ValidationError):
            session.select_address("missing")

    def test_addresses_record_round_trip(self):
        session = CheckoutSession.start("user-001", authenticated=True)
        address = session.add_address(ADDRESS)

        other = CheckoutSession.start("user-001", authenticated=True)
        other.load_addresses(session.addresses_record())

        assert str(other.addresses[0].id) == str(address.id)
        assert other.addresses[0].is_default is True
