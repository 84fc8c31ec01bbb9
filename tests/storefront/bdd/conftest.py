"""Shared BDD fixtures and step definitions for carts and checkout."""

import asyncio

import pytest
from protean.exceptions import ValidationError
from pytest_bdd import given, parsers, then

from storefront.checkout.flow import CheckoutStateMachine
from storefront.checkout.session import CheckoutStep

ADDRESS = {
    "full_name": "Ada Obi",
    "phone": "+2348000000000",
    "address_line1": "12 Marina Road",
    "city": "Lagos",
    "state": "Lagos",
    "country": "NG",
}


@pytest.fixture()
def error():
    """Container for captured validation errors."""
    return {"exc": None}


@pytest.fixture()
def address():
    return dict(ADDRESS)


def _lines(store):
    return store.cart.active_items


# ---------------------------------------------------------------------------
# Given steps — Cart
# ---------------------------------------------------------------------------
@given(parsers.cfparse('{quantity:d} of "{product_id}" is in the cart'))
@given(parsers.cfparse('{quantity:d} of "{product_id}" are in the cart'))
def item_in_cart(store, catalog, quantity, product_id):
    asyncio.run(store.add_item(catalog.products[product_id], quantity=quantity))


@given("cart storage is failing")
def storage_failing(storage):
    storage.configure(should_fail=True)


@given(parsers.cfparse('the stock of "{product_id}" drops to {stock:d}'))
def stock_drops(catalog, product_id, stock):
    catalog.update(product_id, stock_quantity=stock)


@given(parsers.cfparse('seller "{seller_id}" is deselected'))
def seller_deselected(store, seller_id):
    asyncio.run(store.select_seller(seller_id, selected=False))


# ---------------------------------------------------------------------------
# Given steps — Checkout
# ---------------------------------------------------------------------------
@given("a checkout has started", target_fixture="flow")
def checkout_started(store, orders):
    flow = CheckoutStateMachine(store, orders)
    asyncio.run(flow.start())
    return flow


@given(parsers.cfparse('the shopper has reached review paying with "{method}"'))
def reached_review(flow, address, method):
    asyncio.run(flow.submit_address(address))
    flow.submit_payment(method)
    assert flow.step == CheckoutStep.REVIEW


@given("the terms are accepted")
def terms_accepted(flow):
    flow.accept_terms()


@given(parsers.cfparse('the order service is failing with "{reason}"'))
def order_service_failing(orders, reason):
    orders.configure(should_succeed=False, failure_reason=reason)


# ---------------------------------------------------------------------------
# Then steps — Cart
# ---------------------------------------------------------------------------
@then(parsers.cfparse("the cart has {count:d} line"))
@then(parsers.cfparse("the cart has {count:d} lines"))
def cart_line_count(store, count):
    assert len(_lines(store)) == count


@then("the cart has no active lines")
def cart_empty(store):
    assert _lines(store) == []


@then(parsers.cfparse('the quantity of "{product_id}" is {quantity:d}'))
def line_quantity(store, product_id, quantity):
    line = next(i for i in _lines(store) if str(i.product_id) == product_id)
    assert line.quantity == quantity


@then("the cart action fails with a validation error")
def cart_action_fails(error):
    assert error["exc"] is not None, "Expected a validation error but none was raised"
    assert isinstance(error["exc"], ValidationError)


@then(parsers.cfparse('the cart action fails with "{message}"'))
@then(parsers.cfparse('the checkout fails with "{message}"'))
def action_fails_with(error, message):
    assert error["exc"] is not None, "Expected a validation error but none was raised"
    messages = [m for msgs in error["exc"].messages.values() for m in msgs]
    assert message in messages, f"{message!r} not in {messages}"


# ---------------------------------------------------------------------------
# Then steps — Checkout
# ---------------------------------------------------------------------------
@then(parsers.cfparse('the checkout is at "{step}"'))
def checkout_at(flow, step):
    assert flow.step.value == step


@then(parsers.cfparse('one submission covered sellers "{seller_ids}"'))
def one_submission(orders, seller_ids):
    assert len(orders.submissions) == 1
    expected = [s.strip() for s in seller_ids.split(",")]
    assert sorted(g.seller_id for g in orders.submissions[0].groups) == expected


@then("no orders were submitted")
def no_submission(orders):
    assert orders.submissions == []
