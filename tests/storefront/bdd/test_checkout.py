"""BDD tests for checkout and order placement."""

import asyncio

from protean.exceptions import ValidationError
from pytest_bdd import scenarios, when

scenarios("features/checkout.feature")


# ---------------------------------------------------------------------------
# When steps
# ---------------------------------------------------------------------------
@when("the order is placed")
def place_order(flow, error):
    try:
        asyncio.run(flow.place_order())
    except ValidationError as exc:
        error["exc"] = exc


@when("the shopper submits an address without a state")
def submit_incomplete_address(flow, address, error):
    try:
        asyncio.run(flow.submit_address({**address, "state": ""}))
    except ValidationError as exc:
        error["exc"] = exc
