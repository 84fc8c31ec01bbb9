"""Integration tests for Checkout API endpoints via TestClient."""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from protean.integrations.fastapi import register_exception_handlers

from storefront.api import cart_router, checkout_router, routes
from storefront.checkout.session import CheckoutStep
from storefront.integrations import CATALOG, COUPONS, ORDERS, SELLERS, STORAGE, set_adapter

ADDRESS = {
    "full_name": "Ada Obi",
    "phone": "+2348000000000",
    "address_line1": "12 Marina Road",
    "city": "Lagos",
    "state": "Lagos",
    "country": "NG",
}


@pytest.fixture()
def client(catalog, sellers, coupons, orders, storage):
    set_adapter(CATALOG, catalog)
    set_adapter(SELLERS, sellers)
    set_adapter(COUPONS, coupons)
    set_adapter(ORDERS, orders)
    set_adapter(STORAGE, storage)

    app = FastAPI()
    app.include_router(cart_router)
    app.include_router(checkout_router)
    register_exception_handlers(app)
    return TestClient(app)


def _fill_cart(client, owner_id="user-001"):
    for product_id, quantity in (("prod-mug", 2), ("prod-lamp", 1)):
        response = client.post(f"/carts/{owner_id}/items", json={"product_id": product_id, "quantity": quantity})
        assert response.status_code == 201


def _start(client, owner_id="user-001"):
    response = client.post(f"/checkout/{owner_id}")
    assert response.status_code == 201
    return response.json()


def _to_review(client, owner_id="user-001"):
    client.post(f"/checkout/{owner_id}/advance", json={"step": "address", "address": ADDRESS})
    response = client.post(f"/checkout/{owner_id}/advance", json={"step": "payment", "payment_method": "stripe"})
    assert response.json()["step"] == "review"


class TestStartCheckout:
    def test_signed_in_owner_starts_at_address(self, client):
        _fill_cart(client)
        assert _start(client)["step"] == "address"

    def test_guest_starts_at_auth(self, client):
        _fill_cart(client, "guest:abc")
        data = _start(client, "guest:abc")
        assert data["step"] == "auth"
        assert data["authenticated"] is False

    def test_no_checkout_in_progress(self, client):
        assert client.get("/checkout/user-001").status_code == 404


class TestAdvance:
    def test_walk_to_confirmation(self, client, orders):
        _fill_cart(client)
        _start(client)
        _to_review(client)

        response = client.post(
            "/checkout/user-001/advance",
            json={
                "step": "review",
                "shipping_methods": {"seller-b": "express"},
                "notes": {"seller-a": "Leave at the door"},
                "accepted_terms": True,
            },
        )

        data = response.json()
        assert response.status_code == 200
        assert data["step"] == "confirmation"
        assert len(data["orders"]) == 2
        assert data["estimated_delivery"] is not None
        assert client.get("/carts/user-001").json()["items"] == []
        assert len(orders.submissions) == 1

    def test_incomplete_address_is_400(self, client):
        _fill_cart(client)
        _start(client)

        response = client.post(
            "/checkout/user-001/advance",
            json={"step": "address", "address": {**ADDRESS, "state": ""}},
        )

        assert response.status_code == 400
        assert client.get("/checkout/user-001").json()["step"] == "address"

    def test_stale_step_is_400(self, client):
        _fill_cart(client)
        _start(client)
        response = client.post("/checkout/user-001/advance", json={"step": "review"})
        assert response.status_code == 400

    def test_guest_signs_in_during_checkout(self, client):
        _fill_cart(client, "guest:abc")
        _start(client, "guest:abc")

        response = client.post("/checkout/guest:abc/advance", json={"step": "auth", "user_id": "user-001"})

        assert response.json()["owner_id"] == "user-001"
        assert response.json()["step"] == "address"
        assert client.get("/checkout/user-001").json()["authenticated"] is True
        assert len(client.get("/carts/user-001").json()["items"]) == 2

    def test_back(self, client):
        _fill_cart(client)
        _start(client)
        _to_review(client)

        response = client.post("/checkout/user-001/back")

        assert response.json()["step"] == "payment"


class TestReviewAndPlaceOrder:
    def test_review(self, client):
        _fill_cart(client)
        _start(client)
        _to_review(client)

        data = client.get("/checkout/user-001/review").json()

        assert data["totals"]["total"] == 87.0
        assert {g["seller_id"] for g in data["groups"]} == {"seller-a", "seller-b"}

    def test_order_failure_returns_to_review(self, client, orders):
        _fill_cart(client)
        _start(client)
        _to_review(client)
        orders.configure(should_succeed=False, failure_reason="Payment gateway timeout")

        response = client.post(
            "/checkout/user-001/advance",
            json={"step": "review", "accepted_terms": True},
        )

        assert response.status_code == 400
        session = client.get("/checkout/user-001").json()
        assert session["step"] == "review"
        assert session["error_message"] == "Payment gateway timeout"
        assert len(client.get("/carts/user-001").json()["items"]) == 2

    def test_place_order_requires_terms(self, client, orders):
        _fill_cart(client)
        _start(client)
        _to_review(client)

        response = client.post("/checkout/user-001/place-order")

        assert response.status_code == 400
        assert orders.submissions == []


class TestAddressEndpoints:
    def test_saved_address_lifecycle(self, client, storage):
        _fill_cart(client)
        _start(client)

        response = client.post("/checkout/user-001/addresses", json={"address": ADDRESS})
        assert response.status_code == 201
        address_id = response.json()["address_id"]
        assert response.json()["is_default"] is True

        assert client.get(f"/checkout/user-001/addresses/{address_id}").json()["city"] == "Lagos"

        response = client.put(f"/checkout/user-001/addresses/{address_id}", json={"city": "Abuja", "state": "FCT"})
        assert response.json()["city"] == "Abuja"

        assert client.delete(f"/checkout/user-001/addresses/{address_id}").status_code == 400
        response = client.delete(f"/checkout/user-001/addresses/{address_id}", params={"confirmed": True})
        assert response.status_code == 200
        assert client.get("/checkout/user-001").json()["addresses"] == []

    def test_saved_default_is_preselected_next_time(self, client):
        _fill_cart(client)
        _start(client)
        client.post("/checkout/user-001/addresses", json={"address": ADDRESS})

        data = _start(client)

        assert data["selected_address_id"] is not None
        assert data["shipping_address"]["city"] == "Lagos"

    def test_incomplete_saved_address(self, client):
        _fill_cart(client)
        _start(client)
        response = client.post("/checkout/user-001/addresses", json={"address": {"full_name": "Ada Obi"}})
        assert response.status_code == 400


class TestCheckoutRegistry:
    def test_confirmed_checkout_is_released(self, client):
        _fill_cart(client)
        _start(client)
        _to_review(client)

        response = client.post("/checkout/user-001/advance", json={"step": "review", "accepted_terms": True})

        assert response.json()["step"] == "confirmation"
        assert "user-001" not in routes._flows
        assert client.get("/checkout/user-001").status_code == 404

    def test_place_order_endpoint_releases_checkout(self, client):
        _fill_cart(client)
        _start(client)
        _to_review(client)
        routes.get_checkout("user-001").accept_terms()

        response = client.post("/checkout/user-001/place-order")

        assert response.json()["step"] == "confirmation"
        assert client.get("/checkout/user-001").status_code == 404

    def test_failed_order_keeps_checkout(self, client, orders):
        _fill_cart(client)
        _start(client)
        _to_review(client)
        orders.configure(should_succeed=False)

        client.post("/checkout/user-001/advance", json={"step": "review", "accepted_terms": True})

        assert client.get("/checkout/user-001").json()["step"] == "review"

    def test_checkout_in_flight_is_not_replaced(self, client, orders):
        _fill_cart(client)
        _start(client)
        _to_review(client)
        flow = routes.get_checkout("user-001")
        flow.accept_terms()
        flow.session.begin_processing()

        response = client.post("/checkout/user-001")

        assert response.status_code == 400
        assert routes.get_checkout("user-001") is flow
        assert flow.step == CheckoutStep.PROCESSING
        assert orders.submissions == []

    def test_idle_carts_are_evicted_but_checkouts_kept(self, client, monkeypatch):
        monkeypatch.setenv("STOREFRONT_MAX_OPEN_CARTS", "2")
        _fill_cart(client, "user-001")
        _start(client, "user-001")
        _fill_cart(client, "guest:a")
        _fill_cart(client, "guest:b")

        assert list(routes._stores) == ["user-001", "guest:b"]

        # Evicted carts come back from storage
        assert len(client.get("/carts/guest:a").json()["items"]) == 2
