"""Pydantic request/response schemas for the Storefront API.

These are external contracts — separate from the cart and checkout
aggregates, which never leave the process as-is.
"""

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Shared sub-models
# ---------------------------------------------------------------------------
class CouponSchema(BaseModel):
    code: str
    discount_amount: float


class AddressSchema(BaseModel):
    full_name: str | None = None
    phone: str | None = None
    address_line1: str | None = None
    address_line2: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None


class StatusResponse(BaseModel):
    status: str = "ok"


# ---------------------------------------------------------------------------
# Cart Request Schemas
# ---------------------------------------------------------------------------
class AddItemRequest(BaseModel):
    product_id: str
    variant_id: str | None = None
    quantity: int = Field(ge=1, default=1)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "product_id": "prod-001",
                    "variant_id": None,
                    "quantity": 2,
                }
            ]
        }
    }


class UpdateQuantityRequest(BaseModel):
    quantity: int = Field(ge=1)


class ApplyCouponRequest(BaseModel):
    coupon_code: str
    seller_id: str | None = None
    subtotal: float | None = Field(default=None, ge=0)


class AutoApplyCouponRequest(BaseModel):
    seller_id: str | None = None


class SelectionRequest(BaseModel):
    selected: bool = True


class AdoptCartRequest(BaseModel):
    user_id: str


# ---------------------------------------------------------------------------
# Cart Response Schemas
# ---------------------------------------------------------------------------
class CartItemResponse(BaseModel):
    item_id: str
    product_id: str
    variant_id: str | None = None
    seller_id: str | None = None
    title: str | None = None
    quantity: int
    unit_price: float
    line_total: float
    saved_for_later: bool = False
    selected: bool = True
    stock_advisory: str | None = None


class CartResponse(BaseModel):
    owner_id: str
    items: list[CartItemResponse] = []
    saved_items: list[CartItemResponse] = []
    global_coupon: CouponSchema | None = None
    seller_coupons: dict[str, CouponSchema] = {}


class SellerGroupResponse(BaseModel):
    seller_id: str
    display_name: str
    item_ids: list[str]
    subtotal: float
    discount: float
    subtotal_after_discount: float
    tax: float
    shipping_method: str
    shipping_cost: float
    total: float
    is_available: bool
    selected: bool = True
    warnings: list[str] = []
    coupon: CouponSchema | None = None


class CartTotalsResponse(BaseModel):
    subtotal: float
    seller_discount: float
    global_discount: float
    tax: float
    shipping: float
    total: float
    item_count: int
    amount_to_free_shipping: float
    group_count: int
    warnings: list[str] = []


class CartValidationResponse(BaseModel):
    item_id: str
    product_id: str
    variant_id: str | None = None
    seller_id: str | None = None
    is_valid: bool
    price_changed: bool
    stock_changed: bool
    unavailable: bool
    current_price: float | None = None
    current_stock: int | None = None
    warnings: list[str] = []


class RemovedItemsResponse(BaseModel):
    removed_item_ids: list[str]


class AdoptCartResponse(BaseModel):
    owner_id: str
    merged_items: int


# ---------------------------------------------------------------------------
# Checkout Schemas
# ---------------------------------------------------------------------------
class SaveAddressRequest(BaseModel):
    address: AddressSchema
    is_default: bool = False


class AdvanceRequest(BaseModel):
    step: str | None = None
    user_id: str | None = None
    address: AddressSchema | None = None
    address_id: str | None = None
    save_address: bool = False
    payment_method: str | None = None
    shipping_methods: dict[str, str] = {}
    notes: dict[str, str] = {}
    accepted_terms: bool | None = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"step": "payment", "payment_method": "stripe"},
                {
                    "step": "review",
                    "shipping_methods": {"seller-001": "express"},
                    "notes": {"seller-001": "Leave at the door"},
                    "accepted_terms": True,
                },
            ]
        }
    }


class SavedAddressResponse(AddressSchema):
    address_id: str
    is_default: bool = False


class OrderReceiptSchema(BaseModel):
    order_id: str
    order_number: str
    seller_id: str | None = None


class CheckoutSessionResponse(BaseModel):
    owner_id: str
    step: str
    authenticated: bool
    shipping_address: AddressSchema | None = None
    selected_address_id: str | None = None
    payment_method: str | None = None
    shipping_methods: dict[str, str] = {}
    notes: dict[str, str] = {}
    accepted_terms: bool = False
    error_message: str | None = None
    orders: list[OrderReceiptSchema] = []
    estimated_delivery: str | None = None
    addresses: list[SavedAddressResponse] = []


class ReviewResponse(BaseModel):
    groups: list[SellerGroupResponse]
    totals: CartTotalsResponse
