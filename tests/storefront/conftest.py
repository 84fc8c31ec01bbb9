import pytest
from protean.integrations.pytest import DomainFixture

from storefront.cart.pricing import PricingConfig
from storefront.cart.store import CartStore
from storefront.integrations.catalog_port import CatalogProduct, CatalogVariant
from storefront.integrations.coupon_port import DiscountType
from storefront.integrations.fake_catalog import FakeCatalog
from storefront.integrations.fake_coupons import CouponRecord, FakeCouponService
from storefront.integrations.fake_orders import FakeOrderService
from storefront.integrations.fake_sellers import FakeSellerDirectory
from storefront.integrations.memory_storage import InMemoryCartStorage
from storefront.integrations.seller_port import SellerProfile


@pytest.fixture(scope="session")
def storefront_bed():
    from storefront.domain import storefront

    bed = DomainFixture(storefront)
    bed.setup()
    yield bed
    bed.teardown()


@pytest.fixture(autouse=True)
def _ctx(storefront_bed):
    with storefront_bed.domain_context():
        yield


# ---------------------------------------------------------------------------
# Catalog data
# ---------------------------------------------------------------------------
@pytest.fixture()
def mug():
    return CatalogProduct(
        product_id="prod-mug",
        title="Ceramic Mug",
        price=10.0,
        stock_quantity=10,
        seller_id="seller-a",
    )


@pytest.fixture()
def tshirt():
    return CatalogProduct(
        product_id="prod-tshirt",
        title="T-Shirt",
        price=20.0,
        stock_quantity=30,
        seller_id="seller-a",
        variants=(
            CatalogVariant(variant_id="var-s", name="Small", price=18.0, stock_quantity=5),
            CatalogVariant(variant_id="var-xl", name="XL", price=24.0, stock_quantity=2),
        ),
    )


@pytest.fixture()
def lamp():
    return CatalogProduct(
        product_id="prod-lamp",
        title="Desk Lamp",
        price=50.0,
        stock_quantity=4,
        seller_id="seller-b",
    )


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------
@pytest.fixture()
def catalog(mug, tshirt, lamp):
    return FakeCatalog([mug, tshirt, lamp])


@pytest.fixture()
def sellers():
    return FakeSellerDirectory(
        [
            SellerProfile(seller_id="seller-a", display_name="Acme Goods"),
            SellerProfile(seller_id="seller-b", display_name="Bright Lights"),
        ]
    )


@pytest.fixture()
def coupons():
    return FakeCouponService(
        [
            CouponRecord(code="SAVE20", discount_type=DiscountType.PERCENTAGE, discount_value=20, max_discount=50.0),
            CouponRecord(code="TENOFF", discount_type=DiscountType.PERCENTAGE, discount_value=10),
            CouponRecord(code="FIVER", discount_type=DiscountType.ABSOLUTE, discount_value=5.0),
        ]
    )


@pytest.fixture()
def orders():
    return FakeOrderService()


@pytest.fixture()
def storage():
    return InMemoryCartStorage()


@pytest.fixture()
def pricing():
    return PricingConfig()


@pytest.fixture()
def make_store(catalog, sellers, coupons, storage, pricing):
    def _make(owner_id="user-001"):
        return CartStore(
            owner_id,
            catalog=catalog,
            sellers=sellers,
            coupons=coupons,
            storage=storage,
            pricing=pricing,
        )

    return _make


@pytest.fixture()
def store(make_store):
    return make_store()
