"""Integration adapter registry — catalog, sellers, coupons, orders and cart storage.

Provides singleton access to the adapters used by the HTTP layer. Fake
adapters are used by default; real clients can be installed with
``set_adapter`` at startup. Domain code never reads this registry: stores and
checkout flows receive their collaborators explicitly.
"""

_adapter_instances: dict[str, object] = {}

CATALOG = "catalog"
SELLERS = "sellers"
COUPONS = "coupons"
ORDERS = "orders"
STORAGE = "storage"


def get_adapter(kind: str):
    """Return the configured adapter for ``kind`` (singleton per kind)."""
    if kind not in _adapter_instances:
        if kind == CATALOG:
            from storefront.integrations.fake_catalog import FakeCatalog

            _adapter_instances[kind] = FakeCatalog()
        elif kind == SELLERS:
            from storefront.integrations.fake_sellers import FakeSellerDirectory

            _adapter_instances[kind] = FakeSellerDirectory()
        elif kind == COUPONS:
            from storefront.integrations.fake_coupons import DEMO_COUPONS, FakeCouponService

            _adapter_instances[kind] = FakeCouponService(DEMO_COUPONS)
        elif kind == ORDERS:
            from storefront.integrations.fake_orders import FakeOrderService

            _adapter_instances[kind] = FakeOrderService()
        elif kind == STORAGE:
            from storefront.integrations.memory_storage import InMemoryCartStorage

            _adapter_instances[kind] = InMemoryCartStorage()
        else:
            raise ValueError(f"Unknown adapter kind: {kind}")

    return _adapter_instances[kind]


def set_adapter(kind: str, adapter) -> None:
    """Override the adapter for ``kind`` (useful for tests)."""
    _adapter_instances[kind] = adapter


def reset_adapters() -> None:
    """Reset all adapter singletons (useful for testing)."""
    _adapter_instances.clear()
