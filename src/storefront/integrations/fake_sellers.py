"""In-memory seller directory for development and tests."""

from storefront.integrations.seller_port import SellerDirectory, SellerProfile


class FakeSellerDirectory(SellerDirectory):
    def __init__(self, sellers: list[SellerProfile] | None = None) -> None:
        self.sellers = {str(s.seller_id): s for s in sellers or []}
        self.failing: set[str] = set()
        self.calls: list[str] = []

    def register(self, seller: SellerProfile) -> None:
        self.sellers[str(seller.seller_id)] = seller

    def fail_lookups_for(self, seller_id: str) -> None:
        self.failing.add(str(seller_id))

    async def get_seller(self, seller_id: str) -> SellerProfile | None:
        self.calls.append(str(seller_id))
        if str(seller_id) in self.failing:
            raise ConnectionError(f"Seller directory unreachable for seller {seller_id}")
        return self.sellers.get(str(seller_id))
