"""In-memory catalog for development and tests.

Products are registered up front and can be repriced, restocked or delisted
at runtime to simulate the catalog moving underneath an open cart.
"""

from dataclasses import replace

from storefront.integrations.catalog_port import CatalogProduct, CatalogService


class FakeCatalog(CatalogService):
    def __init__(self, products: list[CatalogProduct] | None = None) -> None:
        self.products: dict[str, CatalogProduct] = {}
        self.calls: list[str] = []
        self.failing: set[str] = set()
        for product in products or []:
            self.register(product)

    def register(self, product: CatalogProduct) -> None:
        self.products[str(product.product_id)] = product

    def update(self, product_id: str, **changes) -> CatalogProduct:
        product = replace(self.products[str(product_id)], **changes)
        self.products[str(product_id)] = product
        return product

    def update_variant(self, product_id: str, variant_id: str, **changes) -> CatalogProduct:
        product = self.products[str(product_id)]
        variants = tuple(
            replace(v, **changes) if str(v.variant_id) == str(variant_id) else v for v in product.variants
        )
        return self.update(product_id, variants=variants)

    def delist(self, product_id: str) -> None:
        self.products.pop(str(product_id), None)

    def fail_lookups_for(self, product_id: str) -> None:
        self.failing.add(str(product_id))

    async def get_product(self, product_id: str) -> CatalogProduct | None:
        self.calls.append(str(product_id))
        if str(product_id) in self.failing:
            raise ConnectionError(f"Catalog unreachable for product {product_id}")
        return self.products.get(str(product_id))
