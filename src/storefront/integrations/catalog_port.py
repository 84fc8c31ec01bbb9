"""Catalog service port — the authoritative source of price, stock and status."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

ACTIVE_STATUS = "active"


@dataclass(frozen=True)
class CatalogVariant:
    variant_id: str
    name: str | None = None
    price: float | None = None
    stock_quantity: int = 0


@dataclass(frozen=True)
class CatalogProduct:
    product_id: str
    price: float
    stock_quantity: int
    status: str = ACTIVE_STATUS
    title: str | None = None
    seller_id: str | None = None
    images: tuple[str, ...] = ()
    variants: tuple[CatalogVariant, ...] = field(default_factory=tuple)

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE_STATUS

    def variant(self, variant_id: str | None) -> CatalogVariant | None:
        if not variant_id:
            return None
        return next((v for v in self.variants if str(v.variant_id) == str(variant_id)), None)


class CatalogService(ABC):
    @abstractmethod
    async def get_product(self, product_id: str) -> CatalogProduct | None:
        """Current catalog record for a product, or None when it does not exist."""
        ...
