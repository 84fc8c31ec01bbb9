"""Seller directory port."""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class SellerProfile:
    seller_id: str
    display_name: str
    is_available: bool = True
    logo_url: str | None = None
    rating: float | None = None


class SellerDirectory(ABC):
    @abstractmethod
    async def get_seller(self, seller_id: str) -> SellerProfile | None:
        """Display profile for a seller, or None when the seller is unknown."""
        ...
