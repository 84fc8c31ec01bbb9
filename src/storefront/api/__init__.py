"""Storefront API package."""

from storefront.api.routes import cart_router, checkout_router, reset_sessions

__all__ = ["cart_router", "checkout_router", "reset_sessions"]
