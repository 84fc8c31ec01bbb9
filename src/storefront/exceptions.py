"""Domain errors for the storefront.

Every error is a Protean ``ValidationError`` so that ``.messages`` always maps
a field (or a seller id) to the human-readable problems the shopper must fix.
"""

from protean.exceptions import ValidationError


class InvalidCoupon(ValidationError):
    """The coupon service rejected the code, or it would not discount anything."""


class CartItemNotFound(ValidationError):
    pass


class CartPersistenceError(ValidationError):
    """Saving the cart failed; the in-memory cart was rolled back."""


class IncompleteAddress(ValidationError):
    pass


class NoPaymentMethodSelected(ValidationError):
    pass


class TermsNotAccepted(ValidationError):
    pass


class EmptySelection(ValidationError):
    pass


class CheckoutBlocked(ValidationError):
    """Stock shortfall or unavailable products in one or more seller groups."""


class InvalidCheckoutTransition(ValidationError):
    pass


class OrderSubmissionFailed(ValidationError):
    """The order service did not confirm the submission. Nothing was changed."""
