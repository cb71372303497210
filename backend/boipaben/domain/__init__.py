"""Domain rules and value types for the marketplace core."""

from .errors import (
    BookNotFound,
    CartError,
    MarketplaceError,
    NotBookOwner,
    NotOwner,
    PersistentFailure,
    SaleConflict,
    SoldBookLocked,
    TransientStoreFailure,
)
from .models import Identity, OrderLine, SaleResult
from .visibility import (
    OwnerView,
    PublicAnonymous,
    PublicAuthenticated,
    ViewingContext,
    VisibilityPolicy,
)

__all__ = [
    "BookNotFound",
    "CartError",
    "Identity",
    "MarketplaceError",
    "NotBookOwner",
    "NotOwner",
    "OrderLine",
    "OwnerView",
    "PersistentFailure",
    "PublicAnonymous",
    "PublicAuthenticated",
    "SaleConflict",
    "SaleResult",
    "SoldBookLocked",
    "TransientStoreFailure",
    "ViewingContext",
    "VisibilityPolicy",
]
