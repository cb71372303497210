"""Failures surfaced by sale recording and listing mutations."""

from __future__ import annotations

from collections.abc import Iterable


class MarketplaceError(Exception):
    """Base class for errors callers are expected to handle."""


class SaleConflict(MarketplaceError):
    """One or more books in a sale batch can no longer be sold."""

    def __init__(self, book_ids: Iterable[str], message: str | None = None) -> None:
        self.book_ids = tuple(book_ids)
        super().__init__(
            message or f"Books no longer available: {', '.join(self.book_ids)}"
        )


class BookNotFound(SaleConflict):
    """A requested book does not exist at all."""

    def __init__(self, book_ids: Iterable[str]) -> None:
        ids = tuple(book_ids)
        super().__init__(ids, f"Books not found: {', '.join(ids)}")


class TransientStoreFailure(MarketplaceError):
    """Store unreachable or transaction aborted; retry with the same reference."""


class PersistentFailure(MarketplaceError):
    """Unexpected internal error; details stay in the server log."""


class SoldBookLocked(MarketplaceError):
    """Sold books are kept as transaction history and cannot change."""

    def __init__(self, book_id: str) -> None:
        self.book_id = book_id
        super().__init__("Cannot modify a sold book")


class NotOwner(MarketplaceError):
    def __init__(self, resource_id: str, message: str = "You do not own this resource") -> None:
        self.resource_id = resource_id
        super().__init__(message)


class NotBookOwner(NotOwner):
    def __init__(self, book_id: str) -> None:
        super().__init__(book_id, "Only the seller can modify this book")


class CartError(MarketplaceError):
    """Cart mutation rejected (sold book, duplicate entry, foreign item)."""


__all__ = [
    "BookNotFound",
    "CartError",
    "MarketplaceError",
    "NotBookOwner",
    "NotOwner",
    "PersistentFailure",
    "SaleConflict",
    "SoldBookLocked",
    "TransientStoreFailure",
]
