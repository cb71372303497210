"""Repository abstractions for database interactions."""

from .book_repository import EDITABLE_FIELDS, BookRepository
from .cart_repository import CartRepository
from .order_repository import OrderRepository

__all__ = [
    "BookRepository",
    "CartRepository",
    "EDITABLE_FIELDS",
    "OrderRepository",
]
