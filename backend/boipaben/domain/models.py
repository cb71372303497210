"""Typed domain representations used across services, checkout, and APIs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True, slots=True)
class Identity:
    """Authenticated user as asserted by the identity provider."""

    user_id: str
    email: str


@dataclass(slots=True)
class OrderLine:
    book_id: str
    title: str
    author_name: str
    price: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "book_id": self.book_id,
            "title": self.title,
            "author_name": self.author_name,
            "price": self.price,
        }


@dataclass(slots=True)
class SaleResult:
    """Outcome of a committed (or previously committed) sale."""

    order_id: str
    book_ids: tuple[str, ...]
    amount: float
    payment_method: str
    recorded_at: datetime
    already_processed: bool = False
    lines: list[OrderLine] = field(default_factory=list)
