"""Sold-book visibility rules shared by every listing and search path.

A sold book stays in public listings for a fixed window after ``sold_at`` so
buyers browsing at the moment of sale are not surprised, then drops out.
Sellers always see their own books. The same rule is expressed twice: as a
predicate over a loaded record (:meth:`VisibilityPolicy.is_visible`) and as a
SQLAlchemy filter (:meth:`VisibilityPolicy.build_filter`) so listings never
need an application-side post-filter.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol, Union

from sqlalchemy import and_, or_
from sqlalchemy.sql.elements import ColumnElement

from boipaben.models import Book, BookAvailability


@dataclass(frozen=True, slots=True)
class PublicAnonymous:
    """Visitor without an identity."""


@dataclass(frozen=True, slots=True)
class PublicAuthenticated:
    """Signed-in visitor browsing the public catalogue."""

    user_id: str


@dataclass(frozen=True, slots=True)
class OwnerView:
    """Seller looking at their own listings."""

    owner_email: str


ViewingContext = Union[PublicAnonymous, PublicAuthenticated, OwnerView]


class BookLike(Protocol):
    availability: str
    sold_at: datetime | None
    owner_email: str


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC; SQLite hands them back without tzinfo."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _require_now(now: Any) -> datetime:
    if not isinstance(now, datetime):
        raise TypeError("now must be an explicit datetime")
    return as_utc(now)


@dataclass(frozen=True, slots=True)
class VisibilityPolicy:
    window: timedelta

    @classmethod
    def from_settings(cls, settings: Any) -> "VisibilityPolicy":
        return cls(window=timedelta(hours=settings.visibility_window_hours))

    def is_visible(self, book: BookLike, context: ViewingContext, now: datetime) -> bool:
        now = _require_now(now)
        if isinstance(context, OwnerView) and book.owner_email == context.owner_email:
            return True
        if book.availability == BookAvailability.AVAILABLE.value:
            return True
        if book.availability != BookAvailability.SOLD.value or book.sold_at is None:
            return False
        return now - as_utc(book.sold_at) < self.window

    def build_filter(self, context: ViewingContext, now: datetime) -> ColumnElement[bool]:
        now = _require_now(now)
        if isinstance(context, OwnerView):
            return or_(Book.owner_email == context.owner_email, self.public_filter(now))
        return self.public_filter(now)

    def public_filter(self, now: datetime) -> ColumnElement[bool]:
        cutoff = _require_now(now) - self.window
        return or_(
            Book.availability == BookAvailability.AVAILABLE.value,
            and_(
                Book.availability == BookAvailability.SOLD.value,
                Book.sold_at.is_not(None),
                Book.sold_at > cutoff,
            ),
        )

    def visible_until(self, book: BookLike) -> datetime | None:
        """Moment a sold book leaves public listings, for the detail-page banner."""

        if book.availability != BookAvailability.SOLD.value or book.sold_at is None:
            return None
        return as_utc(book.sold_at) + self.window

    def hide_cutoff(self, now: datetime) -> datetime:
        return _require_now(now) - self.window


__all__ = [
    "OwnerView",
    "PublicAnonymous",
    "PublicAuthenticated",
    "ViewingContext",
    "VisibilityPolicy",
    "as_utc",
]
