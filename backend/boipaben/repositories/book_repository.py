"""Book persistence helpers, including the two guarded writers of sale state."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import asc, desc, func, or_, select, update
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from boipaben.models import Book, BookAvailability

# Columns callers may change through ``update_book``. Sale state is written
# only by ``mark_sold`` and ``hide_sold_before``.
EDITABLE_FIELDS = frozenset(
    {"title", "author_name", "category", "description", "image_url", "price"}
)

_SORT_COLUMNS = {
    "created_at": Book.created_at,
    "price": Book.price,
    "title": Book.title,
}


def _contains(column: Any, text: str) -> ColumnElement[bool]:
    """Case-insensitive substring match with LIKE wildcards in ``text`` escaped."""

    escaped = (
        text.strip().lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    )
    return func.lower(column).like(f"%{escaped}%", escape="\\")


class BookRepository:
    """Encapsulate book listing queries and mutations."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def add_book(
        self,
        *,
        owner_email: str,
        title: str,
        author_name: str,
        category: str,
        price: float,
        description: str | None = None,
        image_url: str | None = None,
    ) -> Book:
        book = Book(
            owner_email=owner_email,
            title=title,
            author_name=author_name,
            category=category,
            price=price,
            description=description,
            image_url=image_url,
            availability=BookAvailability.AVAILABLE.value,
            sold_at=None,
            hidden_from_public=False,
        )
        self._session.add(book)
        return book

    def update_book(self, book: Book, changes: dict[str, Any]) -> bool:
        changed = False
        for key, value in changes.items():
            if key not in EDITABLE_FIELDS:
                raise ValueError(f"Field '{key}' cannot be edited")
            if getattr(book, key) != value:
                setattr(book, key, value)
                changed = True
        return changed

    def delete_book(self, book: Book) -> None:
        self._session.delete(book)

    def mark_sold(self, book_ids: Sequence[str], sold_at: datetime) -> int:
        """Flip available books to sold; rows already sold are left untouched.

        The ``availability == available`` guard is the compare-and-set that
        lets exactly one of two racing buyers win. Returns the row count.
        """

        statement = (
            update(Book)
            .where(
                Book.book_id.in_(list(book_ids)),
                Book.availability == BookAvailability.AVAILABLE.value,
            )
            .values(
                availability=BookAvailability.SOLD.value,
                sold_at=sold_at,
                updated_at=sold_at,
            )
            .execution_options(synchronize_session=False)
        )
        result = self._session.execute(statement)
        return result.rowcount or 0

    def hide_sold_before(self, cutoff: datetime) -> int:
        statement = (
            update(Book)
            .where(
                Book.availability == BookAvailability.SOLD.value,
                Book.sold_at.is_not(None),
                Book.sold_at < cutoff,
                Book.hidden_from_public.is_not(True),
            )
            .values(hidden_from_public=True)
            .execution_options(synchronize_session=False)
        )
        result = self._session.execute(statement)
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Queries

    def get_book(self, book_id: str) -> Book | None:
        return self._session.get(Book, book_id)

    def load_books(self, book_ids: Iterable[str]) -> list[Book]:
        ids = list(book_ids)
        if not ids:
            return []
        query = select(Book).where(Book.book_id.in_(ids))
        return list(self._session.execute(query).scalars().all())

    def unavailable_ids(self, book_ids: Iterable[str]) -> list[str]:
        ids = list(book_ids)
        if not ids:
            return []
        query = select(Book.book_id).where(
            Book.book_id.in_(ids),
            Book.availability != BookAvailability.AVAILABLE.value,
        )
        return sorted(self._session.execute(query).scalars().all())

    def list_books(
        self,
        *,
        visibility: ColumnElement[bool] | None = None,
        owner_email: str | None = None,
        category: str | None = None,
        search: str | None = None,
        min_price: float | None = None,
        max_price: float | None = None,
        exclude_book_id: str | None = None,
        sort: str = "created_at",
        order: str = "desc",
        limit: int | None = 50,
        offset: int = 0,
    ) -> tuple[list[Book], int]:
        filters: list[Any] = []
        if visibility is not None:
            filters.append(visibility)
        if owner_email:
            filters.append(Book.owner_email == owner_email)
        if category:
            filters.append(func.lower(Book.category) == category.lower())
        if search:
            filters.append(
                or_(
                    _contains(Book.title, search),
                    _contains(Book.author_name, search),
                    _contains(Book.category, search),
                    _contains(Book.description, search),
                )
            )
        if min_price is not None:
            filters.append(Book.price >= min_price)
        if max_price is not None:
            filters.append(Book.price <= max_price)
        if exclude_book_id:
            filters.append(Book.book_id != exclude_book_id)

        sort_column = _SORT_COLUMNS.get(sort, Book.created_at)
        sort_direction = desc if order.lower() == "desc" else asc

        query = (
            select(Book)
            .where(*filters)
            .order_by(sort_direction(sort_column), Book.book_id)
            .offset(offset)
        )
        if limit is not None:
            query = query.limit(limit)

        total_query = select(func.count(Book.book_id)).where(*filters)

        books = list(self._session.execute(query).scalars().all())
        total = self._session.execute(total_query).scalar_one()
        return books, total

    def title_matches(
        self, text: str, *, visibility: ColumnElement[bool], limit: int
    ) -> list[Book]:
        query = (
            select(Book)
            .where(visibility, _contains(Book.title, text))
            .order_by(Book.title, Book.book_id)
            .limit(limit)
        )
        return list(self._session.execute(query).scalars().all())

    def top_values(
        self, column_name: str, text: str, *, visibility: ColumnElement[bool], limit: int
    ) -> list[tuple[str, int]]:
        """Most common values of ``column_name`` containing ``text``, with their counts."""

        column = getattr(Book, column_name)
        count = func.count(Book.book_id)
        query = (
            select(column, count)
            .where(visibility, _contains(column, text))
            .group_by(column)
            .order_by(count.desc(), column)
            .limit(limit)
        )
        return [(value, total) for value, total in self._session.execute(query).all()]
