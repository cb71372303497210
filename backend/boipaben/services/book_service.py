"""Listing, detail, and seller mutations for books."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

from loguru import logger
from sqlalchemy.orm import Session

from boipaben.domain.errors import NotBookOwner, SoldBookLocked
from boipaben.domain.models import Identity
from boipaben.domain.visibility import (
    OwnerView,
    PublicAnonymous,
    PublicAuthenticated,
    ViewingContext,
    VisibilityPolicy,
)
from boipaben.models import Book as BookRecord
from boipaben.repositories import BookRepository
from boipaben.schemas import Book, BookCreate, BookUpdate, Suggestion

MIN_SUGGESTION_LENGTH = 2
_SUGGESTED_TITLES = 3
_SUGGESTED_GROUPS = 2


@dataclass(slots=True)
class BookQuery:
    category: str | None = None
    search: str | None = None
    min_price: float | None = None
    max_price: float | None = None
    sort: str = "created_at"
    order: str = "desc"
    limit: int | None = 50
    offset: int = 0

    def to_repository_kwargs(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "search": self.search,
            "min_price": self.min_price,
            "max_price": self.max_price,
            "sort": self.sort,
            "order": self.order,
            "limit": self.limit,
            "offset": self.offset,
        }


@dataclass(slots=True)
class BookQueryResult:
    total: int
    books: Sequence[Book]


def _book_count(count: int) -> str:
    return f"{count} book" if count == 1 else f"{count} books"


def context_for(identity: Identity | None) -> ViewingContext:
    """Public browsing context for an optional identity."""

    if identity is None:
        return PublicAnonymous()
    return PublicAuthenticated(user_id=identity.user_id)


class BookService:
    """Facade over book listings; every read goes through the visibility policy."""

    def __init__(self, session: Session, policy: VisibilityPolicy):
        self._session = session
        self._policy = policy
        self._book_repo = BookRepository(session)

    # ------------------------------------------------------------------
    # Listings

    def list_visible_books(
        self,
        context: ViewingContext,
        now: datetime,
        query: BookQuery | None = None,
        *,
        owner_email: str | None = None,
        exclude_book_id: str | None = None,
    ) -> BookQueryResult:
        query = query or BookQuery()
        records, total = self._book_repo.list_books(
            visibility=self._policy.build_filter(context, now),
            owner_email=owner_email,
            exclude_book_id=exclude_book_id,
            **query.to_repository_kwargs(),
        )
        return BookQueryResult(total=total, books=self._to_schemas(records))

    def latest_books(self, context: ViewingContext, now: datetime, *, limit: int = 8) -> BookQueryResult:
        return self.list_visible_books(
            context, now, BookQuery(sort="created_at", order="desc", limit=limit)
        )

    def search_books(
        self, context: ViewingContext, now: datetime, text: str, *, limit: int = 50
    ) -> BookQueryResult:
        return self.list_visible_books(context, now, BookQuery(search=text, limit=limit))

    def similar_books(
        self, book_id: str, context: ViewingContext, now: datetime, *, limit: int = 4
    ) -> BookQueryResult | None:
        book = self._book_repo.get_book(book_id)
        if book is None:
            return None
        return self.list_visible_books(
            context,
            now,
            BookQuery(category=book.category, limit=limit),
            exclude_book_id=book_id,
        )

    def suggestions(
        self, context: ViewingContext, now: datetime, text: str, *, limit: int = 8
    ) -> list[Suggestion]:
        """Typeahead hints: matching titles first, then the busiest authors and categories."""

        text = text.strip()
        if len(text) < MIN_SUGGESTION_LENGTH:
            return []
        visibility = self._policy.build_filter(context, now)
        suggestions = [
            Suggestion(
                type="book",
                title=book.title,
                subtitle=f"by {book.author_name}",
                image_url=book.image_url,
            )
            for book in self._book_repo.title_matches(
                text, visibility=visibility, limit=_SUGGESTED_TITLES
            )
        ]
        for kind, column in (("author", "author_name"), ("category", "category")):
            for value, count in self._book_repo.top_values(
                column, text, visibility=visibility, limit=_SUGGESTED_GROUPS
            ):
                suggestions.append(
                    Suggestion(type=kind, title=value, subtitle=_book_count(count))
                )
        return suggestions[:limit]

    def owner_books(self, identity: Identity, now: datetime) -> BookQueryResult:
        return self.list_visible_books(
            OwnerView(owner_email=identity.email),
            now,
            BookQuery(limit=None),
            owner_email=identity.email,
        )

    def get_book(self, book_id: str, context: ViewingContext, now: datetime) -> Book | None:
        book = self._book_repo.get_book(book_id)
        if book is None or not self._policy.is_visible(book, context, now):
            return None
        return self._to_schema(book)

    # ------------------------------------------------------------------
    # Seller mutations

    def create_book(self, identity: Identity, payload: BookCreate) -> Book:
        book = self._book_repo.add_book(
            owner_email=identity.email,
            title=payload.title,
            author_name=payload.author_name,
            category=payload.category,
            price=payload.price,
            description=payload.description,
            image_url=str(payload.image_url),
        )
        self._session.commit()
        logger.info("Book {} listed by {}", book.book_id, identity.email)
        return self._to_schema(book)

    def update_book(self, identity: Identity, book_id: str, payload: BookUpdate) -> Book | None:
        book = self._editable_book(identity, book_id)
        if book is None:
            return None
        if self._book_repo.update_book(book, payload.changes()):
            self._session.commit()
        return self._to_schema(book)

    def delete_book(self, identity: Identity, book_id: str) -> bool:
        book = self._editable_book(identity, book_id)
        if book is None:
            return False
        self._book_repo.delete_book(book)
        self._session.commit()
        logger.info("Book {} deleted by {}", book_id, identity.email)
        return True

    def _editable_book(self, identity: Identity, book_id: str) -> BookRecord | None:
        book = self._book_repo.get_book(book_id)
        if book is None:
            return None
        # Sold books are history: refused for the owner and everyone else.
        if book.is_sold:
            raise SoldBookLocked(book_id)
        if book.owner_email != identity.email:
            raise NotBookOwner(book_id)
        return book

    def _to_schemas(self, records: Sequence[BookRecord]) -> list[Book]:
        return [self._to_schema(record) for record in records]

    def _to_schema(self, record: BookRecord) -> Book:
        payload = Book.model_validate(record)
        visible_until = self._policy.visible_until(record)
        if visible_until is not None:
            return payload.model_copy(update={"visible_until": visible_until})
        return payload
