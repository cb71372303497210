"""Buyer cart operations."""

from __future__ import annotations

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from boipaben.domain.errors import CartError, NotOwner
from boipaben.domain.models import Identity
from boipaben.models import CartItem as CartItemRecord
from boipaben.repositories import BookRepository, CartRepository
from boipaben.schemas import CartItem


class CartService:
    def __init__(self, session: Session):
        self._session = session
        self._cart_repo = CartRepository(session)
        self._book_repo = BookRepository(session)

    def list_items(self, identity: Identity) -> list[CartItem]:
        items = self._cart_repo.list_items(identity.email)
        books = {
            book.book_id: book
            for book in self._book_repo.load_books(item.book_id for item in items)
        }
        enriched: list[CartItem] = []
        for item in items:
            book = books.get(item.book_id)
            payload = CartItem.model_validate(item)
            enriched.append(
                payload.model_copy(
                    update={"availability": book.availability if book else "unknown"}
                )
            )
        return enriched

    def count_items(self, identity: Identity) -> int:
        return self._cart_repo.count_items(identity.email)

    def add_item(self, identity: Identity, book_id: str) -> CartItem | None:
        """Snapshot an available book into the cart; ``None`` when it does not exist."""

        book = self._book_repo.get_book(book_id)
        if book is None:
            return None
        if book.is_sold:
            raise CartError("This book is already sold")
        if book.owner_email == identity.email:
            raise CartError("You cannot buy your own listing")
        if self._cart_repo.find_item(identity.email, book_id) is not None:
            raise CartError("This book is already in your cart")

        item = self._cart_repo.add_item(
            CartItemRecord(
                user_email=identity.email,
                book_id=book.book_id,
                title=book.title,
                author_name=book.author_name,
                image_url=book.image_url,
                price=book.price,
                category=book.category,
            )
        )
        try:
            self._session.commit()
        except IntegrityError as exc:
            self._session.rollback()
            raise CartError("This book is already in your cart") from exc
        return CartItem.model_validate(item).model_copy(
            update={"availability": book.availability}
        )

    def remove_item(self, identity: Identity, cart_item_id: str) -> bool:
        item = self._cart_repo.get_item(cart_item_id)
        if item is None:
            return False
        if item.user_email != identity.email:
            raise NotOwner(cart_item_id, "Unauthorized to remove this item")
        self._cart_repo.delete_item(item)
        self._session.commit()
        return True

    def clear(self, identity: Identity) -> int:
        removed = self._cart_repo.clear(identity.email)
        self._session.commit()
        return removed
