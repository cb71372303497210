"""Cart persistence helpers."""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from boipaben.models import CartItem


class CartRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def add_item(self, item: CartItem) -> CartItem:
        self._session.add(item)
        return item

    def get_item(self, cart_item_id: str) -> CartItem | None:
        return self._session.get(CartItem, cart_item_id)

    def find_item(self, user_email: str, book_id: str) -> CartItem | None:
        query = select(CartItem).where(
            CartItem.user_email == user_email, CartItem.book_id == book_id
        )
        return self._session.execute(query).scalars().first()

    def list_items(
        self, user_email: str, cart_item_ids: Iterable[str] | None = None
    ) -> list[CartItem]:
        query = select(CartItem).where(CartItem.user_email == user_email)
        if cart_item_ids is not None:
            query = query.where(CartItem.cart_item_id.in_(list(cart_item_ids)))
        query = query.order_by(CartItem.added_at, CartItem.cart_item_id)
        return list(self._session.execute(query).scalars().all())

    def count_items(self, user_email: str) -> int:
        query = select(func.count(CartItem.cart_item_id)).where(
            CartItem.user_email == user_email
        )
        return self._session.execute(query).scalar_one()

    def delete_item(self, item: CartItem) -> None:
        self._session.delete(item)

    def clear(self, user_email: str) -> int:
        statement = (
            delete(CartItem)
            .where(CartItem.user_email == user_email)
            .execution_options(synchronize_session=False)
        )
        return self._session.execute(statement).rowcount or 0

    def remove_books(self, user_email: str, book_ids: Iterable[str]) -> int:
        statement = (
            delete(CartItem)
            .where(
                CartItem.user_email == user_email,
                CartItem.book_id.in_(list(book_ids)),
            )
            .execution_options(synchronize_session=False)
        )
        return self._session.execute(statement).rowcount or 0
