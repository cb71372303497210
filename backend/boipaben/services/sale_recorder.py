"""The single write path that turns available books into sold ones.

Both checkout paths (card confirmation and cash on delivery) end here. One
call is one transaction: the guarded availability flip, the buyer's cart
cleanup, and the order record commit or roll back together.
"""

from __future__ import annotations

import secrets
import string
from collections.abc import Mapping, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any

from loguru import logger
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session

from boipaben.domain.errors import (
    BookNotFound,
    PersistentFailure,
    SaleConflict,
    TransientStoreFailure,
)
from boipaben.domain.models import Identity, OrderLine, SaleResult
from boipaben.domain.visibility import as_utc
from boipaben.models import BookAvailability, Order, OrderStatus, PaymentMethod
from boipaben.repositories import BookRepository, CartRepository, OrderRepository

_ORDER_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def cash_order_id(now: datetime) -> str:
    millis = int(as_utc(now).timestamp() * 1000)
    suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(9))
    return f"COD-{millis}-{suffix}"


def card_order_id(external_ref: str) -> str:
    return f"CARD-{external_ref}"


def _money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))


class SaleRecorder:
    """Record completed orders against a SQLAlchemy session it commits itself."""

    def __init__(self, session: Session, *, shipping_fee: float = 0.0) -> None:
        self._session = session
        self._shipping_fee = shipping_fee
        self._books = BookRepository(session)
        self._carts = CartRepository(session)
        self._orders = OrderRepository(session)

    def record_sale(
        self,
        book_ids: Sequence[str],
        buyer: Identity,
        now: datetime,
        *,
        method: PaymentMethod | str,
        external_ref: str | None = None,
        shipping_address: Mapping[str, Any] | None = None,
        amount: float | None = None,
    ) -> SaleResult:
        ids = tuple(book_ids)
        if not ids:
            raise ValueError("A sale needs at least one book")
        if len(set(ids)) != len(ids):
            raise ValueError("A sale cannot list the same book twice")
        method = PaymentMethod(method)
        if method is PaymentMethod.CARD and not external_ref:
            raise ValueError("Card sales require the payment gateway reference")
        now = as_utc(now)

        try:
            if external_ref:
                existing = self._orders.get_by_external_ref(external_ref)
                if existing is not None:
                    self._session.rollback()
                    logger.info(
                        "Sale for external_ref={} already recorded as order={}",
                        external_ref,
                        existing.order_id,
                    )
                    return self._result_from_order(existing, already_processed=True)

            result = self._apply_sale(
                ids,
                buyer,
                now,
                method=method,
                external_ref=external_ref,
                shipping_address=shipping_address,
                amount=amount,
            )
            self._session.commit()
        except SaleConflict as conflict:
            self._session.rollback()
            if external_ref:
                # A double-delivered confirmation that lost the race sees its
                # books already sold by the winning delivery.
                existing = self._safe_lookup(external_ref)
                if existing is not None:
                    return self._result_from_order(existing, already_processed=True)
            logger.warning(
                "Sale rejected for buyer={} unavailable={}", buyer.email, list(conflict.book_ids)
            )
            raise
        except IntegrityError as exc:
            self._session.rollback()
            existing = self._safe_lookup(external_ref) if external_ref else None
            if existing is not None:
                return self._result_from_order(existing, already_processed=True)
            logger.exception("Sale failed with integrity error for buyer={}", buyer.email)
            raise PersistentFailure("Order could not be recorded") from exc
        except (OperationalError, DBAPIError) as exc:
            self._session.rollback()
            if isinstance(exc, OperationalError) or exc.connection_invalidated:
                logger.warning(
                    "Transient store failure recording sale for buyer={}: {}", buyer.email, exc
                )
                raise TransientStoreFailure("Store temporarily unavailable") from exc
            logger.exception("Sale failed for buyer={}", buyer.email)
            raise PersistentFailure("Order could not be recorded") from exc
        except Exception as exc:
            self._session.rollback()
            logger.exception("Sale failed for buyer={}", buyer.email)
            raise PersistentFailure("Order could not be recorded") from exc

        logger.info(
            "Recorded sale order={} method={} books={} buyer={}",
            result.order_id,
            result.payment_method,
            list(result.book_ids),
            buyer.email,
        )
        return result

    def _apply_sale(
        self,
        ids: tuple[str, ...],
        buyer: Identity,
        now: datetime,
        *,
        method: PaymentMethod,
        external_ref: str | None,
        shipping_address: Mapping[str, Any] | None,
        amount: float | None,
    ) -> SaleResult:
        books = {book.book_id: book for book in self._books.load_books(ids)}
        missing = [book_id for book_id in ids if book_id not in books]
        if missing:
            raise BookNotFound(missing)

        lines = [
            OrderLine(
                book_id=book_id,
                title=books[book_id].title,
                author_name=books[book_id].author_name,
                price=float(books[book_id].price),
            )
            for book_id in ids
        ]

        taken = [
            book_id
            for book_id in ids
            if books[book_id].availability != BookAvailability.AVAILABLE.value
        ]
        if taken:
            raise SaleConflict(taken)

        updated = self._books.mark_sold(ids, now)
        if updated != len(ids):
            # Lost a race after the read above. Our own flips must be undone
            # before asking which books the other buyer took.
            self._session.rollback()
            raise SaleConflict(self._books.unavailable_ids(ids) or list(ids))

        self._carts.remove_books(buyer.email, ids)

        if amount is None:
            total = sum((_money(line.price) for line in lines), Decimal("0")) + _money(
                self._shipping_fee
            )
        else:
            total = _money(amount)

        if method is PaymentMethod.CARD:
            order_id = card_order_id(external_ref or "")
            status = OrderStatus.COMPLETED.value
        else:
            order_id = cash_order_id(now)
            status = OrderStatus.PENDING.value

        order = Order(
            order_id=order_id,
            user_id=buyer.user_id,
            email=buyer.email,
            amount=total,
            items=[line.to_dict() for line in lines],
            shipping_address=dict(shipping_address) if shipping_address else None,
            payment_method=method.value,
            status=status,
            external_ref=external_ref,
            created_at=now,
        )
        self._orders.add_order(order)
        self._session.flush()

        return SaleResult(
            order_id=order_id,
            book_ids=ids,
            amount=float(total),
            payment_method=method.value,
            recorded_at=now,
            lines=lines,
        )

    def _safe_lookup(self, external_ref: str) -> Order | None:
        try:
            return self._orders.get_by_external_ref(external_ref)
        except DBAPIError:
            self._session.rollback()
            return None

    @staticmethod
    def _result_from_order(order: Order, *, already_processed: bool) -> SaleResult:
        lines = [
            OrderLine(
                book_id=line["book_id"],
                title=line.get("title", ""),
                author_name=line.get("author_name", ""),
                price=float(line.get("price", 0)),
            )
            for line in order.items or []
        ]
        return SaleResult(
            order_id=order.order_id,
            book_ids=tuple(line.book_id for line in lines),
            amount=float(order.amount),
            payment_method=order.payment_method,
            recorded_at=order.created_at,
            already_processed=already_processed,
            lines=lines,
        )
