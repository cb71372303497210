from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from .core.config import Settings, get_settings
from .db import SessionLocal
from .domain.models import Identity, SaleResult
from .domain.visibility import ViewingContext, VisibilityPolicy
from .models import PaymentMethod
from .services.book_service import BookQuery, BookService
from .services.cleanup import CleanupScheduler
from .services.sale_recorder import SaleRecorder


def visibility_policy(settings: Settings | None = None) -> VisibilityPolicy:
    return VisibilityPolicy.from_settings(settings or get_settings())


def list_visible_books(
    session: Session,
    context: ViewingContext,
    now: datetime,
    *,
    category: str | None = None,
    search: str | None = None,
    min_price: float | None = None,
    max_price: float | None = None,
    sort: str = "created_at",
    order: str = "desc",
    limit: int | None = 50,
    offset: int = 0,
    settings: Settings | None = None,
):
    query = BookQuery(
        category=category,
        search=search,
        min_price=min_price,
        max_price=max_price,
        sort=sort,
        order=order,
        limit=limit,
        offset=offset,
    )
    result = BookService(session, visibility_policy(settings)).list_visible_books(
        context, now, query
    )
    return list(result.books)


def on_order_confirmed(
    session: Session,
    book_ids: Sequence[str],
    buyer: Identity,
    order_method: PaymentMethod | str,
    now: datetime,
    *,
    external_ref: str | None = None,
    shipping_address: Mapping[str, Any] | None = None,
    amount: float | None = None,
    settings: Settings | None = None,
) -> SaleResult:
    settings = settings or get_settings()
    recorder = SaleRecorder(session, shipping_fee=settings.shipping_fee)
    return recorder.record_sale(
        book_ids,
        buyer,
        now,
        method=order_method,
        external_ref=external_ref,
        shipping_address=shipping_address,
        amount=amount,
    )


def run_cleanup_sweep(
    now: datetime,
    *,
    session_factory=None,
    settings: Settings | None = None,
) -> int | None:
    settings = settings or get_settings()
    scheduler = CleanupScheduler(
        session_factory or SessionLocal,
        visibility_policy(settings),
        interval=settings.cleanup_interval,
    )
    return scheduler.run_cleanup_sweep(now)
