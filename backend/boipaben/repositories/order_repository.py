"""Order (payment record) persistence helpers."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from boipaben.models import Order


class OrderRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def add_order(self, order: Order) -> Order:
        self._session.add(order)
        return order

    def get_by_external_ref(self, external_ref: str) -> Order | None:
        query = select(Order).where(Order.external_ref == external_ref)
        return self._session.execute(query).scalars().first()

    def list_for_email(self, email: str) -> list[Order]:
        query = (
            select(Order)
            .where(Order.email == email)
            .order_by(Order.created_at.desc(), Order.order_id)
        )
        return list(self._session.execute(query).scalars().all())
