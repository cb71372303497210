from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


class BookAvailability(str, Enum):
    AVAILABLE = "available"
    SOLD = "sold"


class PaymentMethod(str, Enum):
    CARD = "card"
    CASH_ON_DELIVERY = "cash_on_delivery"


class OrderStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


class Book(Base):
    __tablename__ = "books"

    book_id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    author_name: Mapped[str] = mapped_column(String(200), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_url: Mapped[str | None] = mapped_column(String, nullable=True)
    price: Mapped[float] = mapped_column(Numeric(12, 2), nullable=False)
    owner_email: Mapped[str] = mapped_column(String(320), nullable=False)
    availability: Mapped[str] = mapped_column(
        String(16), nullable=False, default=BookAvailability.AVAILABLE.value
    )
    sold_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    hidden_from_public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        Index("ix_books_availability_sold_at", "availability", "sold_at"),
        Index("ix_books_owner_email", "owner_email"),
        Index("ix_books_category", "category"),
        Index("ix_books_created_at", "created_at"),
    )

    @property
    def is_sold(self) -> bool:
        return self.availability == BookAvailability.SOLD.value


class CartItem(Base):
    __tablename__ = "cart_items"

    cart_item_id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    user_email: Mapped[str] = mapped_column(String(320), nullable=False)
    book_id: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    author_name: Mapped[str] = mapped_column(String(200), nullable=False)
    image_url: Mapped[str | None] = mapped_column(String, nullable=True)
    price: Mapped[float] = mapped_column(Numeric(12, 2), nullable=False)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_email", "book_id", name="uq_cart_user_book"),
        Index("ix_cart_items_user_email", "user_email"),
    )


class Order(Base):
    __tablename__ = "orders"

    order_id: Mapped[str] = mapped_column(String(96), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    amount: Mapped[float] = mapped_column(Numeric(12, 2), nullable=False)
    items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    shipping_address: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=OrderStatus.PENDING.value)
    external_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("external_ref", name="uq_orders_external_ref"),
        Index("ix_orders_email_created_at", "email", "created_at"),
    )
