from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from boipaben.schemas import (
    BookCreate,
    BookUpdate,
    CartItem,
    CashOnDeliveryRequest,
    CheckoutRequest,
    Order,
)


def test_book_create_strips_and_validates():
    book = BookCreate(
        title="  Nondito Noroke ",
        author_name="Humayun Ahmed",
        category=" Novel",
        price=Decimal("180.50"),
        image_url="https://images.example.com/nondito.jpg",
    )
    assert book.title == "Nondito Noroke"
    assert book.category == "Novel"
    assert isinstance(book.price, float)
    assert book.price == 180.50


@pytest.mark.parametrize(
    "overrides",
    [
        {"price": -1},
        {"title": ""},
        {"image_url": "not a url"},
    ],
)
def test_book_create_rejects_invalid_fields(overrides):
    payload = {
        "title": "Title",
        "author_name": "Author",
        "category": "Novel",
        "price": 10,
        "image_url": "https://images.example.com/x.jpg",
    }
    payload.update(overrides)
    with pytest.raises(ValidationError):
        BookCreate(**payload)


def test_book_update_changes_only_include_sent_fields():
    update = BookUpdate(price=99, image_url="https://images.example.com/new.jpg")
    assert update.changes() == {"price": 99.0, "image_url": "https://images.example.com/new.jpg"}
    assert BookUpdate().changes() == {}


def test_cart_item_coerces_decimal_price():
    item = CartItem(
        cart_item_id="c1",
        book_id="b1",
        title="Title",
        author_name="Author",
        price=Decimal("99.90"),
        added_at=datetime.now(timezone.utc),
    )
    assert item.price == 99.9
    assert item.availability == "unknown"


def test_checkout_requests_need_items_and_full_address():
    with pytest.raises(ValidationError):
        CheckoutRequest(cart_item_ids=[])
    with pytest.raises(ValidationError):
        CashOnDeliveryRequest(
            cart_item_ids=["c1"],
            address={"street_address": "House 7", "city_town": "Dhaka", "district": "Dhaka"},
        )


def test_order_coerces_amount_and_lines():
    order = Order(
        order_id="COD-1-abc",
        email="buyer@example.com",
        amount=Decimal("450.00"),
        items=[{"book_id": "b1", "title": "T", "author_name": "A", "price": 400}],
        payment_method="cash_on_delivery",
        status="pending",
        created_at=datetime.now(timezone.utc),
    )
    assert order.amount == 450.0
    assert order.items[0].book_id == "b1"
