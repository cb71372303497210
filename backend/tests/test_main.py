from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from boipaben import schemas
from boipaben.core.security import issue_access_token
from boipaben.domain.errors import (
    CartError,
    NotBookOwner,
    PersistentFailure,
    SaleConflict,
    SoldBookLocked,
    TransientStoreFailure,
)
from boipaben.domain.models import SaleResult
from boipaben.domain.visibility import OwnerView, PublicAnonymous, PublicAuthenticated
from boipaben.main import (
    _book_service,
    _cart_service,
    _checkout_service,
    _clock,
    _settings,
    app,
    on_shutdown,
    on_startup,
)
from boipaben.services.book_service import BookQueryResult

from factories import BUYER, NOW, SELLER


@pytest.fixture
def client(test_settings):
    """Test client that cleans up dependency overrides after each test."""
    app.dependency_overrides[_settings] = lambda: test_settings
    app.dependency_overrides[_clock] = lambda: NOW
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def book_service():
    service = MagicMock()
    app.dependency_overrides[_book_service] = lambda: service
    return service


@pytest.fixture
def cart_service():
    service = MagicMock()
    app.dependency_overrides[_cart_service] = lambda: service
    return service


@pytest.fixture
def checkout_service():
    service = MagicMock()
    app.dependency_overrides[_checkout_service] = lambda: service
    return service


def _book_payload(**overrides) -> schemas.Book:
    payload = {
        "book_id": "b1",
        "title": "Aranyak",
        "author_name": "Bibhutibhushan",
        "category": "Novel",
        "price": 200.0,
        "owner_email": SELLER.email,
        "availability": "available",
        "created_at": NOW,
        "updated_at": NOW,
    }
    payload.update(overrides)
    return schemas.Book.model_validate(payload)


def test_healthcheck(client):
    """Verify the healthcheck endpoint returns a successful response."""
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_list_books_anonymous(client, book_service):
    book_service.list_visible_books.return_value = BookQueryResult(total=0, books=[])

    response = client.get("/books", params={"category": "Novel", "sort": "price", "order": "asc"})

    assert response.status_code == 200
    assert response.json() == {"total": 0, "items": []}
    context, now, query = book_service.list_visible_books.call_args.args
    assert context == PublicAnonymous()
    assert now == NOW
    assert (query.category, query.sort, query.order) == ("Novel", "price", "asc")


def test_list_books_rejects_unknown_sort(client, book_service):
    response = client.get("/books", params={"sort": "hidden_from_public"})
    assert response.status_code == 422


def test_list_books_with_token_uses_authenticated_context(client, book_service, auth_header):
    book_service.list_visible_books.return_value = BookQueryResult(total=0, books=[])

    response = client.get("/books", headers=auth_header(BUYER))

    assert response.status_code == 200
    context = book_service.list_visible_books.call_args.args[0]
    assert context == PublicAuthenticated(user_id=BUYER.user_id)


def test_get_book_includes_visible_until(client, book_service):
    sold_at = NOW - timedelta(hours=1)
    book_service.get_book.return_value = _book_payload(
        availability="sold", sold_at=sold_at, visible_until=sold_at + timedelta(hours=12)
    )

    response = client.get("/books/b1")

    assert response.status_code == 200
    assert response.json()["visible_until"] is not None
    book_service.get_book.assert_called_once_with("b1", PublicAnonymous(), NOW)


def test_get_book_owner_context(client, book_service, auth_header):
    book_service.get_book.return_value = _book_payload()
    client.get("/books/b1", headers=auth_header(SELLER))
    book_service.get_book.assert_called_once_with("b1", OwnerView(owner_email=SELLER.email), NOW)


def test_get_book_not_found(client, book_service):
    book_service.get_book.return_value = None
    response = client.get("/books/gone")
    assert response.status_code == 404


def test_my_books_requires_authentication(client, book_service, test_settings):
    assert client.get("/users/me/books").status_code == 401

    expired = issue_access_token(
        SELLER, test_settings.auth_token_secret, now=NOW - timedelta(days=3)
    )
    response = client.get("/users/me/books", headers={"Authorization": f"Bearer {expired}"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Token expired"

    response = client.get("/users/me/books", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


def test_my_books_uses_owner_listing(client, book_service, auth_header):
    book_service.owner_books.return_value = BookQueryResult(total=1, books=[_book_payload()])

    response = client.get("/users/me/books", headers=auth_header(SELLER))

    assert response.status_code == 200
    assert response.json()["total"] == 1
    book_service.owner_books.assert_called_once_with(SELLER, NOW)


def test_editing_sold_book_returns_conflict(client, book_service, auth_header):
    book_service.update_book.side_effect = SoldBookLocked("b1")

    response = client.patch("/books/b1", json={"price": 10}, headers=auth_header(SELLER))

    assert response.status_code == 409
    assert response.json() == {"detail": "Cannot modify a sold book"}


def test_deleting_someone_elses_book_is_forbidden(client, book_service, auth_header):
    book_service.delete_book.side_effect = NotBookOwner("b1")
    response = client.delete("/books/b1", headers=auth_header(BUYER))
    assert response.status_code == 403


def test_patch_rejects_sale_state_fields(client, book_service, auth_header):
    response = client.patch(
        "/books/b1", json={"availability": "available"}, headers=auth_header(SELLER)
    )
    assert response.status_code == 422
    book_service.update_book.assert_not_called()


def test_add_sold_book_to_cart(client, cart_service, auth_header):
    cart_service.add_item.side_effect = CartError("This book is already sold")
    response = client.post("/cart", json={"book_id": "b1"}, headers=auth_header(BUYER))
    assert response.status_code == 400
    assert response.json()["detail"] == "This book is already sold"


def test_cart_count(client, cart_service, auth_header):
    cart_service.count_items.return_value = 3
    response = client.get("/cart/count", headers=auth_header(BUYER))
    assert response.json() == {"count": 3}


def test_cash_on_delivery_conflict_lists_unavailable_books(client, checkout_service, auth_header):
    checkout_service.cash_on_delivery.side_effect = SaleConflict(["b1", "b2"])
    body = {
        "cart_item_ids": ["c1", "c2"],
        "address": {
            "street_address": "House 7",
            "city_town": "Dhaka",
            "district": "Dhaka",
            "contact_number": "01700000000",
        },
    }

    response = client.post("/payments/cash-on-delivery", json=body, headers=auth_header(BUYER))

    assert response.status_code == 409
    unavailable = response.json()["unavailable"]
    assert [item["book_id"] for item in unavailable] == ["b1", "b2"]
    assert all("no longer available" in item["message"] for item in unavailable)


def test_cash_on_delivery_requires_complete_address(client, checkout_service, auth_header):
    body = {"cart_item_ids": ["c1"], "address": {"street_address": "House 7"}}
    response = client.post("/payments/cash-on-delivery", json=body, headers=auth_header(BUYER))
    assert response.status_code == 422
    checkout_service.cash_on_delivery.assert_not_called()


@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (TransientStoreFailure("locked"), 503),
        (PersistentFailure("boom: secret details"), 500),
    ],
)
def test_store_failures_map_to_server_errors(client, checkout_service, auth_header, error, status_code):
    checkout_service.complete_card_payment.side_effect = error

    response = client.post(
        "/payments/card/complete", json={"session_id": "cs_1"}, headers=auth_header(BUYER)
    )

    assert response.status_code == status_code
    assert "secret details" not in response.text


def test_card_completion_returns_receipt(client, checkout_service, auth_header):
    checkout_service.complete_card_payment.return_value = SaleResult(
        order_id="CARD-cs_1",
        book_ids=("b1",),
        amount=250.0,
        payment_method="card",
        recorded_at=NOW,
        already_processed=True,
    )

    response = client.post(
        "/payments/card/complete", json={"session_id": "cs_1"}, headers=auth_header(BUYER)
    )

    assert response.status_code == 200
    assert response.json()["already_processed"] is True
    checkout_service.complete_card_payment.assert_called_once_with(BUYER, "cs_1", NOW)


def test_webhook_passes_raw_body_and_signature(client, checkout_service):
    checkout_service.handle_webhook.return_value = None
    payload = b'{"type": "checkout.session.completed"}'

    response = client.post(
        "/payments/webhook",
        content=payload,
        headers={"Stripe-Signature": "t=1,v1=abc", "Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json()["received"] is True
    checkout_service.handle_webhook.assert_called_once_with(payload, "t=1,v1=abc", NOW)


@patch("boipaben.main.CleanupScheduler")
@patch("boipaben.main.init_db")
@patch("boipaben.main.get_settings")
def test_startup_schedules_cleanup_with_configured_interval(
    mock_get_settings, mock_init_db, mock_scheduler, test_settings
):
    mock_get_settings.return_value = test_settings.model_copy(
        update={"cleanup_enabled": True, "cleanup_interval_hours": 2.0}
    )

    on_startup()
    try:
        mock_init_db.assert_called_once()
        assert mock_scheduler.call_args.kwargs["interval"] == timedelta(hours=2)
        mock_scheduler.return_value.start.assert_called_once()
    finally:
        on_shutdown()
    mock_scheduler.return_value.stop.assert_called_once()


def test_suggestions_route_is_not_taken_for_a_book_id(client, book_service):
    book_service.suggestions.return_value = [
        schemas.Suggestion(type="author", title="Humayun Ahmed", subtitle="3 books")
    ]

    response = client.get("/books/suggestions", params={"q": "huma", "limit": 5})

    assert response.status_code == 200
    assert response.json()["suggestions"][0]["title"] == "Humayun Ahmed"
    book_service.suggestions.assert_called_once_with(PublicAnonymous(), NOW, "huma", limit=5)
    book_service.get_book.assert_not_called()
