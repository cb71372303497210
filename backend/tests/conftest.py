from __future__ import annotations

import sys
from datetime import datetime, timedelta
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest

from boipaben.core.config import Settings
from boipaben.core.security import issue_access_token
from boipaben.db import build_db_components, init_db
from boipaben.domain.models import Identity
from boipaben.models import Book, BookAvailability

from factories import NOW, SELLER


@pytest.fixture
def test_settings(tmp_path, monkeypatch) -> Settings:
    settings = Settings(
        database_url=f"sqlite:///{tmp_path/'boipaben.db'}",
        auth_token_secret="test-secret",
        payment_secret_key="sk_test_123",
        payment_webhook_secret="whsec_test",
        sale_retry_attempts=3,
        sale_retry_backoff_seconds=[0.01, 0.02],
        cleanup_enabled=False,
        shipping_fee=50.0,
    )
    monkeypatch.setattr("boipaben.core.config.get_settings", lambda: settings)
    monkeypatch.setattr("boipaben.core.config.settings", settings)
    return settings


@pytest.fixture
def db_components(tmp_path):
    engine, session_factory = build_db_components(f"sqlite:///{tmp_path/'marketplace.db'}")
    init_db(bind=engine)
    yield engine, session_factory
    engine.dispose()


@pytest.fixture
def session_factory(db_components):
    return db_components[1]


@pytest.fixture
def session(session_factory):
    db = session_factory()
    yield db
    db.close()


@pytest.fixture
def make_book(session_factory):
    """Insert a book row and return its id."""

    def _make_book(
        *,
        title: str = "Padma Nadir Majhi",
        author_name: str = "Manik Bandopadhyay",
        category: str = "Novel",
        price: float = 250.0,
        owner_email: str = SELLER.email,
        sold_at: datetime | None = None,
        availability: str | None = None,
        hidden_from_public: bool = False,
        created_at: datetime | None = None,
        description: str | None = None,
    ) -> str:
        if availability is None:
            availability = (
                BookAvailability.SOLD.value if sold_at else BookAvailability.AVAILABLE.value
            )
        with session_factory() as db:
            book = Book(
                title=title,
                author_name=author_name,
                category=category,
                price=price,
                owner_email=owner_email,
                availability=availability,
                sold_at=sold_at,
                hidden_from_public=hidden_from_public,
                description=description,
                image_url="https://images.example.com/book.jpg",
                created_at=created_at or NOW - timedelta(days=1),
            )
            db.add(book)
            db.commit()
            return book.book_id

    return _make_book


@pytest.fixture
def auth_header():
    def _auth_header(identity: Identity, secret: str = "test-secret") -> dict[str, str]:
        token = issue_access_token(identity, secret)
        return {"Authorization": f"Bearer {token}"}

    return _auth_header
