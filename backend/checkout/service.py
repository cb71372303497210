"""Checkout flows: card payments through the gateway and cash on delivery.

Both paths finish in :func:`boipaben.crud.on_order_confirmed`; this module
only turns cart selections and gateway payloads into that call.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy.orm import Session

from boipaben import crud
from boipaben.core.config import Settings
from boipaben.domain.errors import (
    CartError,
    MarketplaceError,
    NotOwner,
    SaleConflict,
    TransientStoreFailure,
)
from boipaben.domain.models import Identity, SaleResult
from boipaben.models import PaymentMethod
from boipaben.repositories import BookRepository, CartRepository, OrderRepository
from boipaben.schemas import CheckoutSession, Order, ShippingAddress

from .client import PaymentGatewayClient, PaymentGatewayError
from .normalize import CheckoutSessionSnapshot, normalize_checkout_session

CHECKOUT_COMPLETED_EVENT = "checkout.session.completed"


class PaymentNotCompleted(MarketplaceError):
    """The gateway has not confirmed payment for the session."""


class WebhookVerificationError(MarketplaceError):
    """Webhook payload signature missing, stale, or wrong."""


def verify_webhook_signature(
    payload: bytes,
    signature_header: str | None,
    secret: str,
    *,
    tolerance_seconds: int,
    now: datetime,
) -> None:
    """Check a ``t=<unix>,v1=<hex hmac>`` header over ``"<t>.<payload>"``."""

    if not signature_header:
        raise WebhookVerificationError("Missing signature header")

    timestamp: str | None = None
    signatures: list[str] = []
    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    if timestamp is None or not timestamp.isdigit() or not signatures:
        raise WebhookVerificationError("Malformed signature header")

    signed_payload = timestamp.encode("ascii") + b"." + payload
    expected = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise WebhookVerificationError("Signature mismatch")

    age = now.timestamp() - int(timestamp)
    if tolerance_seconds and abs(age) > tolerance_seconds:
        raise WebhookVerificationError("Signature timestamp outside tolerance")


def _minor_units(amount: Any) -> int:
    return int(round(float(amount) * 100))


class CheckoutService:
    def __init__(
        self,
        session: Session,
        settings: Settings,
        *,
        client_factory: Callable[[], PaymentGatewayClient] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session = session
        self._settings = settings
        self._client_factory = client_factory or PaymentGatewayClient
        self._sleep = sleep
        self._book_repo = BookRepository(session)
        self._cart_repo = CartRepository(session)
        self._order_repo = OrderRepository(session)

    # ------------------------------------------------------------------
    # Card payments

    def create_checkout_session(
        self, identity: Identity, cart_item_ids: Sequence[str]
    ) -> CheckoutSession:
        cart_items = self._selected_cart_items(identity, cart_item_ids)

        line_items = [
            {
                "price_data": {
                    "currency": self._settings.currency,
                    "product_data": {
                        "name": item.title,
                        "description": f"By {item.author_name}",
                        "images": [item.image_url] if item.image_url else [],
                    },
                    "unit_amount": _minor_units(item.price),
                },
                "quantity": 1,
            }
            for item in cart_items
        ]
        shipping_options = [
            {
                "shipping_rate_data": {
                    "type": "fixed_amount",
                    "fixed_amount": {
                        "amount": _minor_units(self._settings.shipping_fee),
                        "currency": self._settings.currency,
                    },
                    "display_name": "Standard Shipping",
                    "delivery_estimate": {
                        "minimum": {"unit": "business_day", "value": 3},
                        "maximum": {"unit": "business_day", "value": 5},
                    },
                }
            }
        ]
        metadata = {
            "userId": identity.user_id,
            "userEmail": identity.email,
            "cartItemIds": json.dumps([item.cart_item_id for item in cart_items]),
            "bookIds": json.dumps([item.book_id for item in cart_items]),
        }

        client_url = self._settings.client_url.rstrip("/")
        with self._client_factory() as client:
            raw_session = client.create_checkout_session(
                line_items=line_items,
                success_url=f"{client_url}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{client_url}/cart",
                metadata=metadata,
                shipping_options=shipping_options,
                customer_email=identity.email,
            )

        session_id = raw_session.get("id")
        if not session_id:
            raise PaymentGatewayError("Payment gateway returned no session id")
        logger.info(
            "Created checkout session {} for {} with {} books",
            session_id,
            identity.email,
            len(cart_items),
        )
        return CheckoutSession(session_id=str(session_id), url=raw_session.get("url"))

    def complete_card_payment(
        self, identity: Identity, session_id: str, now: datetime
    ) -> SaleResult:
        with self._client_factory() as client:
            raw_session = client.retrieve_checkout_session(session_id)

        snapshot = normalize_checkout_session(raw_session)
        if snapshot is None:
            raise PaymentGatewayError("Payment gateway returned an unreadable session")
        if snapshot.user_email and snapshot.user_email != identity.email:
            raise NotOwner(session_id, "This checkout session belongs to another user")
        if not snapshot.is_paid:
            raise PaymentNotCompleted("Payment has not been completed")
        return self._confirm_card_sale(snapshot, now)

    def handle_webhook(
        self, payload: bytes, signature_header: str | None, now: datetime
    ) -> SaleResult | None:
        secret = self._settings.payment_webhook_secret
        if not secret:
            raise WebhookVerificationError("Webhook secret is not configured")
        verify_webhook_signature(
            payload,
            signature_header,
            secret,
            tolerance_seconds=self._settings.payment_webhook_tolerance_seconds,
            now=now,
        )

        try:
            event = json.loads(payload)
        except ValueError as exc:
            raise WebhookVerificationError("Webhook payload is not JSON") from exc

        event_type = event.get("type") if isinstance(event, dict) else None
        if event_type != CHECKOUT_COMPLETED_EVENT:
            logger.debug("Ignoring payment webhook event type={}", event_type)
            return None

        data = event.get("data")
        raw_session = data.get("object") if isinstance(data, dict) else None
        if not isinstance(raw_session, dict):
            raw_session = {}
        snapshot = normalize_checkout_session(raw_session)
        if snapshot is None or not snapshot.is_paid:
            logger.warning("Ignoring unpaid or unreadable checkout session in webhook")
            return None
        return self._confirm_card_sale(snapshot, now)

    def _confirm_card_sale(self, snapshot: CheckoutSessionSnapshot, now: datetime) -> SaleResult:
        if not snapshot.book_ids or not snapshot.user_email:
            raise PaymentGatewayError("Checkout session metadata is incomplete")
        buyer = Identity(
            user_id=snapshot.user_id or snapshot.user_email,
            email=snapshot.user_email,
        )

        schedule = self._settings.sale_retry_backoff_schedule
        attempts = self._settings.sale_retry_attempts
        attempt = 0
        while True:
            attempt += 1
            try:
                # Every attempt re-checks the session id before touching books.
                return crud.on_order_confirmed(
                    self._session,
                    snapshot.book_ids,
                    buyer,
                    PaymentMethod.CARD,
                    now,
                    external_ref=snapshot.session_id,
                    amount=snapshot.amount_total,
                    settings=self._settings,
                )
            except TransientStoreFailure:
                if attempt >= attempts:
                    raise
                delay = schedule[min(attempt - 1, len(schedule) - 1)]
                logger.warning(
                    "Retrying card sale for session={} after transient failure (attempt {}/{}, sleep {}s)",
                    snapshot.session_id,
                    attempt,
                    attempts,
                    delay,
                )
                self._sleep(delay)

    # ------------------------------------------------------------------
    # Cash on delivery

    def cash_on_delivery(
        self,
        identity: Identity,
        cart_item_ids: Sequence[str],
        address: ShippingAddress,
        now: datetime,
    ) -> SaleResult:
        cart_items = self._selected_cart_items(identity, cart_item_ids)
        return crud.on_order_confirmed(
            self._session,
            [item.book_id for item in cart_items],
            identity,
            PaymentMethod.CASH_ON_DELIVERY,
            now,
            shipping_address=address.model_dump(),
            settings=self._settings,
        )

    # ------------------------------------------------------------------
    # History

    def payment_history(self, identity: Identity) -> list[Order]:
        return [Order.model_validate(order) for order in self._order_repo.list_for_email(identity.email)]

    def _selected_cart_items(self, identity: Identity, cart_item_ids: Sequence[str]):
        cart_items = self._cart_repo.list_items(identity.email, cart_item_ids)
        if not cart_items:
            raise CartError("No valid cart items found")

        books = {
            book.book_id: book
            for book in self._book_repo.load_books(item.book_id for item in cart_items)
        }
        unavailable = [
            item.book_id
            for item in cart_items
            if item.book_id not in books or books[item.book_id].is_sold
        ]
        if unavailable:
            raise SaleConflict(unavailable)
        return cart_items


