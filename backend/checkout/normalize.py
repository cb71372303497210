from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class CheckoutSessionSnapshot:
    """The parts of a gateway checkout session the sale path relies on."""

    session_id: str
    payment_status: str
    amount_total: float | None
    user_id: str | None
    user_email: str | None
    book_ids: list[str] = field(default_factory=list)
    cart_item_ids: list[str] = field(default_factory=list)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"


def _as_list(value: Any) -> list[str]:
    """Return value as a list of strings, decoding JSON-encoded metadata."""
    if isinstance(value, list):
        return [str(item) for item in value]
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return []
        return [str(item) for item in parsed] if isinstance(parsed, list) else []
    return []


def normalize_checkout_session(raw_session: dict[str, Any]) -> CheckoutSessionSnapshot | None:
    session_id = raw_session.get("id")
    if not session_id:
        return None

    metadata = raw_session.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}

    amount_total = raw_session.get("amount_total")
    amount = None
    if isinstance(amount_total, (int, float)):
        # Gateway amounts are in the currency's minor unit.
        amount = amount_total / 100

    return CheckoutSessionSnapshot(
        session_id=str(session_id),
        payment_status=str(raw_session.get("payment_status") or "unpaid"),
        amount_total=amount,
        user_id=metadata.get("userId"),
        user_email=metadata.get("userEmail"),
        book_ids=_as_list(metadata.get("bookIds")),
        cart_item_ids=_as_list(metadata.get("cartItemIds")),
    )
