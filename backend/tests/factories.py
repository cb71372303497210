"""Shared identities and clock values for the test suite."""

from datetime import datetime, timezone

from boipaben.domain.models import Identity

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
SELLER = Identity(user_id="seller-1", email="seller@example.com")
BUYER = Identity(user_id="buyer-1", email="buyer@example.com")
OTHER_BUYER = Identity(user_id="buyer-2", email="other@example.com")
