from __future__ import annotations

from datetime import timedelta

import pytest

from boipaben.core.security import (
    InvalidToken,
    TokenExpired,
    decode_access_token,
    issue_access_token,
)

from factories import BUYER, NOW


def test_round_trip_returns_identity():
    token = issue_access_token(BUYER, "secret", now=NOW)
    assert decode_access_token(token, "secret", now=NOW + timedelta(hours=1)) == BUYER


def test_wrong_secret_is_rejected():
    token = issue_access_token(BUYER, "secret", now=NOW)
    with pytest.raises(InvalidToken):
        decode_access_token(token, "other-secret", now=NOW)


def test_expired_token_is_rejected():
    token = issue_access_token(BUYER, "secret", now=NOW, expires_in=timedelta(minutes=5))
    with pytest.raises(TokenExpired) as excinfo:
        decode_access_token(token, "secret", now=NOW + timedelta(minutes=5))
    assert excinfo.value.expired_at == NOW + timedelta(minutes=5)


def test_tampered_claims_are_rejected():
    token = issue_access_token(BUYER, "secret", now=NOW)
    header, _, signature = token.split(".")
    forged = issue_access_token(BUYER.__class__("admin", "admin@example.com"), "x", now=NOW)
    forged_claims = forged.split(".")[1]
    with pytest.raises(InvalidToken):
        decode_access_token(f"{header}.{forged_claims}.{signature}", "secret", now=NOW)


@pytest.mark.parametrize("token", ["", "abc", "a.b", "####.####.####", "e30.e30.sig"])
def test_malformed_tokens_are_rejected(token):
    with pytest.raises(InvalidToken):
        decode_access_token(token, "secret", now=NOW)
