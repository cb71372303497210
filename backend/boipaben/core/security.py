"""Verification of identity-provider access tokens.

Tokens are compact HS256 JWTs carrying ``uid``, ``email`` and ``exp`` claims,
signed with the secret shared with the identity provider.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from typing import Any

from boipaben.domain.models import Identity


class InvalidToken(Exception):
    pass


class TokenExpired(InvalidToken):
    def __init__(self, expired_at: datetime) -> None:
        self.expired_at = expired_at
        super().__init__("Token expired")


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    try:
        return base64.urlsafe_b64decode(segment + padding)
    except (ValueError, TypeError) as exc:
        raise InvalidToken("Malformed token segment") from exc


def _sign(signing_input: str, secret: str) -> str:
    digest = hmac.new(
        secret.encode("utf-8"),
        signing_input.encode("ascii"),
        hashlib.sha256,
    ).digest()
    return _b64encode(digest)


def issue_access_token(
    identity: Identity,
    secret: str,
    *,
    expires_in: timedelta = timedelta(days=1),
    now: datetime | None = None,
) -> str:
    issued = now or datetime.now(timezone.utc)
    header = {"alg": "HS256", "typ": "JWT"}
    claims = {
        "uid": identity.user_id,
        "email": identity.email,
        "iat": int(issued.timestamp()),
        "exp": int((issued + expires_in).timestamp()),
    }
    signing_input = ".".join(
        _b64encode(json.dumps(part, separators=(",", ":")).encode("utf-8"))
        for part in (header, claims)
    )
    return f"{signing_input}.{_sign(signing_input, secret)}"


def decode_access_token(token: str, secret: str, *, now: datetime | None = None) -> Identity:
    parts = token.split(".")
    if len(parts) != 3:
        raise InvalidToken("Token must have three segments")
    header_segment, claims_segment, signature = parts

    try:
        header: dict[str, Any] = json.loads(_b64decode(header_segment))
        claims: dict[str, Any] = json.loads(_b64decode(claims_segment))
    except ValueError as exc:
        raise InvalidToken("Token segments are not JSON") from exc
    if not isinstance(header, dict) or not isinstance(claims, dict):
        raise InvalidToken("Token segments are not JSON objects")
    if header.get("alg") != "HS256":
        raise InvalidToken("Unsupported token algorithm")

    expected = _sign(f"{header_segment}.{claims_segment}", secret)
    if not hmac.compare_digest(expected, signature):
        raise InvalidToken("Invalid token signature")

    exp = claims.get("exp")
    if not isinstance(exp, (int, float)):
        raise InvalidToken("Token has no expiry")
    expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
    if expires_at <= (now or datetime.now(timezone.utc)):
        raise TokenExpired(expires_at)

    uid = claims.get("uid")
    email = claims.get("email")
    if not uid or not email:
        raise InvalidToken("Token is missing uid or email")
    return Identity(user_id=str(uid), email=str(email))
