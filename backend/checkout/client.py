from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any
from urllib.parse import urlencode

import httpx
from loguru import logger

from boipaben.core.config import settings


class PaymentGatewayError(Exception):
    """The payment gateway rejected a request or could not be reached."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


def _flatten_form(value: Any, prefix: str, into: list[tuple[str, str]]) -> None:
    """Encode nested mappings/lists the way the gateway's form API expects."""

    if value is None:
        return
    if isinstance(value, Mapping):
        for key, item in value.items():
            _flatten_form(item, f"{prefix}[{key}]" if prefix else str(key), into)
        return
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        for index, item in enumerate(value):
            _flatten_form(item, f"{prefix}[{index}]", into)
        return
    if isinstance(value, bool):
        into.append((prefix, "true" if value else "false"))
        return
    into.append((prefix, str(value)))


class PaymentGatewayClient:
    """Thin wrapper around the hosted checkout endpoints of the payment gateway."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        secret_key: str | None = None,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url or str(settings.payment_api_base)
        secret = secret_key if secret_key is not None else settings.payment_secret_key
        if not secret:
            raise PaymentGatewayError("PAYMENT_SECRET_KEY is not configured")
        self.timeout = timeout
        self.client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {secret}"},
            transport=transport,
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        logger.info("Payment gateway {} {}", method, path)
        try:
            response = self.client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Payment gateway {} {} failed with status {}",
                method,
                path,
                exc.response.status_code,
            )
            raise PaymentGatewayError(
                "Payment gateway rejected the request",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("Payment gateway {} {} unreachable: {}", method, path, exc)
            raise PaymentGatewayError("Payment gateway unreachable") from exc

        payload = response.json()
        if not isinstance(payload, dict):
            raise PaymentGatewayError("Unexpected payment gateway response")
        return payload

    def create_checkout_session(
        self,
        *,
        line_items: Sequence[Mapping[str, Any]],
        success_url: str,
        cancel_url: str,
        metadata: Mapping[str, str],
        shipping_options: Sequence[Mapping[str, Any]] | None = None,
        customer_email: str | None = None,
    ) -> dict[str, Any]:
        form: list[tuple[str, str]] = []
        _flatten_form(
            {
                "mode": "payment",
                "payment_method_types": ["card"],
                "line_items": list(line_items),
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": dict(metadata),
                "shipping_options": list(shipping_options or []),
                "customer_email": customer_email,
            },
            "",
            form,
        )
        return self._request(
            "POST",
            "/v1/checkout/sessions",
            content=urlencode(form),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

    def retrieve_checkout_session(self, session_id: str) -> dict[str, Any]:
        return self._request("GET", f"/v1/checkout/sessions/{session_id}")

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "PaymentGatewayClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
