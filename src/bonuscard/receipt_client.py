"""Async HTTP client for the point-of-sale cloud receipt API."""

from __future__ import annotations

import uuid
from typing import Any

import httpx


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class ReceiptError(Exception):
    """Base exception for receipt API operations."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ReceiptAuthError(ReceiptError):
    """401/403: access token rejected."""


class ReceiptNotFoundError(ReceiptError):
    """404: organization or resource not found."""


class ReceiptValidationError(ReceiptError):
    """400/422: receipt body rejected."""


class ReceiptServerError(ReceiptError):
    """5xx: server-side error (retryable)."""


class ReceiptConnectionError(ReceiptError):
    """Network or transport failure (retryable)."""


class ReceiptTimeoutError(ReceiptError):
    """Request timeout (retryable)."""


_STATUS_MAP: dict[int, type[ReceiptError]] = {
    400: ReceiptValidationError,
    401: ReceiptAuthError,
    403: ReceiptAuthError,
    404: ReceiptNotFoundError,
    422: ReceiptValidationError,
}

DISCOUNT_DESCRIPTION = "Virtual card discount"


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class ReceiptClient:
    """Async client for the point-of-sale receipts endpoint (API v2 header).

    Constructor accepts explicit params, no env-var loading. The access
    token is sent verbatim in ``Authorization`` (no scheme prefix), as the
    point-of-sale API expects.
    """

    def __init__(self, host: str, org_uuid: str, access_token: str) -> None:
        base_url = host.rstrip("/") + "/api/v1"
        self._org_uuid = org_uuid
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": access_token, "X-version": "2.0"},
            timeout=httpx.Timeout(connect=5.0, read=15.0, write=10.0, pool=5.0),
        )

    async def _request(
        self,
        method: str,
        endpoint: str,
        json_data: dict[str, Any] | None = None,
    ) -> Any:
        """Send a request and map errors to the receipt exception hierarchy."""
        try:
            response = await self._client.request(method, endpoint, json=json_data)
        except httpx.ConnectError as exc:
            raise ReceiptConnectionError(str(exc)) from exc
        except httpx.TimeoutException as exc:
            raise ReceiptTimeoutError(str(exc)) from exc
        except httpx.HTTPError as exc:
            raise ReceiptConnectionError(str(exc) or type(exc).__name__) from exc

        if response.status_code >= 400:
            body = response.text
            exc_cls = _STATUS_MAP.get(response.status_code)
            if exc_cls is not None:
                raise exc_cls(body, status_code=response.status_code)
            if response.status_code >= 500:
                raise ReceiptServerError(body, status_code=response.status_code)
            raise ReceiptError(body, status_code=response.status_code)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ReceiptError(
                f"Unreadable response body: {exc}", status_code=response.status_code,
            ) from exc

    async def create_sale_receipt(
        self,
        total_amount: int,
        discount_amount: int,
        receipt_uuid: str | None = None,
        item_name: str = "Goods",
    ) -> dict[str, Any]:
        """POST /organizations/{org}/receipts, a single-item SALE with a discount line.

        Returns ``{"receipt_uuid": ..., "response": <API body>}``.
        """
        if total_amount <= 0:
            raise ValueError(f"total_amount must be positive, got {total_amount}")
        if discount_amount < 0 or discount_amount > total_amount:
            raise ValueError(
                f"discount_amount must be within 0..{total_amount}, got {discount_amount}"
            )
        receipt_uuid = receipt_uuid or str(uuid.uuid4())
        payload: dict[str, Any] = {
            "uuid": receipt_uuid,
            "organization_uuid": self._org_uuid,
            "type": "SALE",
            "items": [
                {
                    "name": item_name,
                    "quantity": 1,
                    "price": total_amount,
                    "sum": total_amount,
                    "payment_type": "FULL_PAYMENT",
                    "payment_method": "CARD",
                }
            ],
            "discount": [
                {"value": discount_amount, "description": DISCOUNT_DESCRIPTION},
            ],
        }
        body = await self._request(
            "POST", f"/organizations/{self._org_uuid}/receipts", json_data=payload
        )
        return {"receipt_uuid": receipt_uuid, "response": body}

    # -- lifecycle ------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._client.is_closed

    async def close(self) -> None:
        """Close the underlying HTTP client. Safe to call more than once."""
        await self._client.aclose()

    async def __aenter__(self) -> ReceiptClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
