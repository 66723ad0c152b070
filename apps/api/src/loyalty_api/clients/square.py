"""Minimal Square Payments API client used by reconciliation."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import httpx
from loguru import logger

from loyalty_api.core.settings import settings


class SquareAPIError(RuntimeError):
    """Raised when the Square API rejects or fails a request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _isoformat(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


class SquarePaymentsClient:
    """Lists payments for a location, following Square's cursor pagination."""

    def __init__(
        self,
        access_token: str,
        *,
        base_url: str | None = None,
        api_version: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._access_token = access_token
        self._base_url = (base_url or settings.square_api_base_url).rstrip("/")
        self._api_version = api_version or settings.square_api_version
        self._timeout_seconds = timeout_seconds or settings.square_api_timeout_seconds
        self._transport = transport

    @classmethod
    def from_settings(cls) -> "SquarePaymentsClient | None":
        if not settings.square_access_token:
            return None
        return cls(settings.square_access_token)

    async def list_payments(
        self,
        *,
        location_id: str,
        begin_time: datetime,
        end_time: datetime,
        page_limit: int = 100,
    ) -> list[dict[str, Any]]:
        headers = {
            "Authorization": f"Bearer {self._access_token}",
            "Square-Version": self._api_version,
            "Accept": "application/json",
        }
        params: dict[str, Any] = {
            "location_id": location_id,
            "begin_time": _isoformat(begin_time),
            "end_time": _isoformat(end_time),
            "sort_order": "ASC",
            "limit": page_limit,
        }
        payments: list[dict[str, Any]] = []
        async with httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout_seconds,
            transport=self._transport,
        ) as client:
            while True:
                try:
                    response = await client.get("/v2/payments", params=params, headers=headers)
                    response.raise_for_status()
                except httpx.HTTPStatusError as exc:
                    raise SquareAPIError(
                        f"Square payments listing failed with HTTP {exc.response.status_code}",
                        status_code=exc.response.status_code,
                    ) from exc
                except httpx.HTTPError as exc:
                    raise SquareAPIError(f"Square payments listing failed: {exc}") from exc

                data = response.json()
                page = data.get("payments") or []
                payments.extend(item for item in page if isinstance(item, dict))
                cursor = data.get("cursor")
                if not cursor:
                    break
                params["cursor"] = cursor

        logger.debug("Listed Square payments", location_id=location_id, count=len(payments))
        return payments


__all__ = ["SquareAPIError", "SquarePaymentsClient"]
