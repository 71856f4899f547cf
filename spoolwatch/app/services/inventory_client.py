"""HTTP client for the filament inventory's deduction API."""

import logging
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageRecord:
    """Grams to deduct from one spool, in the inventory's vocabulary."""

    brand: str
    type: str
    color: str
    grams_used: float
    slot_index: int | None = None


@dataclass
class DeductionResult:
    success: bool
    data: Any = None
    error: Any = None
    status_code: int | None = None


class InventoryClient:
    """Posts filament usage to the inventory. Failures are logged, never raised or retried."""

    def __init__(self, api_url: str, api_key: str, timeout: float = 10.0):
        self._base = api_url.rstrip("/") + "/api/filaments"
        self._headers = {"X-API-Key": api_key} if api_key else {}
        self._client = httpx.AsyncClient(timeout=timeout, headers=self._headers)

    async def close(self):
        await self._client.aclose()

    @staticmethod
    def _response_body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text

    async def _post(self, path: str, data: dict) -> DeductionResult:
        try:
            response = await self._client.post(f"{self._base}{path}", json=data)
        except httpx.RequestError as e:
            message = str(e) or e.__class__.__name__
            logger.error("Deduction failed (HTTP network_error): %s", message)
            return DeductionResult(success=False, error=message)

        body = self._response_body(response)
        if not response.is_success:
            logger.error("Deduction failed (HTTP %d): %s", response.status_code, body)
            return DeductionResult(success=False, error=body, status_code=response.status_code)
        return DeductionResult(success=True, data=body, status_code=response.status_code)

    async def deduct(self, usage: UsageRecord) -> DeductionResult:
        """Deduct grams from the spool matching brand, type and color."""
        result = await self._post(
            "/deduct",
            {
                "brand": usage.brand,
                "type": usage.type,
                "color": usage.color,
                "grams_used": usage.grams_used,
            },
        )
        if result.success:
            logger.info(
                "Deduction successful: %sg of %s %s (%s): %s",
                usage.grams_used,
                usage.brand,
                usage.type,
                usage.color,
                result.data,
            )
        return result
