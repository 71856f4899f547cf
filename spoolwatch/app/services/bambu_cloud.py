"""
Bambu Lab Cloud API Service

Looks up the printer's most recent print task, whose slicer estimate gives
per-filament usage for a finished print.
"""

import httpx
import logging
from typing import Optional

from pydantic import ValidationError

from spoolwatch.app.schemas.cloud import CloudTask

logger = logging.getLogger(__name__)

BAMBU_API_BASE = "https://api.bambulab.com"


class BambuCloudError(Exception):
    """Base exception for Bambu Cloud errors."""
    pass


class BambuCloudAuthError(BambuCloudError):
    """Authentication related errors."""
    pass


class BambuCloudService:
    """Service for interacting with Bambu Lab Cloud API."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        base_url: str = BAMBU_API_BASE,
        timeout: float = 15.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token: Optional[str] = access_token or None
        self._client = httpx.AsyncClient(timeout=timeout)

    @property
    def is_authenticated(self) -> bool:
        """Check if we have a token to send."""
        return bool(self.access_token)

    def _get_headers(self) -> dict:
        """Get headers for authenticated requests."""
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "SpoolWatch/1.0",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def get_latest_task(self, device_id: str) -> Optional[CloudTask]:
        """
        Get the most recent task for a device.

        Returns None when the cloud has no task for the device.
        Raises BambuCloudAuthError without a token, BambuCloudError on any
        HTTP, network or payload problem.
        """
        if not self.is_authenticated:
            raise BambuCloudAuthError("No cloud token configured")

        try:
            response = await self._client.get(
                f"{self.base_url}/v1/user-service/my/tasks",
                headers=self._get_headers(),
                params={"deviceId": device_id, "limit": 1},
            )
        except httpx.RequestError as e:
            raise BambuCloudError(f"Request failed: {e}")

        if response.status_code != 200:
            raise BambuCloudError(f"Failed to get tasks: HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise BambuCloudError(f"Invalid task response: {e}")

        hits = data.get("hits") if isinstance(data, dict) else None
        if hits is not None and not isinstance(hits, list):
            raise BambuCloudError(f"Unexpected task list: {type(hits).__name__}")
        if not hits:
            logger.warning("No tasks found in Bambu Cloud API for device %s", device_id)
            return None

        try:
            return CloudTask.model_validate(hits[0])
        except ValidationError as e:
            raise BambuCloudError(f"Unexpected task format: {e}")

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()
