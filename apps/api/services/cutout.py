"""Subject cutout through an external background-removal endpoint."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)


class CutoutUnavailableError(RuntimeError):
    """The cutout endpoint is not configured or could not produce a cutout."""


class CutoutClient:
    def __init__(
        self,
        *,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_url = settings.CUTOUT_API_URL if api_url is None else api_url
        self.api_key = settings.CUTOUT_API_KEY if api_key is None else api_key
        self.timeout_seconds = settings.CUTOUT_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        self.transport = transport

    @property
    def enabled(self) -> bool:
        return bool((self.api_url or "").strip())

    async def remove_background(self, image: bytes, filename: str = "frame.png") -> bytes:
        """Return a PNG of the subject on a transparent background."""
        if not self.enabled:
            raise CutoutUnavailableError("Cutout endpoint is not configured")

        headers = {"X-Api-Key": self.api_key} if self.api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.post(
                    self.api_url,
                    headers=headers,
                    files={"image_file": (filename, image, "image/png")},
                    data={"size": "auto", "format": "png"},
                )
        except httpx.HTTPError as exc:
            raise CutoutUnavailableError(f"Cutout request failed: {exc}") from exc

        if response.status_code >= 400:
            logger.warning("Cutout endpoint returned HTTP %s", response.status_code)
            raise CutoutUnavailableError(f"Cutout endpoint returned HTTP {response.status_code}")
        if not response.headers.get("content-type", "").startswith("image/") or not response.content:
            raise CutoutUnavailableError("Cutout endpoint returned no image")
        return response.content
