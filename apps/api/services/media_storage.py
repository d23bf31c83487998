"""Media storage: store bytes behind a URL, fetch bytes back from a URL."""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import httpx

from config import settings

logger = logging.getLogger(__name__)


class MediaStorageError(RuntimeError):
    """Raised when media cannot be stored or fetched."""


def is_public_url(url: str) -> bool:
    """True when an external provider can be expected to reach ``url``."""
    parsed = urlparse(url or "")
    host = (parsed.hostname or "").lower()
    return parsed.scheme == "https" and host not in ("", "localhost", "127.0.0.1", "0.0.0.0")


def _safe_suffix(suffix: str) -> str:
    cleaned = "".join(ch for ch in (suffix or "") if ch.isalnum())
    return f".{cleaned[:8]}" if cleaned else ".bin"


class MediaStorage(ABC):
    @abstractmethod
    async def store(self, data: bytes, *, suffix: str = ".bin") -> str:
        raise NotImplementedError

    @abstractmethod
    async def fetch(self, url: str) -> bytes:
        raise NotImplementedError

    @abstractmethod
    def local_path(self, url: str) -> Optional[Path]:
        """Return the filesystem path backing ``url`` when this storage owns it."""
        raise NotImplementedError

    async def ensure_public_url(self, url: str) -> Optional[str]:
        """Return a provider-reachable URL for ``url``, uploading it first if needed.

        Returns ``None`` when the media cannot be made publicly reachable.
        """
        if is_public_url(url):
            return url
        try:
            data = await self.fetch(url)
            stored_url = await self.store(data, suffix=Path(urlparse(url).path).suffix)
        except MediaStorageError as exc:
            logger.warning("Could not re-host %s for the provider: %s", url, exc)
            return None
        return stored_url if is_public_url(stored_url) else None


class LocalMediaStorage(MediaStorage):
    """Files under ``upload_dir`` served at ``public_base_url + url_prefix``."""

    def __init__(
        self,
        *,
        upload_dir: Optional[str] = None,
        url_prefix: Optional[str] = None,
        public_base_url: Optional[str] = None,
        fetch_timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.upload_dir = Path(upload_dir or settings.UPLOAD_DIR).resolve()
        self.url_prefix = "/" + (url_prefix or settings.UPLOAD_URL_PREFIX).strip("/")
        base = settings.PUBLIC_BASE_URL if public_base_url is None else public_base_url
        self.public_base_url = (base or "").rstrip("/")
        self.fetch_timeout_seconds = (
            settings.MEDIA_FETCH_TIMEOUT_SECONDS if fetch_timeout_seconds is None else fetch_timeout_seconds
        )
        self.transport = transport

    def _url_for(self, name: str) -> str:
        return f"{self.public_base_url}{self.url_prefix}/{name}"

    def local_path(self, url: str) -> Optional[Path]:
        parsed = urlparse(url or "")
        path = parsed.path
        if parsed.scheme in ("http", "https"):
            if not self.public_base_url or not url.startswith(self.public_base_url):
                return None
            path = urlparse(url[len(self.public_base_url):]).path
        if not path.startswith(self.url_prefix + "/"):
            return None
        candidate = (self.upload_dir / path[len(self.url_prefix) + 1:]).resolve()
        if self.upload_dir not in candidate.parents:
            raise MediaStorageError(f"Path traversal detected: {url}")
        return candidate

    async def store(self, data: bytes, *, suffix: str = ".bin") -> str:
        name = f"{uuid.uuid4().hex}{_safe_suffix(suffix)}"
        target = self.upload_dir / name

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise MediaStorageError(f"Could not store media: {exc}") from exc
        return self._url_for(name)

    async def fetch(self, url: str) -> bytes:
        path = self.local_path(url)
        if path is not None:
            if not path.exists():
                raise MediaStorageError(f"Media not found: {url}")
            return await asyncio.to_thread(path.read_bytes)

        if not url.startswith(("http://", "https://")):
            raise MediaStorageError(f"Media not found: {url}")
        try:
            async with httpx.AsyncClient(
                timeout=self.fetch_timeout_seconds,
                transport=self.transport,
                follow_redirects=True,
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            raise MediaStorageError(f"Failed to download media: {exc}") from exc
        if response.status_code >= 400:
            raise MediaStorageError(f"Failed to download media: HTTP {response.status_code}")
        return response.content
