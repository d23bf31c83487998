"""Client for the external image generation provider (submit, then poll to completion)."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Optional

import httpx

from config import require_generation_api_key, settings

logger = logging.getLogger(__name__)

ProviderState = Literal["pending", "processing", "completed", "failed"]
ProgressCallback = Callable[[float], None]


class GenerationError(RuntimeError):
    """Base class for generation provider failures."""


class GenerationProviderError(GenerationError):
    """The provider rejected the request or reported the job as failed."""


class GenerationTimeoutError(GenerationError):
    """Submit timed out, or polling exhausted its attempts or deadline."""


@dataclass(frozen=True)
class PollPolicy:
    interval_seconds: float
    max_attempts: int
    deadline_seconds: float
    request_timeout_seconds: float

    @classmethod
    def from_settings(cls) -> "PollPolicy":
        return cls(
            interval_seconds=settings.GENERATION_POLL_INTERVAL_SECONDS,
            max_attempts=settings.GENERATION_POLL_MAX_ATTEMPTS,
            deadline_seconds=settings.GENERATION_POLL_DEADLINE_SECONDS,
            request_timeout_seconds=settings.GENERATION_POLL_TIMEOUT_SECONDS,
        )


@dataclass(frozen=True)
class ProviderStatus:
    status: ProviderState
    progress: Optional[float] = None
    results: List[str] = field(default_factory=list)


class GenerationClient:
    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        submit_timeout_seconds: Optional[float] = None,
        poll_policy: Optional[PollPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_url = (base_url or settings.GENERATION_API_BASE_URL).rstrip("/")
        self.api_key = settings.GENERATION_API_KEY if api_key is None else api_key
        self.model = model or settings.GENERATION_MODEL
        self.submit_timeout_seconds = (
            settings.GENERATION_SUBMIT_TIMEOUT_SECONDS
            if submit_timeout_seconds is None
            else submit_timeout_seconds
        )
        self.poll_policy = poll_policy or PollPolicy.from_settings()
        self.transport = transport
        self._sleep = sleep
        self._monotonic = monotonic

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=self.transport,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )

    async def submit(
        self,
        prompt: str,
        reference_urls: Optional[List[str]] = None,
        size: Optional[str] = None,
        quality: Optional[str] = None,
    ) -> str:
        """Create a provider job and return its id."""
        if not self.api_key:
            try:
                self.api_key = require_generation_api_key()
            except ValueError as exc:
                raise GenerationProviderError(str(exc)) from exc

        payload: Dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "size": size or settings.GENERATION_IMAGE_SIZE,
            "quality": quality or settings.GENERATION_IMAGE_QUALITY,
        }
        if reference_urls:
            payload["image_urls"] = list(reference_urls)

        try:
            async with self._client(self.submit_timeout_seconds) as client:
                response = await client.post("/v1/images/generations", json=payload)
        except httpx.TimeoutException as exc:
            raise GenerationTimeoutError("API request timeout") from exc
        except httpx.TransportError as exc:
            raise GenerationProviderError(f"Generation provider unreachable: {exc}") from exc

        if response.status_code >= 400:
            logger.error(
                "Generation provider rejected submit: HTTP %s %s",
                response.status_code,
                response.text[:500],
            )
            raise GenerationProviderError("Failed to create image generation task")

        provider_job_id = str((response.json() or {}).get("id") or "").strip()
        if not provider_job_id:
            raise GenerationProviderError("Generation provider returned no task id")
        return provider_job_id

    async def poll(self, provider_job_id: str) -> ProviderStatus:
        """Fetch provider status once; transient transport failures read as still processing."""
        try:
            async with self._client(self.poll_policy.request_timeout_seconds) as client:
                response = await client.get(f"/v1/tasks/{provider_job_id}")
        except httpx.TimeoutException:
            logger.warning("Status poll timeout for provider task %s", provider_job_id)
            return ProviderStatus(status="processing")
        except httpx.TransportError as exc:
            logger.warning("Status poll transport error for provider task %s: %s", provider_job_id, exc)
            return ProviderStatus(status="processing")

        if response.status_code >= 500:
            logger.warning("Status poll HTTP %s for provider task %s", response.status_code, provider_job_id)
            return ProviderStatus(status="processing")
        if response.status_code >= 400:
            raise GenerationProviderError("Failed to get task status")

        body = response.json() or {}
        status = str(body.get("status") or "processing")
        if status not in ("pending", "processing", "completed", "failed"):
            status = "processing"
        progress_raw = body.get("progress")
        try:
            progress = max(0.0, min(100.0, float(progress_raw))) if progress_raw is not None else None
        except (TypeError, ValueError):
            progress = None
        results = [str(url) for url in (body.get("results") or []) if url]
        return ProviderStatus(status=status, progress=progress, results=results)

    async def wait_for_completion(
        self,
        provider_job_id: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[str]:
        """Poll until terminal, bounded by max attempts and an overall deadline."""
        policy = self.poll_policy
        started = self._monotonic()
        last_progress = 0.0
        for attempt in range(policy.max_attempts):
            if self._monotonic() - started > policy.deadline_seconds:
                raise GenerationTimeoutError("Task timeout - please try again")

            status = await self.poll(provider_job_id)
            if status.progress is not None:
                last_progress = max(last_progress, status.progress)
            if on_progress is not None:
                on_progress(last_progress)

            if status.status == "completed":
                if not status.results:
                    raise GenerationProviderError("No results from image generation")
                return status.results
            if status.status == "failed":
                raise GenerationProviderError("Image generation failed")

            if attempt + 1 < policy.max_attempts:
                await self._sleep(policy.interval_seconds)

        raise GenerationTimeoutError("Task timeout - please try again")

    async def generate(
        self,
        prompt: str,
        reference_urls: Optional[List[str]] = None,
        on_progress: Optional[ProgressCallback] = None,
        size: Optional[str] = None,
        quality: Optional[str] = None,
    ) -> List[str]:
        provider_job_id = await self.submit(prompt, reference_urls=reference_urls, size=size, quality=quality)
        logger.info("Submitted provider task %s", provider_job_id)
        return await self.wait_for_completion(provider_job_id, on_progress=on_progress)
