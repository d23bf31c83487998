"""Multi-stage enhancement pipelines for image and video jobs."""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urlparse

from config import settings
from multimodal.video import (
    VideoSynthesisError,
    extract_first_frame,
    get_video_duration_seconds,
    synthesize_video,
)
from services.cutout import CutoutClient, CutoutUnavailableError
from services.generation import GenerationClient, GenerationError
from services.job_queue import InvalidJobTransition, Job, JobQueue, JobQueueBusyError, JobResult
from services.media_storage import MediaStorage, MediaStorageError
from services.scoring import Scorer
from services.style_profile import (
    TEXT_TO_IMAGE_SUFFIX,
    build_enhance_prompt,
    build_video_background_prompt,
    resolve_style_profile,
)

logger = logging.getLogger(__name__)

BUSY_ERROR = "Server busy, please try again later"


class StageOutcome(enum.Enum):
    SUCCESS_WITH_ASSET = "success_with_asset"
    SUCCESS_WITHOUT_ASSET = "success_without_asset"
    HARD_FAILURE = "hard_failure"


@dataclass(frozen=True)
class StageResult:
    outcome: StageOutcome
    asset: Optional[str] = None
    error: Optional[str] = None


def _map_progress(start: float, end: float) -> Callable[[float], float]:
    span = end - start
    return lambda provider_progress: start + span * max(0.0, min(100.0, provider_progress)) / 100.0


class WorkflowOrchestrator:
    """Drives one job through its stages and records the terminal state.

    Credits are not touched here; the caller decides on refunds from the
    final job status.
    """

    def __init__(
        self,
        queue: JobQueue,
        generation: GenerationClient,
        storage: MediaStorage,
        scorer: Scorer,
        cutout: Optional[CutoutClient] = None,
    ) -> None:
        self.queue = queue
        self.generation = generation
        self.storage = storage
        self.scorer = scorer
        self.cutout = cutout

    def _progress(self, job_id: str, value: float, label: Optional[str] = None) -> None:
        self.queue.update_progress(job_id, value, label)

    def _generation_progress(self, job_id: str, start: float, end: float, label: str) -> Callable[[float], None]:
        mapper = _map_progress(start, end)
        return lambda provider_progress: self._progress(job_id, mapper(provider_progress), label)

    async def run(self, job_id: str) -> Job:
        try:
            job = await self.queue.start(job_id)
        except JobQueueBusyError:
            logger.warning("Job %s could not start, queue is full", job_id)
            return await self._finish_failed(job_id, BUSY_ERROR)
        except InvalidJobTransition:
            return self.queue.get(job_id)

        try:
            if job.input.content_type == "video":
                result = await self._run_video(job)
            else:
                result = await self._run_image(job)
        except (GenerationError, MediaStorageError, VideoSynthesisError) as exc:
            logger.warning("Job %s failed: %s", job_id, exc)
            return await self._finish_failed(job_id, str(exc))

        try:
            return await self.queue.complete(job_id, result)
        except InvalidJobTransition:
            logger.info("Job %s finished after it was already terminal, dropping result", job_id)
            return self.queue.get(job_id)

    async def _finish_failed(self, job_id: str, error: str) -> Job:
        try:
            return await self.queue.fail(job_id, error)
        except InvalidJobTransition:
            return self.queue.get(job_id)

    async def _run_image(self, job: Job) -> JobResult:
        params = job.input
        self._progress(job.id, 0, "Analyzing style")
        profile = resolve_style_profile(
            style_source=params.style_source,
            preset_style=params.preset_style,
            reference_url=params.reference_url,
            effect_id=params.effect_id,
            effect_intensity=params.effect_intensity,
        )
        self._progress(job.id, 10, "Style ready")

        prompt = build_enhance_prompt(profile, media_type="image")
        self._progress(job.id, 15, "Building prompt")

        public_url = await self.storage.ensure_public_url(params.content_url)
        if public_url:
            reference_urls = [public_url]
        else:
            logger.info("Input for job %s is not publicly reachable, using text-to-image", job.id)
            prompt = f"{prompt}, {TEXT_TO_IMAGE_SUFFIX}"
            reference_urls = None
        self._progress(job.id, 20, "Submitting")

        results = await self.generation.generate(
            prompt,
            reference_urls=reference_urls,
            on_progress=self._generation_progress(job.id, 25, 80, "Generating"),
        )
        enhanced_url = results[0]

        self._progress(job.id, 85, "Scoring")
        score = await self.scorer.score(enhanced_url)
        self._progress(job.id, 95, "Finishing")

        return JobResult(
            type="image",
            url=enhanced_url,
            original_url=params.content_url,
            score=score.as_dict(),
        )

    async def _run_video(self, job: Job) -> JobResult:
        params = job.input
        temp_dir = tempfile.mkdtemp(prefix=f"enhance_{job.id}_")
        try:
            self._progress(job.id, 0, "Learning style")
            profile = resolve_style_profile(
                style_source=params.style_source,
                preset_style=params.preset_style,
                reference_url=params.reference_url,
                effect_id=params.effect_id,
                effect_intensity=params.effect_intensity,
            )
            self._progress(job.id, 10, "Generating background")

            results = await self.generation.generate(
                build_video_background_prompt(profile),
                on_progress=self._generation_progress(job.id, 10, 35, "Generating background"),
            )
            background_url = results[0]
            self._progress(job.id, 35, "Extracting subject")

            source_path = os.path.join(temp_dir, f"source{Path(urlparse(params.content_url).path).suffix or '.mp4'}")
            cutout = await self._cutout_stage(job.id, params.content_url, source_path, temp_dir)
            if cutout.outcome is StageOutcome.HARD_FAILURE:
                raise VideoSynthesisError(cutout.error or "Subject extraction failed")
            self._progress(job.id, 55, "Synthesizing video")

            background_path = os.path.join(temp_dir, "background.png")
            background_bytes = await self.storage.fetch(background_url)
            await asyncio.to_thread(Path(background_path).write_bytes, background_bytes)

            duration = settings.VIDEO_DURATION_SECONDS
            if os.path.exists(source_path):
                probed = await asyncio.to_thread(get_video_duration_seconds, source_path)
                if probed > 0:
                    duration = min(duration, probed)

            output_path = os.path.join(temp_dir, "output.mp4")
            await asyncio.to_thread(
                synthesize_video,
                background_path,
                output_path,
                cutout.asset,
                duration,
            )
            video_bytes = await asyncio.to_thread(Path(output_path).read_bytes)
            video_url = await self.storage.store(video_bytes, suffix=".mp4")
            self._progress(job.id, 90, "Scoring")

            score = await self.scorer.score(background_url)
            self._progress(job.id, 95, "Finishing")

            return JobResult(
                type="video",
                url=video_url,
                original_url=params.content_url,
                score=score.as_dict(),
            )
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    async def _cutout_stage(self, job_id: str, content_url: str, source_path: str, temp_dir: str) -> StageResult:
        """Extract the subject from the first frame. Never fails the job."""
        if self.cutout is None or not self.cutout.enabled:
            return StageResult(StageOutcome.SUCCESS_WITHOUT_ASSET)

        try:
            source_bytes = await self.storage.fetch(content_url)
            await asyncio.to_thread(Path(source_path).write_bytes, source_bytes)
            self._progress(job_id, 40, "Extracting subject")

            frame_path = await asyncio.to_thread(
                extract_first_frame, source_path, os.path.join(temp_dir, "frame.png")
            )
            frame_bytes = await asyncio.to_thread(Path(frame_path).read_bytes)
            self._progress(job_id, 45, "Removing background")

            cutout_bytes = await self.cutout.remove_background(frame_bytes)
            cutout_path = os.path.join(temp_dir, "subject.png")
            await asyncio.to_thread(Path(cutout_path).write_bytes, cutout_bytes)
        except (MediaStorageError, VideoSynthesisError, CutoutUnavailableError, OSError) as exc:
            logger.warning("Subject cutout skipped for job %s: %s", job_id, exc)
            return StageResult(StageOutcome.SUCCESS_WITHOUT_ASSET, error=str(exc))

        return StageResult(StageOutcome.SUCCESS_WITH_ASSET, asset=cutout_path)
