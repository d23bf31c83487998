"""Crash-recoverable job table with a status machine, timeout sweep and retention cleanup."""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from config import settings
from services.stores import RecordStore

logger = logging.getLogger(__name__)

JobStatus = Literal["pending", "processing", "completed", "failed"]
TERMINAL_STATUSES = ("completed", "failed")
TIMEOUT_ERROR = "timeout"

TimeoutListener = Callable[["Job"], Awaitable[None]]
RemovalListener = Callable[[List[str]], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobQueueError(RuntimeError):
    """Base class for job queue failures."""


class JobNotFoundError(JobQueueError):
    """Raised when a job id is unknown to the queue."""


class InvalidJobTransition(JobQueueError):
    """Raised when a transition is not allowed from the job's current status."""


class JobQueueBusyError(JobQueueError):
    """Raised when the concurrent processing cap is reached."""


class JobInput(BaseModel):
    content_type: Literal["image", "video"]
    content_url: str
    style_source: Literal["preset", "reference"] = "preset"
    preset_style: Optional[str] = None
    reference_url: Optional[str] = None
    effect_id: Optional[str] = None
    effect_intensity: int = Field(default=100, ge=0, le=100)
    user_id: str
    credits_spent: int = 0


class JobResult(BaseModel):
    type: Literal["image", "video"]
    url: str
    original_url: str
    score: Optional[Dict[str, Any]] = None


class Job(BaseModel):
    id: str
    status: JobStatus = "pending"
    progress: int = 0
    stage_label: Optional[str] = None
    input: JobInput
    result: Optional[JobResult] = None
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def _new_job_id() -> str:
    return f"job_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class JobQueue:
    """In-memory job table backed by a snapshot store.

    Progress updates stay in memory and reach the store through the periodic
    snapshot. ``create``, ``complete`` and ``fail`` write through
    synchronously and let persistence errors propagate.
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        timeout_seconds: Optional[float] = None,
        retention_seconds: Optional[float] = None,
        sweep_interval_seconds: Optional[float] = None,
        snapshot_interval_seconds: Optional[float] = None,
        max_concurrent: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.timeout_seconds = float(
            settings.JOB_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        )
        self.retention_seconds = float(
            settings.JOB_RETENTION_SECONDS if retention_seconds is None else retention_seconds
        )
        self.sweep_interval_seconds = float(
            settings.JOB_SWEEP_INTERVAL_SECONDS if sweep_interval_seconds is None else sweep_interval_seconds
        )
        self.snapshot_interval_seconds = float(
            settings.JOB_SNAPSHOT_INTERVAL_SECONDS
            if snapshot_interval_seconds is None
            else snapshot_interval_seconds
        )
        self.max_concurrent = int(settings.JOB_MAX_CONCURRENT if max_concurrent is None else max_concurrent)
        self.clock = clock
        self._jobs: Dict[str, Job] = {}
        self._background: List[asyncio.Task] = []
        self._timeout_listeners: List[TimeoutListener] = []
        self._removal_listeners: List[RemovalListener] = []

    def _age_seconds(self, job: Job, now: datetime) -> float:
        return (now - job.created_at).total_seconds()

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    async def _write_through(self, job: Job) -> None:
        await self.store.put(job.id, job.model_dump(mode="json"))

    def add_timeout_listener(self, listener: TimeoutListener) -> None:
        """Register a coroutine called for every job the sweep force-fails."""
        self._timeout_listeners.append(listener)

    def add_removal_listener(self, listener: RemovalListener) -> None:
        """Register a callback told which job ids left the table."""
        self._removal_listeners.append(listener)

    def _notify_removed(self, job_ids: List[str]) -> None:
        for listener in self._removal_listeners:
            try:
                listener(job_ids)
            except Exception:
                logger.exception("Removal listener failed for jobs %s", job_ids)

    async def recover(self) -> int:
        """Load persisted jobs, skipping invalid records and anything past retention."""
        try:
            table = await self.store.load()
        except Exception as exc:
            logger.error("Failed to load job snapshot, starting empty: %s", exc)
            return 0

        now = self.clock()
        loaded = 0
        skipped = 0
        for job_id, raw in table.items():
            try:
                job = Job.model_validate(raw)
            except ValidationError:
                logger.warning("Invalid job record %s in snapshot, skipping", job_id)
                skipped += 1
                continue
            if self._age_seconds(job, now) >= self.retention_seconds:
                skipped += 1
                continue
            self._jobs[job.id] = job
            loaded += 1
        logger.info("Recovered %s jobs from snapshot, skipped %s", loaded, skipped)
        return loaded

    def processing_count(self) -> int:
        return sum(1 for job in self._jobs.values() if job.status == "processing")

    def can_start_processing(self) -> bool:
        return self.processing_count() < self.max_concurrent

    async def create(self, job_input: JobInput) -> Job:
        now = self.clock()
        job = Job(id=_new_job_id(), input=job_input, created_at=now, updated_at=now)
        self._jobs[job.id] = job
        await self._write_through(job)
        return job.model_copy(deep=True)

    def get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def start(self, job_id: str) -> Job:
        job = self._require(job_id)
        if job.status == "processing":
            return job.model_copy(deep=True)
        if job.is_terminal:
            raise InvalidJobTransition(f"Job {job_id} is already {job.status}")
        if not self.can_start_processing():
            raise JobQueueBusyError(f"Max concurrent jobs reached, cannot start {job_id}")
        job.status = "processing"
        job.progress = 0
        job.updated_at = self.clock()
        return job.model_copy(deep=True)

    def update_progress(self, job_id: str, progress: float, stage_label: Optional[str] = None) -> Job:
        """Clamp and record progress below 100; terminal jobs are left untouched."""
        job = self._require(job_id)
        if job.is_terminal:
            return job.model_copy(deep=True)
        job.progress = int(max(0, min(99, round(progress))))
        if stage_label is not None:
            job.stage_label = stage_label
        job.updated_at = self.clock()
        return job.model_copy(deep=True)

    async def complete(self, job_id: str, result: JobResult) -> Job:
        job = self._require(job_id)
        if job.is_terminal:
            raise InvalidJobTransition(f"Job {job_id} is already {job.status}")
        logger.info("Marking job %s as completed", job_id)
        job.status = "completed"
        job.progress = 100
        job.result = result
        job.error = None
        job.updated_at = self.clock()
        await self._write_through(job)
        return job.model_copy(deep=True)

    async def fail(self, job_id: str, error: str) -> Job:
        job = self._require(job_id)
        if job.is_terminal:
            raise InvalidJobTransition(f"Job {job_id} is already {job.status}")
        logger.info("Marking job %s as failed: %s", job_id, error)
        job.status = "failed"
        job.error = error or "Unknown error"
        job.result = None
        job.updated_at = self.clock()
        await self._write_through(job)
        return job.model_copy(deep=True)

    async def delete(self, job_id: str) -> bool:
        if self._jobs.pop(job_id, None) is None:
            return False
        self._notify_removed([job_id])
        try:
            await self.store.delete(job_id)
        except Exception as exc:
            logger.warning("Failed to delete job %s from store: %s", job_id, exc)
        return True

    def stats(self) -> Dict[str, int]:
        counts = {"pending": 0, "processing": 0, "completed": 0, "failed": 0}
        for job in self._jobs.values():
            counts[job.status] += 1
        return {"total": len(self._jobs), **counts, "max_concurrent": self.max_concurrent}

    async def snapshot(self) -> bool:
        """Persist the whole table. Failures are logged, never raised."""
        table = {job_id: job.model_dump(mode="json") for job_id, job in self._jobs.items()}
        try:
            await self.store.save(table)
            return True
        except Exception as exc:
            logger.error("Failed to save job snapshot: %s", exc)
            return False

    async def sweep(self) -> Dict[str, int]:
        """Force-fail stuck jobs and drop terminal jobs past retention."""
        now = self.clock()
        timed_out: List[Job] = []
        expired: List[str] = []
        for job in list(self._jobs.values()):
            age = self._age_seconds(job, now)
            if job.is_terminal:
                if age > self.retention_seconds:
                    expired.append(job.id)
            elif age > self.timeout_seconds:
                job.status = "failed"
                job.error = TIMEOUT_ERROR
                job.updated_at = now
                timed_out.append(job)

        for job_id in expired:
            self._jobs.pop(job_id, None)
        if expired:
            self._notify_removed(expired)

        if timed_out or expired:
            logger.info("Job sweep: timed_out=%s deleted=%s", len(timed_out), len(expired))
            await self.snapshot()

        for job in timed_out:
            for listener in self._timeout_listeners:
                try:
                    await listener(job.model_copy(deep=True))
                except Exception:
                    logger.exception("Timeout listener failed for job %s", job.id)

        return {"timed_out": len(timed_out), "deleted": len(expired)}

    async def _run_periodic(self, interval: float, action: Callable[[], Awaitable[Any]], label: str) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await action()
            except Exception as exc:
                logger.warning("Job queue %s tick failed: %s", label, exc)

    def start_background_tasks(self) -> None:
        if self._background:
            return
        self._background = [
            asyncio.create_task(self._run_periodic(self.sweep_interval_seconds, self.sweep, "sweep")),
            asyncio.create_task(self._run_periodic(self.snapshot_interval_seconds, self.snapshot, "snapshot")),
        ]

    async def shutdown(self) -> None:
        for task in self._background:
            task.cancel()
        for task in self._background:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._background = []
        await self.snapshot()
