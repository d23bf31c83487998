"""Request entry point: charge credits, create the job, run it, refund on failure."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, Optional, Set, Tuple

from config import settings
from services.credits import AvailableCredits, CreditLedger
from services.job_queue import Job, JobInput, JobQueue, JobQueueBusyError
from services.style_profile import is_known_effect
from services.workflow import WorkflowOrchestrator

logger = logging.getLogger(__name__)

INTERNAL_ERROR = "Internal server error"


class InsufficientCreditsError(Exception):
    def __init__(self, available: AvailableCredits, required: int) -> None:
        super().__init__(f"Insufficient credits: need {required}, have {available.total}")
        self.available = available
        self.required = required


class InvalidEffectError(ValueError):
    """Unknown effect id or intensity outside 0-100."""


class EnhanceService:
    def __init__(
        self,
        ledger: CreditLedger,
        queue: JobQueue,
        orchestrator: WorkflowOrchestrator,
        *,
        credit_cost: Optional[int] = None,
    ) -> None:
        self.ledger = ledger
        self.queue = queue
        self.orchestrator = orchestrator
        self.credit_cost = int(settings.CREDIT_COST_ENHANCE if credit_cost is None else credit_cost)
        self._tasks: Dict[str, asyncio.Task] = {}
        self._refunded: Set[str] = set()

    async def submit(
        self,
        *,
        user_id: str,
        content_type: str,
        content_url: str,
        style_source: str = "preset",
        preset_style: Optional[str] = None,
        reference_url: Optional[str] = None,
        effect_id: Optional[str] = None,
        effect_intensity: int = 100,
    ) -> Tuple[Job, AvailableCredits]:
        if effect_id and not is_known_effect(effect_id):
            raise InvalidEffectError(f"Unknown effect: {effect_id}")
        if not 0 <= int(effect_intensity) <= 100:
            raise InvalidEffectError("Effect intensity must be between 0 and 100")

        # Raises ValidationError before any credit moves.
        job_input = JobInput(
            content_type=content_type,
            content_url=content_url,
            style_source=style_source,
            preset_style=preset_style,
            reference_url=reference_url,
            effect_id=effect_id,
            effect_intensity=effect_intensity,
            user_id=user_id,
            credits_spent=self.credit_cost,
        )

        available = await self.ledger.get_available(user_id)
        if available.total < self.credit_cost:
            raise InsufficientCreditsError(available, self.credit_cost)
        if not self.queue.can_start_processing():
            raise JobQueueBusyError("Server busy, please try again later")

        spent = await self.ledger.spend(user_id, self.credit_cost, f"Enhance {content_type}")
        if not spent.success:
            raise InsufficientCreditsError(await self.ledger.get_available(user_id), self.credit_cost)

        try:
            job = await self.queue.create(job_input)
        except Exception:
            await self.ledger.refund(user_id, self.credit_cost, "Job could not be created", spent.transaction_id)
            raise

        logger.info("Created %s job %s for %s", content_type, job.id, user_id)
        self._schedule(job.id)
        return job, await self.ledger.get_available(user_id)

    def _schedule(self, job_id: str) -> asyncio.Task:
        task = asyncio.create_task(self.execute(job_id))
        self._tasks[job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job_id, None))
        return task

    async def execute(self, job_id: str) -> Optional[Job]:
        try:
            job = await self.orchestrator.run(job_id)
        except asyncio.CancelledError:
            job = self.queue.get(job_id)
            if job is not None and job.status == "failed":
                await self._refund(job)
            raise
        except Exception:
            logger.exception("Unexpected error while running job %s", job_id)
            job = self.queue.get(job_id)
            if job is not None and not job.is_terminal:
                try:
                    job = await self.queue.fail(job_id, INTERNAL_ERROR)
                except Exception:
                    logger.exception("Could not persist failure for job %s", job_id)
                    job = self.queue.get(job_id)

        if job is not None and job.status == "failed":
            await self._refund(job)
        return job

    async def _refund(self, job: Job) -> None:
        if job.id in self._refunded or job.input.credits_spent <= 0:
            return
        self._refunded.add(job.id)
        try:
            await self.ledger.refund(
                job.input.user_id,
                job.input.credits_spent,
                f"Job {job.id} failed",
                reference_id=job.id,
            )
        except Exception:
            self._refunded.discard(job.id)
            logger.exception("Refund failed for job %s", job.id)

    async def on_job_timeout(self, job: Job) -> None:
        """Refund a job the sweep failed, whether or not its run is still attached."""
        await self._refund(job)

    def on_jobs_removed(self, job_ids: Iterable[str]) -> None:
        for job_id in job_ids:
            self._refunded.discard(job_id)

    def get_status(self, job_id: str) -> Optional[Job]:
        return self.queue.get(job_id)

    async def wait_idle(self) -> None:
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
