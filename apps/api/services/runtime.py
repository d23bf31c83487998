"""App-level wiring of the ledger, invite registry, job queue and entry point."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from services.credits import CreditLedger
from services.cutout import CutoutClient
from services.enhance import EnhanceService
from services.generation import GenerationClient
from services.invites import InviteRegistry
from services.job_queue import JobQueue
from services.media_storage import LocalMediaStorage, MediaStorage
from services.scoring import PremiumScorer, Scorer
from services.stores import build_record_store
from services.workflow import WorkflowOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    ledger: CreditLedger
    invites: InviteRegistry
    queue: JobQueue
    enhance: EnhanceService
    storage: MediaStorage

    async def start(self) -> int:
        recovered = await self.queue.recover()
        self.queue.add_timeout_listener(self.enhance.on_job_timeout)
        self.queue.add_removal_listener(self.enhance.on_jobs_removed)
        self.queue.start_background_tasks()
        return recovered

    async def shutdown(self) -> None:
        await self.enhance.shutdown()
        await self.queue.shutdown()


def build_services(
    backend: Optional[str] = None,
    *,
    generation: Optional[GenerationClient] = None,
    storage: Optional[MediaStorage] = None,
    scorer: Optional[Scorer] = None,
    cutout: Optional[CutoutClient] = None,
) -> AppServices:
    ledger = CreditLedger(build_record_store("accounts", backend))
    invites = InviteRegistry(
        build_record_store("invite_codes", backend),
        build_record_store("invite_owners", backend),
        ledger,
    )
    queue = JobQueue(build_record_store("jobs", backend))
    storage = storage or LocalMediaStorage()
    orchestrator = WorkflowOrchestrator(
        queue,
        generation or GenerationClient(),
        storage,
        scorer or PremiumScorer(),
        cutout or CutoutClient(),
    )
    enhance = EnhanceService(ledger, queue, orchestrator)
    return AppServices(ledger=ledger, invites=invites, queue=queue, enhance=enhance, storage=storage)


_services: Optional[AppServices] = None


def set_services(services: Optional[AppServices]) -> None:
    global _services
    _services = services


def get_services() -> AppServices:
    """FastAPI dependency returning the running service graph."""
    global _services
    if _services is None:
        logger.info("Building services lazily outside the app lifespan")
        _services = build_services()
    return _services
