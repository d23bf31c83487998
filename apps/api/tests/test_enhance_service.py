import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from services.credits import CreditLedger
from services.enhance import INTERNAL_ERROR, EnhanceService, InsufficientCreditsError, InvalidEffectError
from services.job_queue import TIMEOUT_ERROR, JobQueue
from services.stores import MemoryRecordStore


def _service(orchestrator) -> EnhanceService:
    ledger = CreditLedger(MemoryRecordStore("accounts"), free_monthly_credits=3)
    queue = JobQueue(MemoryRecordStore("jobs"), max_concurrent=5)
    orchestrator.queue = queue
    return EnhanceService(ledger, queue, orchestrator, credit_cost=1)


class _ExplodingOrchestrator:
    queue = None

    async def run(self, job_id):
        await self.queue.start(job_id)
        raise RuntimeError("database connection reset")


@pytest.mark.asyncio
async def test_unexpected_error_fails_job_and_refunds_once():
    service = _service(_ExplodingOrchestrator())

    job, available = await service.submit(
        user_id="u1",
        content_type="image",
        content_url="https://cdn.test/a.jpg",
    )
    assert available.total == 2
    await service.wait_idle()

    final = service.get_status(job.id)
    assert final.status == "failed"
    assert final.error == INTERNAL_ERROR
    assert final.input.credits_spent == 1

    await service.execute(job.id)
    account = await service.ledger.get_account("u1")
    assert [entry.kind for entry in account.transactions] == ["spend", "refund"]
    assert (await service.ledger.get_available("u1")).total == 3


@pytest.mark.asyncio
async def test_submit_validation_happens_before_spending():
    orchestrator = _ExplodingOrchestrator()
    orchestrator.run = AsyncMock()
    service = _service(orchestrator)

    with pytest.raises(InvalidEffectError):
        await service.submit(
            user_id="u1",
            content_type="image",
            content_url="https://cdn.test/a.jpg",
            effect_intensity=150,
        )

    await service.ledger.spend("u1", 3, "drain")
    with pytest.raises(InsufficientCreditsError) as excinfo:
        await service.submit(user_id="u1", content_type="image", content_url="https://cdn.test/a.jpg")
    assert excinfo.value.required == 1
    orchestrator.run.assert_not_called()
    assert service.queue.stats()["total"] == 0


class _HangingOrchestrator:
    queue = None

    async def run(self, job_id):
        await self.queue.start(job_id)
        await asyncio.Event().wait()


def _hanging_service(clock) -> EnhanceService:
    ledger = CreditLedger(MemoryRecordStore("accounts"), free_monthly_credits=3)
    queue = JobQueue(MemoryRecordStore("jobs"), max_concurrent=5, clock=clock)
    orchestrator = _HangingOrchestrator()
    orchestrator.queue = queue
    return EnhanceService(ledger, queue, orchestrator, credit_cost=1)


async def _submit_and_let_it_start(service: EnhanceService):
    job, _ = await service.submit(user_id="u", content_type="image", content_url="https://cdn.test/a.jpg")
    for _ in range(3):
        await asyncio.sleep(0)
    assert service.get_status(job.id).status == "processing"
    return job


@pytest.mark.asyncio
async def test_sweep_refunds_job_whose_run_is_still_hanging(clock):
    service = _hanging_service(clock)
    service.queue.add_timeout_listener(service.on_job_timeout)
    job = await _submit_and_let_it_start(service)
    assert (await service.ledger.get_available("u")).total == 2

    clock.now = clock.now + timedelta(minutes=30)
    await service.queue.sweep()

    assert service.get_status(job.id).error == TIMEOUT_ERROR
    assert (await service.ledger.get_available("u")).total == 3

    await service.shutdown()
    account = await service.ledger.get_account("u")
    assert [entry.kind for entry in account.transactions] == ["spend", "refund"]


@pytest.mark.asyncio
async def test_cancelled_run_of_a_failed_job_still_refunds(clock):
    service = _hanging_service(clock)
    job = await _submit_and_let_it_start(service)

    clock.now = clock.now + timedelta(minutes=30)
    await service.queue.sweep()
    assert (await service.ledger.get_available("u")).total == 2

    await service.shutdown()

    assert service.get_status(job.id).status == "failed"
    assert (await service.ledger.get_available("u")).total == 3


@pytest.mark.asyncio
async def test_invalid_job_input_is_rejected_before_spending():
    orchestrator = _ExplodingOrchestrator()
    orchestrator.run = AsyncMock()
    service = _service(orchestrator)

    with pytest.raises(ValidationError):
        await service.submit(user_id="u", content_type="gif", content_url="https://cdn.test/a.gif")

    assert (await service.ledger.get_available("u")).total == 3
    assert service.queue.stats()["total"] == 0
    orchestrator.run.assert_not_called()


@pytest.mark.asyncio
async def test_refund_markers_are_dropped_when_jobs_leave_the_table():
    service = _service(_ExplodingOrchestrator())
    service.queue.add_removal_listener(service.on_jobs_removed)
    job, _ = await service.submit(user_id="u1", content_type="image", content_url="https://cdn.test/a.jpg")
    await service.wait_idle()
    assert job.id in service._refunded

    await service.queue.delete(job.id)

    assert job.id not in service._refunded
