from datetime import timedelta

import pytest

from services.job_queue import (
    TIMEOUT_ERROR,
    InvalidJobTransition,
    JobInput,
    JobQueue,
    JobQueueBusyError,
    JobResult,
)
from services.stores import MemoryRecordStore


class _FailingStore(MemoryRecordStore):
    def __init__(self):
        super().__init__("jobs")
        self.fail_save = False
        self.fail_put = False

    async def save(self, table):
        if self.fail_save:
            raise OSError("disk full")
        await super().save(table)

    async def put(self, key, record):
        if self.fail_put:
            raise OSError("disk full")
        await super().put(key, record)


def _input(**overrides) -> JobInput:
    values = {
        "content_type": "image",
        "content_url": "https://cdn.example.com/in.jpg",
        "user_id": "u1",
        "credits_spent": 1,
    }
    values.update(overrides)
    return JobInput(**values)


def _result() -> JobResult:
    return JobResult(type="image", url="https://cdn.example.com/out.jpg", original_url="https://cdn.example.com/in.jpg")


def _queue(clock, store=None, **overrides) -> JobQueue:
    options = {
        "timeout_seconds": 600,
        "retention_seconds": 7200,
        "sweep_interval_seconds": 60,
        "snapshot_interval_seconds": 5,
        "max_concurrent": 2,
    }
    options.update(overrides)
    return JobQueue(store or MemoryRecordStore("jobs"), clock=clock, **options)


@pytest.mark.asyncio
async def test_create_writes_through_to_store(clock):
    store = MemoryRecordStore("jobs")
    queue = _queue(clock, store)

    job = await queue.create(_input())

    assert job.status == "pending"
    assert job.id.startswith("job_")
    assert (await store.get(job.id))["status"] == "pending"


@pytest.mark.asyncio
async def test_progress_is_clamped_and_terminal_jobs_are_frozen(clock):
    queue = _queue(clock)
    job = await queue.create(_input())
    await queue.start(job.id)

    assert queue.update_progress(job.id, 140, "Generating").progress == 99
    assert queue.get(job.id).status == "processing"
    assert queue.update_progress(job.id, -3).progress == 0

    completed = await queue.complete(job.id, _result())
    assert completed.status == "completed"
    assert completed.progress == 100

    frozen = queue.update_progress(job.id, 10, "late")
    assert frozen.progress == 100
    assert frozen.stage_label == "Generating"
    with pytest.raises(InvalidJobTransition):
        await queue.fail(job.id, "late failure")
    with pytest.raises(InvalidJobTransition):
        await queue.complete(job.id, _result())
    assert queue.get(job.id).result is not None
    assert queue.get(job.id).error is None


@pytest.mark.asyncio
async def test_start_is_idempotent_and_respects_concurrency_cap(clock):
    queue = _queue(clock, max_concurrent=1)
    first = await queue.create(_input())
    second = await queue.create(_input())

    await queue.start(first.id)
    again = await queue.start(first.id)
    assert again.status == "processing"

    assert queue.can_start_processing() is False
    with pytest.raises(JobQueueBusyError):
        await queue.start(second.id)


@pytest.mark.asyncio
async def test_sweep_times_out_stuck_jobs(clock):
    queue = _queue(clock)
    stuck = await queue.create(_input())
    await queue.start(stuck.id)
    timed_out = []

    async def _listener(job):
        timed_out.append(job.id)

    queue.add_timeout_listener(_listener)
    clock.now = clock.now + timedelta(minutes=11)
    summary = await queue.sweep()

    assert summary == {"timed_out": 1, "deleted": 0}
    job = queue.get(stuck.id)
    assert job.status == "failed"
    assert job.error == TIMEOUT_ERROR
    assert timed_out == [stuck.id]


@pytest.mark.asyncio
async def test_sweep_deletes_terminal_jobs_past_retention(clock):
    queue = _queue(clock)
    removed = []
    queue.add_removal_listener(removed.extend)
    old = await queue.create(_input())
    await queue.start(old.id)
    await queue.complete(old.id, _result())

    clock.now = clock.now + timedelta(hours=3)
    fresh = await queue.create(_input())
    summary = await queue.sweep()

    assert summary["deleted"] == 1
    assert queue.get(old.id) is None
    assert queue.get(fresh.id) is not None
    assert removed == [old.id]

    assert await queue.delete(fresh.id) is True
    assert removed == [old.id, fresh.id]


@pytest.mark.asyncio
async def test_recover_skips_invalid_and_stale_records(clock):
    store = MemoryRecordStore("jobs")
    queue = _queue(clock, store)
    kept = await queue.create(_input())
    stale = await queue.create(_input())
    await queue.snapshot()

    table = await store.load()
    table[stale.id]["created_at"] = (clock.now - timedelta(hours=3)).isoformat()
    table["job_broken"] = {"id": "job_broken", "status": "weird"}
    await store.save(table)

    restored = _queue(clock, store)
    loaded = await restored.recover()

    assert loaded == 1
    assert restored.get(kept.id) is not None
    assert restored.get(stale.id) is None
    assert restored.get("job_broken") is None


@pytest.mark.asyncio
async def test_snapshot_errors_are_swallowed_but_terminal_writes_propagate(clock):
    store = _FailingStore()
    queue = _queue(clock, store)
    job = await queue.create(_input())
    await queue.start(job.id)

    store.fail_save = True
    assert await queue.snapshot() is False

    store.fail_put = True
    with pytest.raises(OSError):
        await queue.fail(job.id, "provider down")


@pytest.mark.asyncio
async def test_stats_counts_by_status(clock):
    queue = _queue(clock)
    first = await queue.create(_input())
    await queue.create(_input())
    await queue.start(first.id)

    stats = queue.stats()

    assert stats["total"] == 2
    assert stats["pending"] == 1
    assert stats["processing"] == 1
    assert stats["max_concurrent"] == 2


@pytest.mark.asyncio
async def test_shutdown_writes_final_snapshot(clock):
    store = MemoryRecordStore("jobs")
    queue = _queue(clock, store, sweep_interval_seconds=3600, snapshot_interval_seconds=3600)
    job = await queue.create(_input())
    await queue.start(job.id)
    queue.update_progress(job.id, 42, "Generating")
    queue.start_background_tasks()

    await queue.shutdown()

    assert (await store.get(job.id))["progress"] == 42
