import json

import httpx
import pytest

from services.generation import (
    GenerationClient,
    GenerationProviderError,
    GenerationTimeoutError,
    PollPolicy,
)


async def _no_sleep(_seconds: float) -> None:
    return None


def _client(handler, *, max_attempts=5, deadline_seconds=120.0, monotonic=None) -> GenerationClient:
    return GenerationClient(
        base_url="https://provider.test",
        api_key="test-key",
        model="test-model",
        submit_timeout_seconds=30,
        poll_policy=PollPolicy(
            interval_seconds=2,
            max_attempts=max_attempts,
            deadline_seconds=deadline_seconds,
            request_timeout_seconds=10,
        ),
        transport=httpx.MockTransport(handler),
        sleep=_no_sleep,
        monotonic=monotonic or (lambda: 0.0),
    )


@pytest.mark.asyncio
async def test_submit_sends_prompt_and_reference_images():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "task-1"})

    task_id = await _client(handler).submit("golden light", reference_urls=["https://cdn.test/a.jpg"])

    assert task_id == "task-1"
    assert seen["path"] == "/v1/images/generations"
    assert seen["auth"] == "Bearer test-key"
    assert seen["body"]["model"] == "test-model"
    assert seen["body"]["image_urls"] == ["https://cdn.test/a.jpg"]


@pytest.mark.asyncio
async def test_submit_rejection_raises_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"error": "bad prompt"})

    with pytest.raises(GenerationProviderError):
        await _client(handler).submit("prompt")


@pytest.mark.asyncio
async def test_submit_timeout_raises_timeout_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(GenerationTimeoutError):
        await _client(handler).submit("prompt")


@pytest.mark.asyncio
async def test_poll_timeouts_count_as_processing_and_progress_is_monotonic():
    responses = iter(
        [
            {"status": "processing", "progress": 40},
            "timeout",
            {"status": "processing", "progress": 20},
            {"status": "completed", "progress": 100, "results": ["https://cdn.test/out.png"]},
        ]
    )
    reported = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(200, json={"id": "task-1"})
        item = next(responses)
        if item == "timeout":
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(200, json=item)

    results = await _client(handler).generate("prompt", on_progress=reported.append)

    assert results == ["https://cdn.test/out.png"]
    assert reported == [40, 40, 40, 100]


@pytest.mark.asyncio
async def test_provider_failure_is_not_retried():
    calls = {"poll": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["poll"] += 1
        return httpx.Response(200, json={"status": "failed"})

    with pytest.raises(GenerationProviderError, match="Image generation failed"):
        await _client(handler).wait_for_completion("task-1")
    assert calls["poll"] == 1


@pytest.mark.asyncio
async def test_completed_without_results_is_a_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "completed", "results": []})

    with pytest.raises(GenerationProviderError, match="No results"):
        await _client(handler).wait_for_completion("task-1")


@pytest.mark.asyncio
async def test_polling_stops_after_max_attempts():
    calls = {"poll": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["poll"] += 1
        return httpx.Response(200, json={"status": "processing"})

    with pytest.raises(GenerationTimeoutError):
        await _client(handler, max_attempts=3).wait_for_completion("task-1")
    assert calls["poll"] == 3


@pytest.mark.asyncio
async def test_polling_stops_at_deadline():
    ticks = iter([0.0, 0.0, 50.0, 130.0])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "pending"})

    client = _client(handler, max_attempts=60, deadline_seconds=120.0, monotonic=lambda: next(ticks))
    with pytest.raises(GenerationTimeoutError, match="Task timeout"):
        await client.wait_for_completion("task-1")


@pytest.mark.asyncio
async def test_poll_server_errors_are_transient_but_client_errors_are_not():
    statuses = iter([503, 404])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses), json={})

    client = _client(handler)
    assert (await client.poll("task-1")).status == "processing"
    with pytest.raises(GenerationProviderError):
        await client.poll("task-1")
