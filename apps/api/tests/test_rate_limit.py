import pytest
from fastapi import Depends, FastAPI
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError

from config import settings
from routers import rate_limit


class FakeRedis:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.counts = {}
        self.expirations = {}

    async def incr(self, key):
        if self.fail:
            raise RedisConnectionError("Connection refused")
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    async def expire(self, key, seconds):
        self.expirations[key] = seconds

    async def ping(self):
        if self.fail:
            raise RedisConnectionError("Connection refused")
        return True


def _limited_app() -> FastAPI:
    app = FastAPI()

    @app.post("/ping")
    async def ping(_rate_limit: None = Depends(rate_limit.rate_limit("ping", limit=2, window_seconds=60))):
        return {"ok": True}

    return app


async def _hit(client: AsyncClient, times: int):
    return [(await client.post("/ping")).status_code for _ in range(times)]


@pytest.mark.asyncio
async def test_quota_is_counted_in_redis_when_configured(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(settings, "REDIS_URL", "redis://quota.test:6379")
    monkeypatch.setattr(rate_limit, "_redis_client", fake)

    async with AsyncClient(transport=ASGITransport(app=_limited_app()), base_url="http://test") as client:
        assert await _hit(client, 3) == [200, 200, 429]

    assert list(fake.counts.values()) == [3]
    assert list(fake.expirations.values()) == [60]
    key = next(iter(fake.counts))
    assert key.startswith(f"{settings.RATE_LIMIT_KEY_PREFIX}:ping:")
    assert rate_limit._local_counters == {}


@pytest.mark.asyncio
async def test_redis_outage_falls_back_to_local_counters(monkeypatch):
    monkeypatch.setattr(settings, "REDIS_URL", "redis://quota.test:6379")
    monkeypatch.setattr(rate_limit, "_redis_client", FakeRedis(fail=True))

    async with AsyncClient(transport=ASGITransport(app=_limited_app()), base_url="http://test") as client:
        assert await _hit(client, 3) == [200, 200, 429]

    assert [count for count, _ in rate_limit._local_counters.values()] == [3]
    assert (await rate_limit.ping_redis()).startswith("local (redis down")


@pytest.mark.asyncio
async def test_unset_redis_url_counts_locally_per_client():
    async with AsyncClient(transport=ASGITransport(app=_limited_app()), base_url="http://test") as client:
        assert await _hit(client, 2) == [200, 200]
        blocked = await client.post("/ping")
        other = await client.post("/ping", headers={"x-forwarded-for": "203.0.113.9, 10.0.0.1"})

    assert blocked.status_code == 429
    assert other.status_code == 200
    assert await rate_limit.ping_redis() == "local"
