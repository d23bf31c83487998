from datetime import datetime, timezone

import pytest

from config import settings
from main import app
from routers import rate_limit


class MutableClock:
    """Callable clock whose ``now`` tests can move forward."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return MutableClock(datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters(monkeypatch):
    """Keep rate-limit state isolated between tests and off any real Redis."""
    monkeypatch.setattr(settings, "REDIS_URL", "")
    monkeypatch.setattr(rate_limit, "_redis_client", None)
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous
