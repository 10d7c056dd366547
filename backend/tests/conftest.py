import os
os.environ["APP_ENV"] = "test"

import json
from typing import Callable

import pytest

from graphquota.core.settings import Settings, get_settings
from graphquota.providers.client import PlatformClient
from graphquota.providers.circuit_breaker import CircuitBreaker
from graphquota.providers.usage_tracker import UsageTracker

from fakes import FakeTransport, echo_batch_handler


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def make_usage_header() -> Callable[..., str]:
    def _make(
        account_id: str = "123",
        call_count: int = 0,
        regain_seconds: int = 0,
        access_tier: str = "development_access",
    ) -> str:
        return json.dumps(
            {
                account_id: [
                    {
                        "type": "ads_management",
                        "call_count": call_count,
                        "total_cputime": 1,
                        "total_time": 1,
                        "estimated_time_to_regain_access": regain_seconds,
                        "ads_api_access_tier": access_tier,
                    }
                ]
            }
        )

    return _make


@pytest.fixture
def tracker() -> UsageTracker:
    return UsageTracker(random_fn=lambda low, _high: low)


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport(handler=echo_batch_handler)


@pytest.fixture
def client(tracker: UsageTracker, fake_transport: FakeTransport, settings: Settings) -> PlatformClient:
    breaker = CircuitBreaker("graph_api", failure_threshold=3, reset_timeout=60.0)
    return PlatformClient(tracker=tracker, transport=fake_transport, circuit_breaker=breaker, settings=settings)
