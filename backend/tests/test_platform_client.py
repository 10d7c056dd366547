import asyncio

import pytest

from graphquota.providers.circuit_breaker import CircuitBreaker
from graphquota.providers.client import PlatformClient
from graphquota.providers.errors import (
    PlatformRejectionError,
    ProviderCircuitOpenError,
    ProviderDependencyError,
    ProviderRateLimitError,
)
from graphquota.providers.execution_types import CircuitState, LoadTier

from fakes import FakeTransport, json_response


def _client(tracker, transport, settings, *, threshold: int = 3) -> PlatformClient:
    breaker = CircuitBreaker("graph_api", failure_threshold=threshold, reset_timeout=60.0, clock=lambda: 500.0)
    return PlatformClient(tracker=tracker, transport=transport, circuit_breaker=breaker, settings=settings)


def test_graph_url_uses_configured_version(client: PlatformClient) -> None:
    assert client.graph_url == "https://graph.facebook.com/v24.0/"
    assert client.url_for("/act_1/ads") == "https://graph.facebook.com/v24.0/act_1/ads"


def test_every_response_feeds_the_usage_tracker(tracker, settings, make_usage_header) -> None:
    transport = FakeTransport()
    transport.queue(json_response(200, {"id": "1"}, headers={"x-business-use-case-usage": make_usage_header(account_id="123", call_count=88)}))
    client = _client(tracker, transport, settings)

    asyncio.run(client.request_json("GET", "act_123", access_token="tok", account_id="123"))

    assert tracker.tier_for_account("123") == LoadTier.CRITICAL


def test_usage_header_on_error_response_is_still_recorded(tracker, settings, make_usage_header) -> None:
    transport = FakeTransport()
    transport.queue(
        json_response(
            400,
            {"error": {"code": 80004, "message": "too many calls"}},
            headers={"x-business-use-case-usage": make_usage_header(account_id="123", call_count=10, regain_seconds=60)},
        )
    )
    client = _client(tracker, transport, settings)

    with pytest.raises(ProviderRateLimitError):
        asyncio.run(client.request_json("POST", "act_123/ads", access_token="tok", account_id="123"))
    assert tracker.tier_for_account("123") == LoadTier.BLOCKED


def test_platform_rejections_do_not_trip_the_breaker(tracker, settings) -> None:
    transport = FakeTransport()
    client = _client(tracker, transport, settings, threshold=2)
    for _ in range(3):
        transport.queue(json_response(400, {"error": {"code": 100, "message": "Invalid parameter"}}))

    async def _run() -> None:
        for _ in range(3):
            with pytest.raises(PlatformRejectionError):
                await client.request_json("POST", "act_1/ads", access_token="tok")

    asyncio.run(_run())
    assert client.circuit_breaker.state() == CircuitState.CLOSED
    assert len(transport.calls) == 3


def test_server_errors_open_the_breaker_and_stop_calls(tracker, settings) -> None:
    transport = FakeTransport()
    client = _client(tracker, transport, settings, threshold=2)
    transport.queue(json_response(500, {}), json_response(503, {}))

    async def _run() -> None:
        for _ in range(2):
            with pytest.raises(ProviderDependencyError):
                await client.request_json("GET", "me", access_token="tok")
        with pytest.raises(ProviderCircuitOpenError):
            await client.request_json("GET", "me", access_token="tok")

    asyncio.run(_run())
    assert len(transport.calls) == 2
    assert client.circuit_breaker.state() == CircuitState.OPEN


def test_get_puts_credentials_in_query_and_post_in_form(tracker, settings) -> None:
    transport = FakeTransport()
    transport.queue(json_response(200, {"name": "acct"}), json_response(200, {"success": True}))
    client = _client(tracker, transport, settings)

    async def _run():
        fetched = await client.request_json("GET", "act_1", access_token="tok", params={"fields": "name"})
        updated = await client.request_json("post", "42", access_token="tok", params={"status": "PAUSED"})
        return fetched, updated

    fetched, updated = asyncio.run(_run())
    assert fetched == {"name": "acct"}
    assert updated == {"success": True}
    assert transport.calls[0]["url"] == "https://graph.facebook.com/v24.0/act_1?access_token=tok&fields=name"
    assert transport.calls[1]["method"] == "POST"
    assert transport.calls[1]["data"] == {"access_token": "tok", "status": "PAUSED"}
