from __future__ import annotations

import json
import logging
import time
from typing import Any, Mapping
from urllib.parse import urlencode

from graphquota.core.settings import Settings, get_settings
from graphquota.providers.circuit_breaker import CircuitBreaker
from graphquota.providers.errors import ProviderResponseFormatError, raise_for_platform_error
from graphquota.providers.transport import HttpxTransport, Transport, TransportResponse
from graphquota.providers.usage_tracker import UsageTracker


logger = logging.getLogger("graphquota.client")

# Counted against the circuit breaker together with 5xx. Other 4xx are rejections.
DEPENDENCY_FAILURE_STATUSES = frozenset({408, 429})


class PlatformClient:
    """Boundary to the advertising platform's Graph API.

    Every physical call goes through the dependency's circuit breaker and every
    response is fed to the usage tracker before it is decoded.
    """

    def __init__(
        self,
        *,
        tracker: UsageTracker,
        transport: Transport | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        base_url: str | None = None,
        api_version: str | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.tracker = tracker
        self._transport = transport or HttpxTransport(timeout_seconds=settings.graph_http_timeout_seconds)
        self._circuit_breaker = circuit_breaker or CircuitBreaker(
            "graph_api",
            failure_threshold=settings.circuit_failure_threshold,
            reset_timeout=settings.circuit_reset_timeout_seconds,
        )
        self._base_url = (base_url or settings.graph_api_base_url).rstrip("/")
        self._api_version = api_version or settings.graph_api_version

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    @property
    def graph_url(self) -> str:
        return f"{self._base_url}/{self._api_version}/"

    def url_for(self, path: str) -> str:
        return f"{self.graph_url}{path.lstrip('/')}"

    async def send(
        self,
        method: str,
        url: str,
        *,
        account_id: str | None = None,
        headers: Mapping[str, str] | None = None,
        data: Mapping[str, str] | None = None,
        files: Mapping[str, Any] | None = None,
    ) -> TransportResponse:
        async def _invoke() -> TransportResponse:
            started = time.perf_counter()
            response = await self._transport.send(method, url, headers=headers, data=data, files=files)
            logger.debug(
                "%s %s -> %s in %sms",
                method,
                url.split("?", 1)[0],
                response.status_code,
                int((time.perf_counter() - started) * 1000),
            )
            self.tracker.ingest_headers(response.headers, account_id)
            if response.status_code >= 500 or response.status_code in DEPENDENCY_FAILURE_STATUSES:
                raise_for_platform_error(response.status_code, _safe_json(response))
            return response

        response = await self._circuit_breaker.call(_invoke)
        if response.status_code >= 400:
            raise_for_platform_error(response.status_code, _safe_json(response))
        return response

    async def request_json(
        self,
        method: str,
        path: str,
        *,
        access_token: str,
        account_id: str | None = None,
        params: Mapping[str, str] | None = None,
    ) -> Any:
        fields = {"access_token": access_token, **dict(params or {})}
        if method.upper() == "GET":
            response = await self.send("GET", f"{self.url_for(path)}?{urlencode(fields)}", account_id=account_id)
        else:
            response = await self.send(method.upper(), self.url_for(path), account_id=account_id, data=fields)
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderResponseFormatError("Platform response is not valid JSON.") from exc


def _safe_json(response: TransportResponse) -> Any:
    try:
        return json.loads(response.body)
    except ValueError:
        return None
