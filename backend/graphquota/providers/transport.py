from __future__ import annotations

from dataclasses import dataclass, field
import json
from typing import Any, Mapping, Protocol

import httpx

from graphquota.providers.errors import (
    ProviderConnectionError,
    ProviderDependencyError,
    ProviderTimeoutError,
)


@dataclass(frozen=True)
class TransportResponse:
    status_code: int
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""

    def json(self) -> Any:
        return json.loads(self.body)


class Transport(Protocol):
    async def send(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        data: Mapping[str, str] | None = None,
        files: Mapping[str, Any] | None = None,
    ) -> TransportResponse: ...


class HttpxTransport:
    """Transport backed by ``httpx.AsyncClient``.

    Network failures are raised as classified provider errors; any response the
    server produced, error statuses included, is returned for the caller to
    decode.
    """

    def __init__(self, *, timeout_seconds: float = 60.0, client: httpx.AsyncClient | None = None) -> None:
        self._timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None

    async def send(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        data: Mapping[str, str] | None = None,
        files: Mapping[str, Any] | None = None,
    ) -> TransportResponse:
        client = self._get_client()
        try:
            response = await client.request(
                method,
                url,
                headers=dict(headers or {}),
                data=dict(data) if data is not None else None,
                files=dict(files) if files else None,
                timeout=self._timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(f"{method} {_redact(url)} timed out.") from exc
        except httpx.ConnectError as exc:
            raise ProviderConnectionError(f"{method} {_redact(url)} connection failed.") from exc
        except httpx.HTTPError as exc:
            raise ProviderDependencyError(f"{method} {_redact(url)} failed: {exc}") from exc
        return TransportResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            body=response.content,
        )

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client


def _redact(url: str) -> str:
    return url.split("?", 1)[0]
