from __future__ import annotations

from datetime import UTC, datetime
from html import escape
import logging
from typing import Callable

import httpx

from graphquota.core.settings import Settings, get_settings
from graphquota.providers.circuit_breaker import AlertHook
from graphquota.providers.execution_types import CircuitBreakerSnapshot


logger = logging.getLogger("graphquota.notify")


class TelegramNotifier:
    """Posts operator alerts to a Telegram chat through the Bot API.

    Delivery is best effort: a missing token disables the notifier and any
    failure to deliver is logged, never raised.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def enabled(self) -> bool:
        return bool(self._settings.telegram_bot_token.strip() and self._settings.telegram_chat_id.strip())

    def format_message(self, message: str, *, is_error: bool = True) -> str:
        label = "ERROR" if is_error else "INFO"
        return (
            f"<b>{label} - {escape(self._settings.server_name)}</b>\n"
            f"<b>Environment:</b> {escape(self._settings.app_env)}\n"
            f"<b>Time:</b> {self._clock().isoformat()}\n"
            f"<b>Message:</b>\n{message}"
        )

    async def send(self, message: str, *, is_error: bool = True) -> bool:
        if not self.enabled:
            logger.info("Telegram notifier not configured; dropping alert.")
            return False

        url = f"{self._settings.telegram_api_base_url.rstrip('/')}/bot{self._settings.telegram_bot_token}/sendMessage"
        payload = {
            "chat_id": self._settings.telegram_chat_id,
            "text": self.format_message(message, is_error=is_error),
            "parse_mode": "HTML",
        }
        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    response = await client.post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Failed to send Telegram notification: %s", type(exc).__name__)
            return False

        try:
            delivered = bool(response.json().get("ok"))
        except (ValueError, AttributeError):
            delivered = False
        if delivered:
            logger.info("Telegram notification sent")
        return delivered


def build_circuit_alert_hook(notifier: TelegramNotifier) -> AlertHook:
    async def _alert(snapshot: CircuitBreakerSnapshot) -> None:
        next_probe = "unknown"
        if snapshot.next_probe_at is not None:
            next_probe = datetime.fromtimestamp(snapshot.next_probe_at, UTC).isoformat()
        await notifier.send(
            f"<b>CRITICAL: {escape(snapshot.name)} circuit breaker opened</b>\n"
            f"<b>Consecutive failures:</b> {snapshot.consecutive_failures}\n"
            f"<b>Next retry:</b> {next_probe}"
        )

    return _alert
