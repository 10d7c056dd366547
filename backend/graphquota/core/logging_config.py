from __future__ import annotations

import json
import logging
from datetime import UTC, datetime

from graphquota.core.settings import get_settings

CONTEXT_FIELDS = ("event", "operation_id", "operation_type", "tier", "breaker", "delay_seconds")

# httpx logs full request URLs at INFO; Graph API GETs carry the access token in the query.
QUIET_LOGGERS = ("httpx", "httpcore")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "account_id": getattr(record, "account_id", None),
        }
        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                payload[field] = getattr(record, field)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(*, log_level: str | None = None, app_env: str | None = None) -> None:
    if log_level is None or app_env is None:
        settings = get_settings()
        log_level = log_level or settings.log_level
        app_env = app_env or settings.app_env

    level = getattr(logging, log_level.upper(), logging.INFO)
    handler = logging.StreamHandler()
    if app_env.lower() == "production":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s [%(account_id)s] %(message)s", defaults={"account_id": "-"}))
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    root.addHandler(handler)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
