import json
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_env: str = "local"
    log_level: str = "INFO"
    server_name: str = "graph-quota-engine"

    graph_api_base_url: str = "https://graph.facebook.com"
    graph_api_version: str = "v24.0"
    graph_http_timeout_seconds: float = 60.0
    batch_size_limit: int = 50

    usage_header_name: str = "x-business-use-case-usage"
    usage_warning_mark: int = 50
    usage_critical_mark: int = 85
    usage_call_ceiling: int = 100
    usage_tier_overrides_json: str = ""
    usage_blocked_buffer_seconds: float = 10.0
    usage_critical_cooldown_seconds: float = 300.0
    usage_warning_delay_min_seconds: float = 15.0
    usage_warning_delay_max_seconds: float = 20.0
    usage_safe_delay_seconds: float = 5.0

    queue_max_retries: int = 3
    queue_quota_backoff_base_seconds: float = 5.0
    queue_quota_backoff_max_seconds: float = 300.0
    queue_linear_backoff_seconds: float = 1.0

    circuit_failure_threshold: int = 5
    circuit_reset_timeout_seconds: float = 60.0

    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    telegram_api_base_url: str = "https://api.telegram.org"

    @model_validator(mode="after")
    def validate_guardrails(self) -> "Settings":
        if not 0 <= self.usage_warning_mark < self.usage_critical_mark <= self.usage_call_ceiling:
            raise ValueError("USAGE_WARNING_MARK < USAGE_CRITICAL_MARK <= USAGE_CALL_CEILING is required.")
        if not 1 <= self.batch_size_limit <= 50:
            raise ValueError("BATCH_SIZE_LIMIT must be between 1 and 50.")
        if self.usage_warning_delay_min_seconds > self.usage_warning_delay_max_seconds:
            raise ValueError("USAGE_WARNING_DELAY_MIN_SECONDS must not exceed USAGE_WARNING_DELAY_MAX_SECONDS.")
        if self.queue_max_retries < 1:
            raise ValueError("QUEUE_MAX_RETRIES must be at least 1.")
        if self.circuit_failure_threshold < 1:
            raise ValueError("CIRCUIT_FAILURE_THRESHOLD must be at least 1.")
        if self.usage_tier_overrides_json.strip():
            try:
                parsed = json.loads(self.usage_tier_overrides_json)
            except json.JSONDecodeError as exc:
                raise ValueError("USAGE_TIER_OVERRIDES_JSON must be valid JSON.") from exc
            if not isinstance(parsed, dict):
                raise ValueError("USAGE_TIER_OVERRIDES_JSON must be a JSON object.")

        if self.app_env.lower() != "production":
            return self

        if self.telegram_bot_token.strip() and not self.telegram_chat_id.strip():
            raise ValueError("Production requires TELEGRAM_CHAT_ID when TELEGRAM_BOT_TOKEN is set.")
        return self

    def tier_overrides(self) -> dict[str, tuple[int, int, int]]:
        raw = self.usage_tier_overrides_json.strip()
        if not raw:
            return {}
        parsed = json.loads(raw)
        overrides: dict[str, tuple[int, int, int]] = {}
        for access_tier, marks in parsed.items():
            if not isinstance(marks, list) or len(marks) != 3:
                raise ValueError(f"Tier override for {access_tier!r} must be [warning, critical, ceiling].")
            overrides[str(access_tier)] = (int(marks[0]), int(marks[1]), int(marks[2]))
        return overrides


@lru_cache
def get_settings() -> Settings:
    return Settings()
