from __future__ import annotations

import json
import logging
import random
import threading
from datetime import UTC, datetime
from typing import Any, Callable, Iterable, Mapping

from graphquota.core.settings import Settings, get_settings
from graphquota.observability.events import emit_tier_classified
from graphquota.providers.execution_types import LoadTier, TierThresholds, UsageSnapshot


logger = logging.getLogger("graphquota.usage")

USAGE_HEADER_NAME = "x-business-use-case-usage"

DEFAULT_OPERATION_DELAYS: dict[str, float] = {
    "image_upload": 0.5,
    "video_upload": 1.0,
    "creative_create": 0.3,
    "ad_create": 0.2,
    "fetch_details": 0.1,
    "default": 0.2,
}

WARNING_BATCH_SIZE = 5


class UsageTracker:
    """Latest quota usage per ad account, classified into load tiers.

    Snapshots come from the platform's business-use-case usage header and a
    newer snapshot always replaces the older one. All methods are synchronous;
    the snapshot map is guarded by a lock so several queues can share one
    tracker.
    """

    def __init__(
        self,
        *,
        thresholds: TierThresholds | None = None,
        tier_overrides: Mapping[str, TierThresholds] | None = None,
        operation_delays: Mapping[str, float] | None = None,
        blocked_buffer_seconds: float = 10.0,
        critical_cooldown_seconds: float = 300.0,
        warning_delay_range: tuple[float, float] = (15.0, 20.0),
        safe_delay_seconds: float = 5.0,
        header_name: str = USAGE_HEADER_NAME,
        random_fn: Callable[[float, float], float] = random.uniform,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.thresholds = thresholds or TierThresholds()
        self.tier_overrides = dict(tier_overrides or {})
        self.operation_delays = dict(operation_delays or DEFAULT_OPERATION_DELAYS)
        self.blocked_buffer_seconds = blocked_buffer_seconds
        self.critical_cooldown_seconds = critical_cooldown_seconds
        self.warning_delay_range = warning_delay_range
        self.safe_delay_seconds = safe_delay_seconds
        self.header_name = header_name
        self._random_fn = random_fn
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.Lock()
        self._snapshots: dict[str, UsageSnapshot] = {}

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **overrides: Any) -> "UsageTracker":
        settings = settings or get_settings()
        tier_overrides = {
            access_tier: TierThresholds(warning_mark=marks[0], critical_mark=marks[1], call_ceiling=marks[2])
            for access_tier, marks in settings.tier_overrides().items()
        }
        options: dict[str, Any] = {
            "thresholds": TierThresholds(
                warning_mark=settings.usage_warning_mark,
                critical_mark=settings.usage_critical_mark,
                call_ceiling=settings.usage_call_ceiling,
            ),
            "tier_overrides": tier_overrides,
            "blocked_buffer_seconds": settings.usage_blocked_buffer_seconds,
            "critical_cooldown_seconds": settings.usage_critical_cooldown_seconds,
            "warning_delay_range": (
                settings.usage_warning_delay_min_seconds,
                settings.usage_warning_delay_max_seconds,
            ),
            "safe_delay_seconds": settings.usage_safe_delay_seconds,
            "header_name": settings.usage_header_name,
        }
        options.update(overrides)
        return cls(**options)

    def ingest(self, account_id: str | None, raw_header: str | bytes | None) -> UsageSnapshot | None:
        snapshot = self.parse(raw_header, fallback_account_id=account_id)
        if snapshot is None:
            return None
        with self._lock:
            self._snapshots[_account_key(snapshot.account_id)] = snapshot
        self._report(snapshot)
        return snapshot

    def ingest_headers(self, headers: Any, account_id: str | None = None) -> UsageSnapshot | None:
        raw_header = find_usage_header(headers, self.header_name)
        if raw_header is None:
            return None
        return self.ingest(account_id, raw_header)

    def parse(self, raw_header: str | bytes | None, *, fallback_account_id: str | None = None) -> UsageSnapshot | None:
        if not raw_header:
            return None
        try:
            parsed = json.loads(raw_header)
        except (TypeError, ValueError):
            logger.warning("Usage header is not valid JSON; ignoring it.", extra={"account_id": fallback_account_id})
            return None
        if not isinstance(parsed, dict) or not parsed:
            logger.warning("Usage header is not a non-empty JSON object; ignoring it.", extra={"account_id": fallback_account_id})
            return None

        header_account_id = next(iter(parsed))
        records = parsed[header_account_id]
        if not isinstance(records, list) or not records or not isinstance(records[0], dict):
            logger.warning(
                "Usage header for account %s carries no usage record; ignoring it.",
                header_account_id,
                extra={"account_id": header_account_id},
            )
            return None

        usage = records[0]
        try:
            call_count = int(usage.get("call_count") or 0)
            total_cputime = float(usage.get("total_cputime") or 0)
            total_time = float(usage.get("total_time") or 0)
            regain_seconds = int(usage.get("estimated_time_to_regain_access") or 0)
        except (TypeError, ValueError):
            logger.warning(
                "Usage header for account %s has non-numeric counters; ignoring it.",
                header_account_id,
                extra={"account_id": header_account_id},
            )
            return None
        if call_count < 0 or regain_seconds < 0:
            logger.warning(
                "Usage header for account %s has negative counters; ignoring it.",
                header_account_id,
                extra={"account_id": header_account_id},
            )
            return None

        return UsageSnapshot(
            account_id=str(header_account_id or fallback_account_id),
            call_count=call_count,
            total_cputime=total_cputime,
            total_time=total_time,
            seconds_until_access_regained=regain_seconds,
            access_tier=str(usage.get("ads_api_access_tier") or "unknown"),
            usage_type=str(usage.get("type") or "ads_management"),
            observed_at=self._clock(),
        )

    def thresholds_for(self, snapshot: UsageSnapshot | None) -> TierThresholds:
        if snapshot is None:
            return self.thresholds
        return self.tier_overrides.get(snapshot.access_tier, self.thresholds)

    def tier_of(self, snapshot: UsageSnapshot) -> LoadTier:
        if snapshot.seconds_until_access_regained > 0:
            return LoadTier.BLOCKED
        thresholds = self.thresholds_for(snapshot)
        if snapshot.call_count >= thresholds.critical_mark:
            return LoadTier.CRITICAL
        if snapshot.call_count >= thresholds.warning_mark:
            return LoadTier.WARNING
        return LoadTier.SAFE

    def get(self, account_id: str) -> UsageSnapshot | None:
        with self._lock:
            return self._snapshots.get(_account_key(account_id))

    def tier_for_account(self, account_id: str) -> LoadTier | None:
        snapshot = self.get(account_id)
        if snapshot is None:
            return None
        return self.tier_of(snapshot)

    def operation_type_delay(self, operation_type: str | None) -> float:
        if operation_type and operation_type in self.operation_delays:
            return self.operation_delays[operation_type]
        return self.operation_delays.get("default", 0.0)

    def recommended_delay(self, account_id: str, operation_type: str | None = None) -> float:
        snapshot = self.get(account_id)
        if snapshot is None:
            return 0.0
        tier = self.tier_of(snapshot)
        if tier == LoadTier.BLOCKED:
            return snapshot.seconds_until_access_regained + self.blocked_buffer_seconds
        if tier == LoadTier.CRITICAL:
            return self.critical_cooldown_seconds
        if tier == LoadTier.WARNING:
            low, high = self.warning_delay_range
            return self._random_fn(low, high)
        return max(self.safe_delay_seconds, self.operation_type_delay(operation_type))

    def safe_batch_size(self, account_id: str, max_allowed: int, estimated_cost_per_item: float = 1.0) -> int:
        if max_allowed < 1:
            raise ValueError("max_allowed must be at least 1")
        if estimated_cost_per_item <= 0:
            raise ValueError("estimated_cost_per_item must be greater than zero")
        snapshot = self.get(account_id)
        thresholds = self.thresholds_for(snapshot)
        call_count = snapshot.call_count if snapshot is not None else 0
        headroom = max(0, thresholds.call_ceiling - call_count)
        tier = self.tier_of(snapshot) if snapshot is not None else LoadTier.SAFE

        if tier in (LoadTier.BLOCKED, LoadTier.CRITICAL):
            return 1
        if tier == LoadTier.WARNING:
            size = min(WARNING_BATCH_SIZE, int(headroom // estimated_cost_per_item))
        else:
            size = int((headroom / 2) // estimated_cost_per_item)
        return max(1, min(max_allowed, size))

    def all_snapshots(self) -> list[UsageSnapshot]:
        with self._lock:
            return list(self._snapshots.values())

    def clear(self, account_id: str) -> None:
        with self._lock:
            self._snapshots.pop(_account_key(account_id), None)

    def clear_all(self) -> None:
        with self._lock:
            self._snapshots.clear()

    def summary(self) -> str:
        snapshots = self.all_snapshots()
        if not snapshots:
            return "No usage data available"
        lines = ["Usage summary:"]
        for snapshot in snapshots:
            lines.append(
                f"  {self.tier_of(snapshot).value} account {snapshot.account_id}: {snapshot.call_count} calls, "
                f"tier {snapshot.access_tier}, wait {snapshot.seconds_until_access_regained}s"
            )
        return "\n".join(lines)

    def _report(self, snapshot: UsageSnapshot) -> None:
        tier = self.tier_of(snapshot)
        extra = {"account_id": snapshot.account_id, "tier": tier.value}
        if tier in (LoadTier.CRITICAL, LoadTier.BLOCKED):
            logger.error(
                "Account %s at %s usage (calls=%s, regain in %ss); pause operations for this account.",
                snapshot.account_id,
                tier.value,
                snapshot.call_count,
                snapshot.seconds_until_access_regained,
                extra=extra,
            )
        elif tier == LoadTier.WARNING:
            logger.warning(
                "Account %s approaching rate limit (calls=%s, access tier=%s).",
                snapshot.account_id,
                snapshot.call_count,
                snapshot.access_tier,
                extra=extra,
            )
        if tier != LoadTier.SAFE:
            emit_tier_classified(
                account_id=snapshot.account_id,
                tier=tier.value,
                call_count=snapshot.call_count,
                seconds_until_access_regained=snapshot.seconds_until_access_regained,
            )


def _account_key(account_id: str) -> str:
    return str(account_id).removeprefix("act_")


def find_usage_header(headers: Any, name: str = USAGE_HEADER_NAME) -> str | None:
    """Locate the usage header in a mapping or in the batch ``[{name, value}]`` list form."""
    if headers is None:
        return None
    wanted = name.lower()
    if isinstance(headers, Mapping) or hasattr(headers, "items"):
        for key, value in headers.items():
            if str(key).lower() == wanted:
                return value
        return None
    if isinstance(headers, Iterable) and not isinstance(headers, (str, bytes)):
        for entry in headers:
            if isinstance(entry, Mapping) and str(entry.get("name", "")).lower() == wanted:
                return entry.get("value")
    return None
