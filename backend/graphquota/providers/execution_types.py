from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Union


class LoadTier(str, Enum):
    SAFE = "SAFE"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"
    BLOCKED = "BLOCKED"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class OperationStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class UsageSnapshot:
    account_id: str
    call_count: int
    total_cputime: float
    total_time: float
    seconds_until_access_regained: int
    access_tier: str
    observed_at: datetime
    usage_type: str = "ads_management"


@dataclass(frozen=True)
class TierThresholds:
    warning_mark: int = 50
    critical_mark: int = 85
    call_ceiling: int = 100

    def __post_init__(self) -> None:
        if not 0 <= self.warning_mark < self.critical_mark <= self.call_ceiling:
            raise ValueError("thresholds must satisfy 0 <= warning_mark < critical_mark <= call_ceiling")


@dataclass(frozen=True)
class CircuitBreakerSnapshot:
    name: str
    state: CircuitState
    consecutive_failures: int
    failure_threshold: int
    next_probe_at: float | None


@dataclass(frozen=True)
class BatchOperation:
    method: str
    relative_url: str
    body: str | None = None
    name: str | None = None
    attached_files: str | None = None

    def to_wire(self) -> dict[str, str]:
        wire = {"method": self.method, "relative_url": self.relative_url}
        if self.body is not None:
            wire["body"] = self.body
        if self.name is not None:
            wire["name"] = self.name
        if self.attached_files is not None:
            wire["attached_files"] = self.attached_files
        return wire


@dataclass(frozen=True)
class BatchResult:
    index: int
    code: int | None
    success: bool
    data: Any = None
    error: dict[str, Any] | None = None
    timed_out: bool = False
    headers: list[dict[str, str]] = field(default_factory=list)
    raw_body: str | None = None
    original_index: int | None = None

    @property
    def hard_failure(self) -> bool:
        return not self.success and not self.timed_out


OperationCallable = Callable[[], Union[Any, Awaitable[Any]]]


@dataclass
class Operation:
    id: str
    type: str
    execute: OperationCallable
    metadata: dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0
    status: OperationStatus = OperationStatus.PENDING


@dataclass(frozen=True)
class OperationResult:
    id: str
    type: str
    status: str
    result: Any = None
    error: str | None = None
    error_code: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


@dataclass(frozen=True)
class QueueProgress:
    account_id: str
    completed: int
    failed: int
    total: int
    current_operation_type: str | None


@dataclass(frozen=True)
class QueueStatus:
    account_id: str
    processing: bool
    queue_length: int
    completed_count: int
    failed_count: int
    current_operation: dict[str, Any] | None
    tier: LoadTier | None
    usage: UsageSnapshot | None


@dataclass(frozen=True)
class QueueRunSummary:
    account_id: str
    results: list[OperationResult]
    completed: int
    failed: int
    duration_seconds: float
