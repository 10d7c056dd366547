from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
import inspect
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence, Union

from graphquota.core.settings import Settings, get_settings
from graphquota.observability.events import emit_queue_finished
from graphquota.providers.errors import OperationValidationError, classify_provider_error, describe_error
from graphquota.providers.execution_types import (
    Operation,
    OperationResult,
    OperationStatus,
    QueueProgress,
    QueueRunSummary,
    QueueStatus,
)
from graphquota.providers.retry import RetryExhaustedError, RetryPolicy
from graphquota.providers.usage_tracker import UsageTracker


logger = logging.getLogger("graphquota.queue")

SleepFn = Callable[[float], Awaitable[None]]
Callback = Callable[..., Union[None, Awaitable[None]]]
OperationInput = Union[Operation, Mapping[str, Any], Callable[[], Any]]


@dataclass
class CreationLoopReport:
    successful: list[str] = field(default_factory=list)
    failed: list[dict[str, Any]] = field(default_factory=list)
    details: list[dict[str, Any]] = field(default_factory=list)

    @property
    def total_created(self) -> int:
        return len(self.successful)

    @property
    def total_failed(self) -> int:
        return len(self.failed)


class SerialQueue:
    """Executes one account's operations strictly one at a time.

    Before each dispatch the queue asks the usage tracker how long to wait for
    the account's current load tier, sleeps that long, then runs the operation
    with bounded retries. A failed operation is recorded and the queue moves
    on; ``drain`` never raises because of an operation.
    """

    def __init__(
        self,
        account_id: str,
        *,
        tracker: UsageTracker,
        retry_policy: RetryPolicy | None = None,
        max_retries: int | None = None,
        sleep_fn: SleepFn = asyncio.sleep,
        on_progress: Callback | None = None,
        on_error: Callback | None = None,
        on_complete: Callback | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.account_id = account_id
        self._tracker = tracker
        self._retry_policy = retry_policy or RetryPolicy(
            max_attempts=max_retries or settings.queue_max_retries,
            quota_base_delay_seconds=settings.queue_quota_backoff_base_seconds,
            quota_max_delay_seconds=settings.queue_quota_backoff_max_seconds,
            linear_delay_seconds=settings.queue_linear_backoff_seconds,
        )
        self._sleep = sleep_fn
        self.on_progress = on_progress
        self.on_error = on_error
        self.on_complete = on_complete

        self._pending: deque[Operation] = deque()
        self._results: list[OperationResult] = []
        self._completed = 0
        self._failed = 0
        self._current: Operation | None = None
        self._drain_task: asyncio.Task[list[OperationResult]] | None = None

    @property
    def max_retries(self) -> int:
        return self._retry_policy.max_attempts

    @property
    def processing(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    def enqueue(self, operation: OperationInput) -> Operation:
        normalized = _normalize_operation(operation)
        self._pending.append(normalized)
        logger.debug(
            "Enqueued operation %s (type: %s)",
            normalized.id,
            normalized.type,
            extra={"account_id": self.account_id, "operation_id": normalized.id},
        )
        return normalized

    def enqueue_all(self, operations: Iterable[OperationInput]) -> list[Operation]:
        return [self.enqueue(operation) for operation in operations]

    async def drain(self) -> list[OperationResult]:
        if self.processing:
            logger.warning("Queue for account %s is already draining", self.account_id, extra={"account_id": self.account_id})
            return await asyncio.shield(self._drain_task)
        self._drain_task = asyncio.ensure_future(self._drain_loop())
        return await asyncio.shield(self._drain_task)

    async def wait_until_complete(self) -> list[OperationResult]:
        if self.processing:
            return await asyncio.shield(self._drain_task)
        if self._pending:
            return await self.drain()
        return list(self._results)

    def get_status(self) -> QueueStatus:
        current = None
        if self._current is not None:
            current = {
                "id": self._current.id,
                "type": self._current.type,
                "retry_count": self._current.retry_count,
            }
        return QueueStatus(
            account_id=self.account_id,
            processing=self.processing,
            queue_length=len(self._pending),
            completed_count=self._completed,
            failed_count=self._failed,
            current_operation=current,
            tier=self._tracker.tier_for_account(self.account_id),
            usage=self._tracker.get(self.account_id),
        )

    def clear(self) -> None:
        self._pending.clear()
        self._results = []
        self._completed = 0
        self._failed = 0
        logger.info("Queue cleared for account %s", self.account_id, extra={"account_id": self.account_id})

    async def _drain_loop(self) -> list[OperationResult]:
        started = time.perf_counter()
        logger.info(
            "Starting queue processing for account %s with %s operations",
            self.account_id,
            len(self._pending),
            extra={"account_id": self.account_id},
        )

        while self._pending:
            operation = self._pending.popleft()
            self._current = operation
            try:
                await self._wait_for_capacity(operation)
                result = await self._execute_with_retry(operation)
            except Exception as exc:  # noqa: BLE001
                await self._record_failure(operation, exc)
            else:
                await self._record_success(operation, result)
            finally:
                self._current = None

        duration = time.perf_counter() - started
        summary = QueueRunSummary(
            account_id=self.account_id,
            results=list(self._results),
            completed=self._completed,
            failed=self._failed,
            duration_seconds=duration,
        )
        emit_queue_finished(
            account_id=self.account_id,
            completed=self._completed,
            failed=self._failed,
            duration_seconds=duration,
        )
        await self._invoke_callback(self.on_complete, summary)
        return list(self._results)

    async def _wait_for_capacity(self, operation: Operation) -> None:
        delay = self._tracker.recommended_delay(self.account_id, operation.type)
        if delay <= 0:
            return
        tier = self._tracker.tier_for_account(self.account_id)
        logger.info(
            "Waiting %.2fs before %s (%s) at %s load",
            delay,
            operation.id,
            operation.type,
            tier.value if tier else "unknown",
            extra={
                "account_id": self.account_id,
                "operation_id": operation.id,
                "tier": tier.value if tier else None,
                "delay_seconds": delay,
            },
        )
        await self._sleep(delay)

    async def _execute_with_retry(self, operation: Operation) -> Any:
        attempt = 1
        while True:
            try:
                outcome = operation.execute()
                if inspect.isawaitable(outcome):
                    outcome = await outcome
                return outcome
            except Exception as exc:  # noqa: PERF203
                operation.retry_count += 1
                decision = self._retry_policy.decide(exc, attempt)
                if not decision.retry:
                    if attempt >= self._retry_policy.max_attempts:
                        raise RetryExhaustedError(last_error=exc, attempts=attempt) from exc
                    raise
                logger.warning(
                    "Operation %s failed (%s). Retry %s/%s after %.2fs",
                    operation.id,
                    "rate limited" if decision.quota else describe_error(exc).message,
                    attempt,
                    self._retry_policy.max_attempts,
                    decision.delay_seconds,
                    extra={"account_id": self.account_id, "operation_id": operation.id},
                )
                await self._sleep(decision.delay_seconds)
                if decision.quota:
                    await self._wait_for_capacity(operation)
                attempt += 1

    async def _record_success(self, operation: Operation, result: Any) -> None:
        operation.status = OperationStatus.COMPLETED
        self._completed += 1
        self._results.append(
            OperationResult(
                id=operation.id,
                type=operation.type,
                status="success",
                result=result,
                metadata=operation.metadata,
                attempts=operation.retry_count + 1,
            )
        )
        logger.info(
            "Operation %s completed",
            operation.id,
            extra={"account_id": self.account_id, "operation_id": operation.id, "operation_type": operation.type},
        )
        await self._invoke_callback(self.on_progress, self._progress(operation))

    async def _record_failure(self, operation: Operation, exc: BaseException) -> None:
        cause = exc.last_error if isinstance(exc, RetryExhaustedError) else exc
        details = describe_error(cause)
        operation.status = OperationStatus.FAILED
        self._failed += 1
        self._results.append(
            OperationResult(
                id=operation.id,
                type=operation.type,
                status="failed",
                error=details.platform_message or str(cause) or details.message,
                error_code=classify_provider_error(cause).error_code,
                metadata=operation.metadata,
                attempts=max(operation.retry_count, 1),
            )
        )
        logger.error(
            "Operation %s (%s) failed: %s [status=%s code=%s retries=%s/%s]",
            operation.id,
            operation.type,
            details.message,
            details.status_code if details.status_code is not None else "N/A",
            details.code if details.code is not None else "N/A",
            operation.retry_count,
            self.max_retries,
            extra={"account_id": self.account_id, "operation_id": operation.id, "operation_type": operation.type},
        )
        await self._invoke_callback(self.on_error, operation, cause)
        await self._invoke_callback(self.on_progress, self._progress(operation))

    async def run_creation_loop(
        self,
        configs: Sequence[Mapping[str, Any]],
        create_fn: Callable[[Mapping[str, Any]], Awaitable[Any]],
        follow_up_fn: Callable[[str, Mapping[str, Any]], Awaitable[Any]] | None = None,
        *,
        operation_type: str = "adset_create",
        stop_on_error: bool = False,
        on_iteration: Callback | None = None,
    ) -> CreationLoopReport:
        """Create items one per iteration, checking the account's load tier before and after each.

        A created item must come back with an ``id``. Failures of ``follow_up_fn``
        (for example uploading creatives into a new ad set) are logged and do not
        fail the iteration.
        """
        report = CreationLoopReport()
        total = len(configs)
        probe = Operation(id="creation-loop", type=operation_type, execute=lambda: None)

        for position, config in enumerate(configs):
            iteration = position + 1
            label = str(config.get("name") or f"Item {iteration}")
            try:
                await self._wait_for_capacity(probe)
                created = await create_fn(config)
                item_id = created.get("id") if isinstance(created, Mapping) else None
                if not item_id:
                    raise ValueError("Create call returned no id")
                item_id = str(item_id)

                if follow_up_fn is not None:
                    try:
                        await follow_up_fn(item_id, config)
                    except Exception as follow_up_error:  # noqa: BLE001
                        logger.warning(
                            "Follow-up for %s failed: %s",
                            item_id,
                            follow_up_error,
                            extra={"account_id": self.account_id},
                        )

                report.successful.append(item_id)
                detail = {"iteration": iteration, "id": item_id, "status": "success", "config": label}
                logger.info(
                    "[%s/%s] created %s (%s created, %s failed, %s pending)",
                    iteration,
                    total,
                    item_id,
                    report.total_created,
                    report.total_failed,
                    total - iteration,
                    extra={"account_id": self.account_id},
                )
            except Exception as exc:  # noqa: BLE001
                report.failed.append({"iteration": iteration, "config": label, "error": str(exc)})
                detail = {"iteration": iteration, "status": "failed", "error": str(exc), "config": label}
                logger.error(
                    "[%s/%s] failed to create %r: %s",
                    iteration,
                    total,
                    label,
                    exc,
                    extra={"account_id": self.account_id},
                )

            report.details.append(detail)
            await self._invoke_callback(
                on_iteration,
                {
                    **detail,
                    "total": total,
                    "completed": report.total_created,
                    "failed": report.total_failed,
                    "pending": total - iteration,
                },
            )
            if detail["status"] == "failed" and stop_on_error:
                logger.error("Stopping creation loop after failure", extra={"account_id": self.account_id})
                break
            if detail["status"] == "success" and position < total - 1:
                await self._wait_for_capacity(probe)

        return report

    def _progress(self, operation: Operation) -> QueueProgress:
        return QueueProgress(
            account_id=self.account_id,
            completed=self._completed,
            failed=self._failed,
            total=self._completed + self._failed + len(self._pending),
            current_operation_type=operation.type,
        )

    async def _invoke_callback(self, callback: Callback | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            outcome = callback(*args)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:  # noqa: BLE001
            logger.exception("Queue callback failed", extra={"account_id": self.account_id})


def _normalize_operation(operation: OperationInput) -> Operation:
    if isinstance(operation, Operation):
        if not callable(operation.execute):
            raise OperationValidationError("Operation must have a callable execute.")
        operation.retry_count = 0
        operation.status = OperationStatus.PENDING
        return operation
    if isinstance(operation, Mapping):
        execute = operation.get("execute")
        if not callable(execute):
            raise OperationValidationError("Operation must have a callable execute.")
        return Operation(
            id=str(operation.get("id") or _new_operation_id()),
            type=str(operation.get("type") or "unknown"),
            execute=execute,
            metadata=dict(operation.get("metadata") or {}),
        )
    if callable(operation):
        return Operation(id=_new_operation_id(), type="unknown", execute=operation)
    raise OperationValidationError("Operation must have a callable execute.")


def _new_operation_id() -> str:
    return f"op_{uuid.uuid4().hex[:12]}"


async def process_operations_serially(
    account_id: str,
    operations: Sequence[OperationInput],
    *,
    tracker: UsageTracker,
    **options: Any,
) -> QueueRunSummary:
    """Create a queue for one account, enqueue everything, drain it and report."""
    started = time.perf_counter()
    queue = SerialQueue(account_id, tracker=tracker, **options)
    queue.enqueue_all(operations)
    results = await queue.drain()
    status = queue.get_status()
    return QueueRunSummary(
        account_id=account_id,
        results=results,
        completed=status.completed_count,
        failed=status.failed_count,
        duration_seconds=time.perf_counter() - started,
    )


