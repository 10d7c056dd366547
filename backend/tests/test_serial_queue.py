import asyncio

import pytest

from graphquota.providers.errors import (
    OperationValidationError,
    PlatformRejectionError,
    ProviderRateLimitError,
    ProviderTimeoutError,
)
from graphquota.providers.execution_types import LoadTier, Operation, QueueProgress, QueueRunSummary
from graphquota.services.serial_queue import SerialQueue, process_operations_serially


class _RecordingSleep:
    def __init__(self, events: list[str] | None = None) -> None:
        self.delays: list[float] = []
        self.events = events

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.events is not None:
            self.events.append(f"sleep:{delay:g}")


def _queue(tracker, sleep=None, **kwargs) -> SerialQueue:
    return SerialQueue("123", tracker=tracker, sleep_fn=sleep or _RecordingSleep(), **kwargs)


def test_one_failing_operation_does_not_stop_the_rest(tracker) -> None:
    errors = []
    queue = _queue(tracker, on_error=lambda operation, exc: errors.append((operation.id, exc)))

    def _make(index: int):
        def _run():
            if index == 3:
                raise PlatformRejectionError("Invalid parameter")
            return {"id": f"ad-{index}"}

        return _run

    for index in range(1, 6):
        queue.enqueue({"id": f"op-{index}", "type": "ad_create", "execute": _make(index)})

    results = asyncio.run(queue.drain())

    assert len(results) == 5
    assert [result.status for result in results] == ["success", "success", "failed", "success", "success"]
    assert results[2].error == "Invalid parameter"
    assert results[2].error_code == "platform_rejection"
    assert results[2].attempts == 1
    assert results[4].result == {"id": "ad-5"}
    assert [operation_id for operation_id, _ in errors] == ["op-3"]
    status = queue.get_status()
    assert (status.completed_count, status.failed_count, status.queue_length) == (4, 1, 0)


def test_critical_tier_waits_before_each_operation_and_never_overlaps(tracker, make_usage_header) -> None:
    tracker.ingest("123", make_usage_header(call_count=90))
    events: list[str] = []
    sleep = _RecordingSleep(events)
    queue = _queue(tracker, sleep)

    def _operation(name: str):
        async def _run():
            events.append(f"{name}:start")
            await asyncio.sleep(0)
            events.append(f"{name}:end")
            return name

        return _run

    queue.enqueue({"type": "fetch_details", "execute": _operation("A")})
    queue.enqueue({"type": "video_upload", "execute": _operation("B")})
    results = asyncio.run(queue.drain())

    assert tracker.tier_for_account("123") == LoadTier.CRITICAL
    assert sleep.delays == [300.0, 300.0]
    assert events == ["sleep:300", "A:start", "A:end", "sleep:300", "B:start", "B:end"]
    assert [result.result for result in results] == ["A", "B"]


def test_no_usage_data_means_no_wait(tracker) -> None:
    sleep = _RecordingSleep()
    queue = _queue(tracker, sleep)
    queue.enqueue(lambda: "done")
    results = asyncio.run(queue.drain())
    assert results[0].succeeded
    assert sleep.delays == []


def test_transient_failures_back_off_linearly(tracker) -> None:
    sleep = _RecordingSleep()
    queue = _queue(tracker, sleep)
    attempts = {"count": 0}

    def _flaky():
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise ProviderTimeoutError()
        return "ok"

    queue.enqueue({"id": "flaky", "type": "fetch_details", "execute": _flaky})
    results = asyncio.run(queue.drain())

    assert results[0].status == "success"
    assert results[0].attempts == 3
    assert sleep.delays == [1.0, 2.0]


def test_exhausted_retries_become_a_terminal_failure(tracker) -> None:
    sleep = _RecordingSleep()
    queue = _queue(tracker, sleep, max_retries=3)
    calls = {"count": 0}

    def _always_times_out():
        calls["count"] += 1
        raise ProviderTimeoutError("upstream timed out")

    queue.enqueue({"id": "slow", "execute": _always_times_out})
    queue.enqueue({"id": "after", "execute": lambda: "still runs"})
    results = asyncio.run(queue.drain())

    assert calls["count"] == 3
    assert results[0].status == "failed"
    assert results[0].attempts == 3
    assert results[0].error == "upstream timed out"
    assert results[0].error_code == "provider_timeout"
    assert results[1].result == "still runs"
    assert sleep.delays == [1.0, 2.0]


def test_quota_failure_backs_off_and_reconsults_usage(tracker, make_usage_header) -> None:
    sleep = _RecordingSleep()
    queue = _queue(tracker, sleep)
    attempts = {"count": 0}

    def _throttled_once():
        attempts["count"] += 1
        if attempts["count"] == 1:
            tracker.ingest("123", make_usage_header(call_count=100, regain_seconds=30))
            raise ProviderRateLimitError(status_code=429)
        return "created"

    queue.enqueue({"id": "create", "type": "ad_create", "execute": _throttled_once})
    results = asyncio.run(queue.drain())

    assert results[0].result == "created"
    assert sleep.delays == [5.0, 40.0]


def test_concurrent_drain_shares_the_in_flight_run(tracker) -> None:
    executed = []
    queue = _queue(tracker)

    async def _op():
        executed.append("run")
        await asyncio.sleep(0)
        return "ok"

    queue.enqueue(_op)
    queue.enqueue(_op)

    async def _run():
        return await asyncio.gather(queue.drain(), queue.drain())

    first, second = asyncio.run(_run())
    assert executed == ["run", "run"]
    assert first == second
    assert len(first) == 2


@pytest.mark.parametrize("bad", [{"id": "x", "type": "ad_create"}, {"execute": "not callable"}, 42])
def test_enqueue_rejects_operations_without_execute(tracker, bad) -> None:
    queue = _queue(tracker)
    with pytest.raises(OperationValidationError):
        queue.enqueue(bad)
    assert queue.get_status().queue_length == 0


def test_enqueue_fills_defaults(tracker) -> None:
    queue = _queue(tracker)
    operation = queue.enqueue(lambda: None)
    assert operation.id.startswith("op_")
    assert operation.type == "unknown"
    assert operation.metadata == {}
    assert operation.retry_count == 0

    explicit = queue.enqueue(Operation(id="mine", type="ad_create", execute=lambda: None, retry_count=7))
    assert explicit.retry_count == 0
    assert queue.get_status().queue_length == 2


def test_status_reports_current_operation_and_tier(tracker, make_usage_header) -> None:
    tracker.ingest("123", make_usage_header(call_count=60))
    queue = _queue(tracker)
    seen = {}

    def _inspect():
        seen["status"] = queue.get_status()
        return "ok"

    queue.enqueue({"id": "probe", "type": "fetch_details", "execute": _inspect})
    queue.enqueue({"id": "next", "execute": lambda: "ok"})
    asyncio.run(queue.drain())

    status = seen["status"]
    assert status.processing is True
    assert status.current_operation == {"id": "probe", "type": "fetch_details", "retry_count": 0}
    assert status.queue_length == 1
    assert status.tier == LoadTier.WARNING
    assert status.usage.call_count == 60
    assert queue.get_status().processing is False
    assert queue.get_status().current_operation is None


def test_callbacks_receive_progress_and_summary(tracker) -> None:
    progress: list[QueueProgress] = []
    summaries: list[QueueRunSummary] = []

    async def _on_complete(summary: QueueRunSummary) -> None:
        summaries.append(summary)

    def _broken_progress(update: QueueProgress) -> None:
        progress.append(update)
        raise RuntimeError("listener crashed")

    queue = _queue(tracker, on_progress=_broken_progress, on_complete=_on_complete)
    queue.enqueue({"type": "ad_create", "execute": lambda: 1})
    queue.enqueue({"type": "ad_create", "execute": lambda: 2})
    results = asyncio.run(queue.drain())

    assert len(results) == 2
    assert [(p.completed, p.failed, p.total) for p in progress] == [(1, 0, 2), (2, 0, 2)]
    assert summaries[0].completed == 2
    assert summaries[0].failed == 0


def test_wait_until_complete_starts_pending_work(tracker) -> None:
    queue = _queue(tracker)
    queue.enqueue(lambda: "a")
    first = asyncio.run(queue.wait_until_complete())
    assert [result.result for result in first] == ["a"]
    assert asyncio.run(queue.wait_until_complete()) == first


def test_clear_empties_pending_and_resets_counters(tracker) -> None:
    queue = _queue(tracker)
    queue.enqueue(lambda: "a")
    asyncio.run(queue.drain())
    queue.enqueue(lambda: "b")

    queue.clear()

    status = queue.get_status()
    assert (status.queue_length, status.completed_count, status.failed_count) == (0, 0, 0)


def test_process_operations_serially_returns_outcomes_and_counts(tracker) -> None:
    def _fail():
        raise PlatformRejectionError("nope")

    summary = asyncio.run(
        process_operations_serially(
            "act_123",
            [lambda: "one", {"type": "ad_create", "execute": _fail}, lambda: "three"],
            tracker=tracker,
            sleep_fn=_RecordingSleep(),
        )
    )

    assert summary.account_id == "act_123"
    assert (summary.completed, summary.failed) == (2, 1)
    assert [result.status for result in summary.results] == ["success", "failed", "success"]
    assert summary.duration_seconds >= 0


def test_creation_loop_isolates_iteration_failures(tracker) -> None:
    queue = _queue(tracker)
    responses = iter([{"id": "as-1"}, {}, {"id": "as-3"}])
    follow_ups = []
    iterations = []

    async def _create(config):
        return next(responses)

    async def _upload_creatives(adset_id, config):
        follow_ups.append(adset_id)
        if adset_id == "as-3":
            raise RuntimeError("upload failed")

    report = asyncio.run(
        queue.run_creation_loop(
            [{"name": "First"}, {"name": "Second"}, {"name": "Third"}],
            _create,
            _upload_creatives,
            on_iteration=iterations.append,
        )
    )

    assert report.successful == ["as-1", "as-3"]
    assert report.failed == [{"iteration": 2, "config": "Second", "error": "Create call returned no id"}]
    assert follow_ups == ["as-1", "as-3"]
    assert [item["status"] for item in iterations] == ["success", "failed", "success"]
    assert iterations[-1]["pending"] == 0
    assert (report.total_created, report.total_failed) == (2, 1)


def test_creation_loop_can_stop_on_first_error(tracker, make_usage_header) -> None:
    tracker.ingest("123", make_usage_header(call_count=10))
    sleep = _RecordingSleep()
    queue = _queue(tracker, sleep)
    calls = []

    async def _create(config):
        calls.append(config["name"])
        if config["name"] == "B":
            raise PlatformRejectionError("Invalid targeting")
        return {"id": config["name"].lower()}

    report = asyncio.run(queue.run_creation_loop([{"name": "A"}, {"name": "B"}, {"name": "C"}], _create, stop_on_error=True))

    assert calls == ["A", "B"]
    assert report.successful == ["a"]
    assert len(report.details) == 2
    assert sleep.delays == [5.0, 5.0, 5.0]
