from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, TypeVar, Union

from graphquota.observability.events import emit_circuit_opened
from graphquota.providers.errors import ProviderCircuitOpenError
from graphquota.providers.execution_types import CircuitBreakerSnapshot, CircuitState


logger = logging.getLogger("graphquota.circuit")

T = TypeVar("T")
AlertHook = Callable[[CircuitBreakerSnapshot], Union[None, Awaitable[None]]]


class CircuitBreaker:
    """Fault-isolation wrapper for one remote dependency.

    Consecutive failures up to ``failure_threshold`` trip the breaker open for
    ``reset_timeout`` seconds. After the cool-down a single half-open probe is
    admitted; its outcome closes or re-opens the circuit.
    """

    def __init__(
        self,
        name: str = "platform",
        *,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        alert_hook: AlertHook | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.alert_hook = alert_hook
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._next_probe_at: float | None = None
        self._half_open_probe_in_flight = False

    def snapshot(self) -> CircuitBreakerSnapshot:
        return CircuitBreakerSnapshot(
            name=self.name,
            state=self.state(),
            consecutive_failures=self._consecutive_failures,
            failure_threshold=self.failure_threshold,
            next_probe_at=self._next_probe_at if self._state == CircuitState.OPEN else None,
        )

    def state(self, *, now: float | None = None) -> CircuitState:
        now_value = self._clock() if now is None else now
        if self._state == CircuitState.OPEN and self._next_probe_at is not None and now_value >= self._next_probe_at:
            self._state = CircuitState.HALF_OPEN
            self._half_open_probe_in_flight = False
        return self._state

    def before_call(self, *, now: float | None = None) -> None:
        now_value = self._clock() if now is None else now
        state = self.state(now=now_value)
        if state == CircuitState.OPEN:
            retry_after = max(0.0, (self._next_probe_at or now_value) - now_value)
            raise ProviderCircuitOpenError(
                f"Circuit breaker is OPEN for {self.name}.",
                retry_after_seconds=retry_after,
            )
        if state == CircuitState.HALF_OPEN:
            if self._half_open_probe_in_flight:
                raise ProviderCircuitOpenError(f"Circuit breaker half-open probe already in progress for {self.name}.")
            self._half_open_probe_in_flight = True

    def record_success(self) -> None:
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._next_probe_at = None
        self._half_open_probe_in_flight = False

    def record_failure(self, *, now: float | None = None) -> bool:
        """Count a failure. Returns True when this failure tripped a closed circuit open."""
        now_value = self._clock() if now is None else now
        if self.state(now=now_value) == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            self._next_probe_at = now_value + self.reset_timeout
            self._half_open_probe_in_flight = False
            logger.warning(
                "Half-open probe failed for %s; circuit re-opened.",
                self.name,
                extra={"event": "circuit.reopened", "breaker": self.name},
            )
            return False

        self._consecutive_failures += 1
        if self._state == CircuitState.CLOSED and self._consecutive_failures >= self.failure_threshold:
            self._state = CircuitState.OPEN
            self._next_probe_at = now_value + self.reset_timeout
            self._half_open_probe_in_flight = False
            emit_circuit_opened(
                breaker=self.name,
                consecutive_failures=self._consecutive_failures,
                next_probe_at=self._next_probe_at,
            )
            return True
        return False

    def release_half_open_slot(self) -> None:
        """Free the half-open slot without judging the dependency."""
        self._half_open_probe_in_flight = False

    async def call(self, fn: Callable[[], Any]) -> Any:
        self.before_call()
        try:
            result = fn()
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            self.release_half_open_slot()
            raise
        except Exception:
            if self.record_failure():
                await self._dispatch_alert()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        self.record_success()
        logger.info("Circuit breaker reset for %s", self.name, extra={"event": "circuit.reset", "breaker": self.name})

    async def _dispatch_alert(self) -> None:
        if self.alert_hook is None:
            return
        snapshot = self.snapshot()
        try:
            outcome = self.alert_hook(snapshot)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:  # noqa: BLE001
            logger.exception("Circuit alert delivery failed for %s", self.name, extra={"breaker": self.name})


class CircuitBreakerRegistry:
    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        alert_hook: AlertHook | None = None,
    ) -> None:
        self._failure_threshold = failure_threshold
        self._reset_timeout = reset_timeout
        self._alert_hook = alert_hook
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                failure_threshold=self._failure_threshold,
                reset_timeout=self._reset_timeout,
                alert_hook=self._alert_hook,
            )
            self._breakers[name] = breaker
        return breaker

    def states(self) -> dict[str, CircuitBreakerSnapshot]:
        return {name: breaker.snapshot() for name, breaker in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
        logger.info("All circuit breakers reset", extra={"event": "circuit.reset_all"})
