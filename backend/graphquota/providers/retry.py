from __future__ import annotations

from dataclasses import dataclass
import random
from typing import Callable

from graphquota.providers.errors import ProviderError, is_quota_error


class RetryExhaustedError(Exception):
    def __init__(self, *, last_error: BaseException, attempts: int) -> None:
        super().__init__(str(last_error))
        self.last_error = last_error
        self.attempts = attempts

    def __str__(self) -> str:
        return f"Retry exhausted after {self.attempts} attempts: {self.last_error}"


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    quota: bool
    delay_seconds: float


class RetryPolicy:
    """Retry schedule for queued operations.

    Quota failures back off exponentially and are followed by a fresh usage
    check; other transient failures back off linearly. Classified errors marked
    non-retryable end the operation on the spot.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        quota_base_delay_seconds: float = 5.0,
        quota_max_delay_seconds: float = 300.0,
        linear_delay_seconds: float = 1.0,
        jitter_ratio: float = 0.0,
        random_fn: Callable[[float, float], float] = random.uniform,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.quota_base_delay_seconds = quota_base_delay_seconds
        self.quota_max_delay_seconds = quota_max_delay_seconds
        self.linear_delay_seconds = linear_delay_seconds
        self.jitter_ratio = jitter_ratio
        self.random_fn = random_fn

    def quota_delay_for_attempt(self, attempt_number: int) -> float:
        base = min(self.quota_max_delay_seconds, self.quota_base_delay_seconds * (2 ** (attempt_number - 1)))
        if self.jitter_ratio <= 0:
            return base
        jitter_multiplier = 1.0 + self.random_fn(-self.jitter_ratio, self.jitter_ratio)
        return max(0.0, min(self.quota_max_delay_seconds, base * jitter_multiplier))

    def linear_delay_for_attempt(self, attempt_number: int) -> float:
        return self.linear_delay_seconds * attempt_number

    def decide(self, exc: BaseException, attempt_number: int) -> RetryDecision:
        quota = is_quota_error(exc)
        if isinstance(exc, ProviderError) and not exc.retryable and not quota:
            return RetryDecision(retry=False, quota=False, delay_seconds=0.0)
        if attempt_number >= self.max_attempts:
            return RetryDecision(retry=False, quota=quota, delay_seconds=0.0)
        if quota:
            return RetryDecision(retry=True, quota=True, delay_seconds=self.quota_delay_for_attempt(attempt_number))
        return RetryDecision(retry=True, quota=False, delay_seconds=self.linear_delay_for_attempt(attempt_number))
