from graphquota.providers.batch import BatchExecutor, BatchRequestBuilder, build_operation, merge_retry_results, result_ref
from graphquota.providers.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from graphquota.providers.client import PlatformClient
from graphquota.providers.retry import RetryPolicy
from graphquota.providers.transport import HttpxTransport, TransportResponse
from graphquota.providers.usage_tracker import UsageTracker

__all__ = [
    "UsageTracker",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "RetryPolicy",
    "PlatformClient",
    "HttpxTransport",
    "TransportResponse",
    "BatchExecutor",
    "BatchRequestBuilder",
    "build_operation",
    "result_ref",
    "merge_retry_results",
]
