from __future__ import annotations

import json
import logging
from typing import Any

logger = logging.getLogger('graphquota.observability')


def _emit(event_name: str, payload: dict[str, Any], *, level: int = logging.INFO) -> None:
    message = {
        'event': event_name,
        **payload,
    }
    logger.log(level, json.dumps(message, sort_keys=True, separators=(',', ':'), default=str))


def emit_tier_classified(*, account_id: str, tier: str, call_count: int, seconds_until_access_regained: int) -> None:
    _emit(
        'usage.tier_classified',
        {
            'account_id': account_id,
            'tier': tier,
            'call_count': call_count,
            'seconds_until_access_regained': seconds_until_access_regained,
        },
    )


def emit_circuit_opened(*, breaker: str, consecutive_failures: int, next_probe_at: float | None) -> None:
    _emit(
        'circuit.opened',
        {
            'breaker': breaker,
            'consecutive_failures': consecutive_failures,
            'next_probe_at': next_probe_at,
        },
        level=logging.ERROR,
    )


def emit_batch_chunk(*, chunk_index: int, chunk_count: int, operation_count: int) -> None:
    _emit(
        'batch.chunk_executed',
        {
            'chunk_index': chunk_index,
            'chunk_count': chunk_count,
            'operation_count': operation_count,
        },
    )


def emit_queue_finished(*, account_id: str, completed: int, failed: int, duration_seconds: float) -> None:
    _emit(
        'queue.finished',
        {
            'account_id': account_id,
            'completed': completed,
            'failed': failed,
            'duration_seconds': round(duration_seconds, 3),
        },
    )
