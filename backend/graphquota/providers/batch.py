from __future__ import annotations

from contextlib import ExitStack
from dataclasses import replace
import json
import logging
from pathlib import Path
import re
from typing import Any, Callable, Mapping, Sequence, Union
from urllib.parse import unquote_plus, urlencode

from graphquota.core.settings import Settings, get_settings
from graphquota.observability.events import emit_batch_chunk
from graphquota.providers.client import PlatformClient
from graphquota.providers.errors import BatchValidationError, ProviderResponseFormatError
from graphquota.providers.execution_types import BatchOperation, BatchResult


logger = logging.getLogger("graphquota.batch")

BATCH_SIZE_LIMIT = 50
WRITE_METHODS = frozenset({"POST", "PUT"})
COPY_ID_FIELDS = ("copied_adset_id", "copied_campaign_id", "copied_ad_id")
TIMEOUT_ERROR = {"message": "Operation timed out or was not completed"}

_RESULT_REF_PATTERN = re.compile(r"\{result=([^:}]+):")

Attachment = Union[str, Path, bytes]
ChunkCallback = Callable[[int, list[BatchResult]], None]


def result_ref(name: str, path: str = "$.id") -> str:
    """Back-reference to a field of an earlier named operation, resolved by the platform."""
    if not name:
        raise BatchValidationError("A result reference needs the name of an earlier operation.")
    if not path.startswith("$"):
        path = f"$.{path}"
    return f"{{result={name}:{path}}}"


def build_operation(
    method: str,
    relative_url: str,
    body: Mapping[str, Any] | str | None = None,
    name: str | None = None,
    attached_files: Sequence[str] | None = None,
    access_token: str | None = None,
) -> BatchOperation:
    method = method.upper()
    encoded_body = None
    if body is not None and method in WRITE_METHODS:
        encoded_body = body if isinstance(body, str) else _form_encode(body)

    if access_token:
        separator = "&" if "?" in relative_url else "?"
        relative_url = f"{relative_url}{separator}{urlencode({'access_token': access_token})}"

    return BatchOperation(
        method=method,
        relative_url=relative_url,
        body=encoded_body,
        name=name or None,
        attached_files=",".join(attached_files) if attached_files else None,
    )


def _form_encode(body: Mapping[str, Any]) -> str:
    fields = {}
    for key, value in body.items():
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            value = json.dumps(value, separators=(",", ":"))
        elif isinstance(value, bool):
            value = "true" if value else "false"
        fields[key] = value
    return urlencode(fields)


class BatchStep:
    def __init__(self, name: str, index: int, operation: BatchOperation) -> None:
        self.name = name
        self.index = index
        self.operation = operation

    def ref(self, field: str = "id") -> str:
        return result_ref(self.name, field)


class BatchRequestBuilder:
    """Collects batch operations under unique names so later steps can reference earlier results."""

    def __init__(self, prefix: str = "op") -> None:
        self._prefix = prefix
        self._operations: list[BatchOperation] = []
        self._names: set[str] = set()
        self._counter = 0

    def add(
        self,
        method: str,
        relative_url: str,
        body: Mapping[str, Any] | str | None = None,
        *,
        name: str | None = None,
        attached_files: Sequence[str] | None = None,
        access_token: str | None = None,
    ) -> BatchStep:
        if name is None:
            name = self._next_name()
        elif name in self._names:
            raise BatchValidationError(f"Batch operation name {name!r} is already used.")
        operation = build_operation(method, relative_url, body, name, attached_files, access_token)
        self._names.add(name)
        self._operations.append(operation)
        return BatchStep(name, len(self._operations) - 1, operation)

    @property
    def operations(self) -> list[BatchOperation]:
        return list(self._operations)

    def __len__(self) -> int:
        return len(self._operations)

    def _next_name(self) -> str:
        while True:
            candidate = f"{self._prefix}-{self._counter}"
            self._counter += 1
            if candidate not in self._names:
                return candidate


class BatchExecutor:
    def __init__(
        self,
        client: PlatformClient,
        *,
        batch_size_limit: int | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._client = client
        self.batch_size_limit = min(BATCH_SIZE_LIMIT, batch_size_limit or settings.batch_size_limit)

    async def execute(
        self,
        operations: Sequence[BatchOperation],
        access_token: str,
        attachments: Mapping[str, Attachment] | None = None,
        *,
        include_headers: bool = True,
        account_id: str | None = None,
    ) -> list[BatchResult]:
        if not operations:
            raise BatchValidationError("No operations provided for batch request.")
        if not access_token:
            raise BatchValidationError("Access token is required for batch requests.")
        if len(operations) > self.batch_size_limit:
            raise BatchValidationError(f"Batch size exceeds limit of {self.batch_size_limit} operations.")

        fields = {
            "batch": json.dumps([operation.to_wire() for operation in operations], separators=(",", ":")),
            "access_token": access_token,
            "include_headers": "true" if include_headers else "false",
        }
        with ExitStack() as stack:
            files = _open_attachments(stack, attachments)
            response = await self._client.send(
                "POST",
                self._client.graph_url,
                account_id=account_id,
                data=fields,
                files=files or None,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderResponseFormatError("Batch response is not valid JSON.") from exc
        results = parse_batch_response(payload, len(operations))
        for result in results:
            if result.headers:
                self._client.tracker.ingest_headers(result.headers, account_id)
        return results

    async def execute_chunked(
        self,
        operations: Sequence[BatchOperation],
        access_token: str,
        attachments: Mapping[str, Attachment] | None = None,
        *,
        include_headers: bool = True,
        account_id: str | None = None,
        on_chunk: ChunkCallback | None = None,
        chunk_size: int | None = None,
    ) -> list[BatchResult]:
        if not operations:
            raise BatchValidationError("No operations provided for batch request.")
        size = min(chunk_size or self.batch_size_limit, self.batch_size_limit)
        if size < 1:
            raise BatchValidationError("Chunk size must be at least 1.")
        chunks = [list(operations[start : start + size]) for start in range(0, len(operations), size)]
        _check_references_stay_in_chunk(chunks)
        if len(chunks) > 1:
            logger.info("Splitting %s operations into %s chunks of %s", len(operations), len(chunks), size)

        all_results: list[BatchResult] = []
        for chunk_index, chunk in enumerate(chunks):
            offset = chunk_index * size
            chunk_results = await self.execute(
                chunk,
                access_token,
                _attachments_for(chunk, attachments),
                include_headers=include_headers,
                account_id=account_id,
            )
            chunk_results = [replace(result, index=offset + result.index) for result in chunk_results]
            emit_batch_chunk(chunk_index=chunk_index, chunk_count=len(chunks), operation_count=len(chunk))
            all_results.extend(chunk_results)
            if on_chunk is not None:
                on_chunk(chunk_index, chunk_results)
        return all_results

    async def retry_failed(
        self,
        previous_results: Sequence[BatchResult],
        original_operations: Sequence[BatchOperation],
        access_token: str,
        attachments: Mapping[str, Attachment] | None = None,
        *,
        account_id: str | None = None,
    ) -> list[BatchResult]:
        failed_indices = [index for index, result in enumerate(previous_results) if result.hard_failure]
        if not failed_indices:
            logger.info("No failed operations to retry")
            return []

        logger.info("Retrying %s failed operations", len(failed_indices))
        retry_results = await self.execute_chunked(
            [original_operations[index] for index in failed_indices],
            access_token,
            attachments,
            account_id=account_id,
        )
        return [
            replace(result, original_index=failed_indices[position])
            for position, result in enumerate(retry_results)
        ]


def merge_retry_results(previous_results: Sequence[BatchResult], retry_results: Sequence[BatchResult]) -> list[BatchResult]:
    merged = list(previous_results)
    for result in retry_results:
        if result.original_index is None:
            continue
        merged[result.original_index] = replace(result, index=result.original_index)
    return merged


def parse_batch_response(payload: Any, expected_count: int | None = None) -> list[BatchResult]:
    """Map the positional response array to one result per operation sent.

    Positions missing from a short array are indeterminate and come back as
    timed out, like null entries.
    """
    if not isinstance(payload, list):
        raise ProviderResponseFormatError("Invalid batch response format: expected a JSON array.")
    if expected_count is not None and len(payload) > expected_count:
        raise ProviderResponseFormatError(
            f"Batch response has {len(payload)} items for {expected_count} operations."
        )
    results = [_parse_item(index, item) for index, item in enumerate(payload)]
    if expected_count is not None and len(results) < expected_count:
        logger.warning("Batch response missing %s of %s items", expected_count - len(results), expected_count)
        results.extend(_parse_item(index, None) for index in range(len(results), expected_count))
    return results


def _parse_item(index: int, item: Any) -> BatchResult:
    if not isinstance(item, dict) or item.get("code") is None:
        headers = item.get("headers") if isinstance(item, dict) else None
        return BatchResult(
            index=index,
            code=None,
            success=False,
            error=dict(TIMEOUT_ERROR),
            timed_out=True,
            headers=headers if isinstance(headers, list) else [],
        )

    try:
        code = int(item["code"])
    except (TypeError, ValueError):
        code = 0
    headers = item.get("headers") if isinstance(item.get("headers"), list) else []
    success = 200 <= code < 300
    data: Any = None
    error: dict[str, Any] | None = None
    raw_body: str | None = None

    body = item.get("body")
    if body:
        try:
            data = json.loads(body) if isinstance(body, str) else body
        except ValueError:
            raw_body = body
        if isinstance(data, dict):
            if data.get("error"):
                success = False
                embedded = data["error"]
                error = embedded if isinstance(embedded, dict) else {"message": str(embedded)}
            elif not data.get("id"):
                copied_id = next((data[key] for key in COPY_ID_FIELDS if data.get(key)), None)
                if copied_id is not None:
                    data["id"] = copied_id

    if not success and error is None:
        error = {"message": f"Operation failed with status {code}", "code": code}
    return BatchResult(
        index=index,
        code=code,
        success=success,
        data=data,
        error=error,
        headers=headers,
        raw_body=raw_body,
    )


def _open_attachments(stack: ExitStack, attachments: Mapping[str, Attachment] | None) -> dict[str, Any]:
    files: dict[str, Any] = {}
    for field_name, source in (attachments or {}).items():
        if isinstance(source, bytes):
            files[field_name] = (field_name, source)
            continue
        path = Path(source)
        if not path.exists():
            logger.warning("Attachment %s not found at %s; skipping it.", field_name, path)
            continue
        files[field_name] = (path.name, stack.enter_context(path.open("rb")))
    return files


def _attachments_for(
    chunk: Sequence[BatchOperation],
    attachments: Mapping[str, Attachment] | None,
) -> dict[str, Attachment] | None:
    if not attachments:
        return None
    wanted = {
        name.strip()
        for operation in chunk
        if operation.attached_files
        for name in operation.attached_files.split(",")
    }
    selected = {name: source for name, source in attachments.items() if name in wanted}
    return selected or None


def _check_references_stay_in_chunk(chunks: Sequence[Sequence[BatchOperation]]) -> None:
    owner: dict[str, int] = {}
    for chunk_index, chunk in enumerate(chunks):
        for operation in chunk:
            if operation.name:
                owner[operation.name] = chunk_index
    for chunk_index, chunk in enumerate(chunks):
        for operation in chunk:
            text = f"{operation.relative_url} {operation.body or ''}"
            for referenced in _RESULT_REF_PATTERN.findall(unquote_plus(text)):
                if referenced in owner and owner[referenced] != chunk_index:
                    raise BatchValidationError(
                        f"Operation {operation.name or operation.relative_url!r} references {referenced!r} "
                        "from a different physical batch request."
                    )
