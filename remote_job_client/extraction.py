"""
Entity extraction over inputs too large for a single request.

Chunks are sent one at a time. Each request carries every entity accepted so
far (under temporary ids) so later chunks can refer to earlier ones; results
are merged with deduplication on the entity dedup key. A failing chunk is
skipped, and the run only fails when nothing at all was extracted.
"""
from typing import Any, Callable, Optional

from loguru import logger
from pydantic import ValidationError

from remote_job_client import chunking
from remote_job_client.cancellation import CancellationToken
from remote_job_client.errors import ErrorCategory, OperationCancelled
from remote_job_client.models import (
    Chunk,
    ChunkingConfig,
    EntityOperation,
    ExtractedEntity,
    ExtractionResult,
    RetryConfig,
    TransportRequest,
)
from remote_job_client.request_executor import RequestExecutor, RetryCallback
from remote_job_client.retry_policy import RetryPolicy

# on_chunk_progress(chunk_index, total_chunks, message)
ChunkProgressCallback = Callable[[int, int, str], Any]


class ExtractionMerger:
    def __init__(
        self,
        executor: RequestExecutor,
        endpoint: str,
        chunking_config: Optional[ChunkingConfig] = None,
        headers: Optional[dict[str, str]] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.executor = executor
        self.endpoint = endpoint
        self.chunking_config = chunking_config or ChunkingConfig()
        self.headers = headers or {}
        self.retry_config = retry_config
        self.logger = logger

    async def extract(
        self,
        text: str,
        token: Optional[CancellationToken] = None,
        existing_entities: Optional[list[dict[str, Any]]] = None,
        reference_time: Optional[str] = None,
        on_chunk_progress: Optional[ChunkProgressCallback] = None,
        on_retry: Optional[RetryCallback] = None,
    ) -> ExtractionResult:
        """Extract entities from `text`, chunking it when it exceeds the threshold"""
        context = [self._context_entry(e, e.get("id")) for e in existing_entities or []]

        if not chunking.needs_chunking(text, self.chunking_config.threshold_to_chunk):
            result = await self._extract_once(text, context, reference_time, token, on_retry)
            if not result.success:
                result.original_text = text
            return result

        chunks = chunking.split_with_config(text, self.chunking_config)
        return await self._extract_chunks(
            text, chunks, context, reference_time, token, on_chunk_progress, on_retry
        )

    async def _extract_chunks(
        self,
        text: str,
        chunks: list[Chunk],
        context: list[dict[str, Any]],
        reference_time: Optional[str],
        token: Optional[CancellationToken],
        on_chunk_progress: Optional[ChunkProgressCallback],
        on_retry: Optional[RetryCallback],
    ) -> ExtractionResult:
        seen_keys: set[str] = set()
        operations: list[EntityOperation] = []
        failed_chunks: list[int] = []
        skipped_duplicates = 0
        accepted = 0
        last_failure: Optional[ExtractionResult] = None

        for chunk in chunks:
            if token is not None:
                token.raise_if_cancelled()
            if on_chunk_progress is not None:
                on_chunk_progress(
                    chunk.index, chunk.total, f"Processing chunk {chunk.index + 1}/{chunk.total}..."
                )

            try:
                result = await self._extract_once(chunk.text, context, reference_time, token, on_retry)
            except OperationCancelled:
                raise
            except Exception as e:
                self.logger.warning(f"Chunk {chunk.index + 1}/{chunk.total} raised, skipping: {e}")
                failed_chunks.append(chunk.index)
                last_failure = ExtractionResult(success=False, error=str(e), category=ErrorCategory.unknown)
                continue

            if not result.success:
                self.logger.warning(
                    f"Chunk {chunk.index + 1}/{chunk.total} failed, skipping: {result.error}"
                )
                failed_chunks.append(chunk.index)
                last_failure = result
                continue

            for operation in result.operations:
                merged, dropped = self._merge_operation(operation, seen_keys, context)
                skipped_duplicates += dropped
                if merged is not None:
                    accepted += len(merged.entities)
                    operations.append(merged)

        total = len(chunks)
        if accepted == 0:
            return self._empty_result(text, total, failed_chunks, last_failure)

        message = f"Extracted {accepted} entities from {total - len(failed_chunks)}/{total} chunks"
        if failed_chunks:
            message += f"; skipped chunks {[i + 1 for i in failed_chunks]}"
        self.logger.info(f"{message} ({skipped_duplicates} duplicates dropped)")
        return ExtractionResult(
            success=True,
            operations=operations,
            message=message,
            failed_chunks=failed_chunks,
            skipped_duplicates=skipped_duplicates,
            total_chunks=total,
        )

    def _merge_operation(
        self,
        operation: EntityOperation,
        seen_keys: set[str],
        context: list[dict[str, Any]],
    ) -> tuple[Optional[EntityOperation], int]:
        if not operation.entities:
            return (operation if operation.updates else None), 0

        kept: list[ExtractedEntity] = []
        index_map: dict[int, int] = {}
        dropped = 0
        for i, entity in enumerate(operation.entities):
            if entity.dedup_key in seen_keys:
                self.logger.debug(f"Dropping duplicate entity {entity.dedup_key}")
                dropped += 1
                continue
            seen_keys.add(entity.dedup_key)
            index_map[i] = len(kept)
            kept.append(entity)
            context.append(self._context_entry(entity.model_dump(), f"temp_{len(context)}"))

        connections = []
        for connection in operation.connections:
            if connection.from_index in index_map and connection.to_index in index_map:
                connections.append(
                    connection.model_copy(
                        update={
                            "from_index": index_map[connection.from_index],
                            "to_index": index_map[connection.to_index],
                        }
                    )
                )

        if not kept and not operation.updates:
            return None, dropped
        return (
            EntityOperation(
                action=operation.action,
                entities=kept,
                connections=connections,
                updates=operation.updates,
            ),
            dropped,
        )

    def _empty_result(
        self,
        text: str,
        total: int,
        failed_chunks: list[int],
        last_failure: Optional[ExtractionResult],
    ) -> ExtractionResult:
        if len(failed_chunks) == total:
            error = f"All {total} chunks failed"
            if last_failure is not None and last_failure.error:
                error += f": {last_failure.error}"
            category = last_failure.category if last_failure else ErrorCategory.unknown
            remediation = last_failure.remediation if last_failure else None
        else:
            error = f"No entities extracted from {total} chunks"
            category = ErrorCategory.unknown
            remediation = "Try rephrasing the text or adding more detail about the entities."
        self.logger.error(error)
        return ExtractionResult(
            success=False,
            error=error,
            category=category,
            remediation=remediation,
            failed_chunks=failed_chunks,
            total_chunks=total,
            original_text=text,
        )

    @staticmethod
    def _context_entry(entity: dict[str, Any], entity_id: Optional[str]) -> dict[str, Any]:
        parsed = ExtractedEntity.from_payload(entity)
        return {
            "id": entity_id,
            "type": parsed.type,
            "label": parsed.label,
            "properties": parsed.properties,
        }

    async def _extract_once(
        self,
        text: str,
        context: list[dict[str, Any]],
        reference_time: Optional[str],
        token: Optional[CancellationToken],
        on_retry: Optional[RetryCallback],
    ) -> ExtractionResult:
        body: dict[str, Any] = {"text": text, "existing_entities": list(context)}
        if reference_time is not None:
            body["reference_time"] = reference_time
        request = TransportRequest(
            method="POST",
            url=self.endpoint,
            headers={"Content-Type": "application/json", **self.headers},
            json_body=body,
        )

        outcome = await self.executor.execute_with_retry(request, token, on_retry, self.retry_config)
        if outcome.is_cancelled:
            raise outcome.error
        if not outcome.is_success:
            error = outcome.error
            return ExtractionResult(
                success=False,
                error=getattr(error, "message", str(error)),
                category=outcome.category,
                remediation=getattr(error, "remediation", None),
            )
        return parse_extraction_payload(outcome.response.json_data)


def parse_extraction_payload(payload: Any) -> ExtractionResult:
    if not isinstance(payload, dict):
        return ExtractionResult(
            success=False,
            error="Unexpected response from extraction API",
            category=ErrorCategory.unknown,
        )
    success = payload.get("success", True)
    if not success:
        return ExtractionResult(
            success=False,
            error=payload.get("error") or "Extraction failed",
            message=payload.get("message"),
            category=ErrorCategory.unknown,
        )
    try:
        operations = [EntityOperation.from_payload(op) for op in payload.get("operations") or []]
    except (ValidationError, TypeError, AttributeError) as e:
        logger.warning(f"Malformed operations in extraction response: {e}")
        return ExtractionResult(
            success=False,
            error="Malformed operations in extraction response",
            category=ErrorCategory.unknown,
            remediation=RetryPolicy.remediation(ErrorCategory.unknown),
        )
    return ExtractionResult(success=True, operations=operations, message=payload.get("message"))
