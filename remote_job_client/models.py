import re
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from remote_job_client.errors import (
    ErrorCategory,
    ExtractionEmpty,
    JobFailed,
    JobTimedOut,
    OperationCancelled,
    RemoteJobError,
    RequestFailed,
)


class RetryConfig(BaseModel):
    """Retry behaviour for a single request. All durations are in seconds."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=7, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=32.0, ge=0)
    base_timeout: float = Field(default=45.0, gt=0)
    max_timeout: float = Field(default=120.0, gt=0)
    timeout_multiplier_on_timeout: float = Field(default=1.5, ge=1.0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "RetryConfig":
        if self.base_delay > self.max_delay:
            raise ValueError("base_delay must not exceed max_delay")
        if self.base_timeout > self.max_timeout:
            raise ValueError("base_timeout must not exceed max_timeout")
        return self

    def merged(self, **overrides: Any) -> "RetryConfig":
        """Return a copy with the given fields replaced and re-validated"""
        return RetryConfig(**{**self.model_dump(), **overrides})


class PollingConfig(BaseModel):
    fast_interval: float = 2.0
    medium_interval: float = 3.0
    slow_interval: float = 5.0
    fast_threshold: float = 15.0
    medium_threshold: float = 45.0
    max_elapsed: float = 20 * 60.0
    # Consecutive failed status fetches that mark the job as failed
    max_consecutive_errors: int = Field(default=5, ge=1)
    submit_retry: RetryConfig = RetryConfig(max_retries=3, max_delay=4.0)
    status_retry: RetryConfig = RetryConfig(
        max_retries=2, base_delay=0.5, max_delay=2.0, base_timeout=30.0, max_timeout=60.0
    )
    download_retry: RetryConfig = RetryConfig(max_retries=3, max_delay=4.0, base_timeout=60.0)

    @model_validator(mode="after")
    def _check_tiers(self) -> "PollingConfig":
        if self.fast_threshold > self.medium_threshold:
            raise ValueError("fast_threshold must not exceed medium_threshold")
        if min(self.fast_interval, self.medium_interval, self.slow_interval) <= 0:
            raise ValueError("poll intervals must be positive")
        return self


class ChunkingConfig(BaseModel):
    chunk_size: int = Field(default=8000, gt=0)
    threshold_to_chunk: int = Field(default=10000, ge=0)
    min_break_ratio: float = Field(default=0.5, ge=0, le=1)


class TransportRequest(BaseModel):
    method: str = "GET"
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    json_body: Optional[Any] = None


class TransportResponse(BaseModel):
    """Transport-independent view of an HTTP response"""

    status: int
    text: str = ""
    json_data: Optional[Any] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class OutcomeKind(str, Enum):
    success = "success"
    retryable_failure = "retryable_failure"
    fatal_failure = "fatal_failure"


class AttemptOutcome(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: OutcomeKind
    response: Optional[TransportResponse] = None
    category: Optional[ErrorCategory] = None
    status_code: Optional[int] = None
    error: Optional[BaseException] = None

    @classmethod
    def success(cls, response: TransportResponse) -> "AttemptOutcome":
        return cls(kind=OutcomeKind.success, response=response, status_code=response.status)

    @classmethod
    def retryable(
        cls,
        category: ErrorCategory,
        status_code: Optional[int] = None,
        error: Optional[BaseException] = None,
    ) -> "AttemptOutcome":
        return cls(
            kind=OutcomeKind.retryable_failure,
            category=category,
            status_code=status_code,
            error=error,
        )

    @classmethod
    def fatal(
        cls,
        category: ErrorCategory,
        status_code: Optional[int] = None,
        error: Optional[BaseException] = None,
    ) -> "AttemptOutcome":
        return cls(
            kind=OutcomeKind.fatal_failure,
            category=category,
            status_code=status_code,
            error=error,
        )

    @property
    def is_success(self) -> bool:
        return self.kind == OutcomeKind.success

    @property
    def is_cancelled(self) -> bool:
        return self.category == ErrorCategory.cancelled


class Chunk(BaseModel):
    """A trimmed, ordered span of the input. start/end index into the original text."""

    index: int
    total: int
    text: str
    start: int
    end: int


_LABEL_FIELDS = ("name", "label", "title", "full_name", "value")
_WHITESPACE = re.compile(r"\s+")


def normalize_label(label: str) -> str:
    return _WHITESPACE.sub(" ", label).strip()


def entity_label(entity_type: str, properties: dict[str, Any]) -> str:
    for field in _LABEL_FIELDS:
        value = properties.get(field)
        if isinstance(value, list):
            value = value[0] if value else None
        if isinstance(value, str) and value.strip():
            return normalize_label(value)
    return entity_type


class ExtractedEntity(BaseModel):
    type: str
    properties: dict[str, Any] = Field(default_factory=dict)
    label: str
    dedup_key: str

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ExtractedEntity":
        entity_type = str(payload.get("type") or "Unknown")
        properties = dict(payload.get("properties") or {})
        label = payload.get("label")
        if isinstance(label, str) and label.strip():
            label = normalize_label(label)
        else:
            label = entity_label(entity_type, properties)
        return cls(
            type=entity_type,
            properties=properties,
            label=label,
            dedup_key=f"{entity_type}::{label}".lower(),
        )


class Connection(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_index: int = Field(alias="from")
    to_index: int = Field(alias="to")
    relationship: str = ""


class EntityOperation(BaseModel):
    action: str = "create"
    entities: list[ExtractedEntity] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)
    updates: list[dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "EntityOperation":
        return cls(
            action=payload.get("action", "create"),
            entities=[ExtractedEntity.from_payload(e) for e in payload.get("entities") or []],
            connections=[Connection.model_validate(c) for c in payload.get("connections") or []],
            updates=list(payload.get("updates") or []),
        )


class ExtractionResult(BaseModel):
    success: bool
    operations: list[EntityOperation] = Field(default_factory=list)
    message: Optional[str] = None
    error: Optional[str] = None
    category: Optional[ErrorCategory] = None
    remediation: Optional[str] = None
    failed_chunks: list[int] = Field(default_factory=list)
    skipped_duplicates: int = 0
    total_chunks: int = 1
    original_text: Optional[str] = None

    @property
    def entity_count(self) -> int:
        return sum(len(op.entities) for op in self.operations)

    def raise_for_status(self) -> None:
        if self.success:
            return
        if self.category == ErrorCategory.cancelled:
            raise OperationCancelled()
        if self.total_chunks > 1:
            raise ExtractionEmpty(self.error or "Extraction failed", self.category, self.remediation or "")
        raise RequestFailed(self.error or "Extraction failed", self.category, self.remediation or "")


class JobStatus(str, Enum):
    submitted = "submitted"
    queued = "queued"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    timed_out = "timed_out"
    cancelled = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            JobStatus.completed,
            JobStatus.failed,
            JobStatus.timed_out,
            JobStatus.cancelled,
        )


# Status strings the server may report, matched exactly
SERVER_STATUSES = {
    "queued": JobStatus.queued,
    "processing": JobStatus.processing,
    "completed": JobStatus.completed,
    "failed": JobStatus.failed,
}


class JobProgress(BaseModel):
    message: str = "Processing..."
    percent: float = 0


class JobHandle(BaseModel):
    job_id: str
    status: JobStatus = JobStatus.submitted
    progress: Optional[JobProgress] = None
    elapsed: float = 0.0
    content: Optional[str] = None
    filename: Optional[str] = None
    error: Optional[str] = None
    remediation: Optional[str] = None
    category: Optional[ErrorCategory] = None
    intermediate_results: list[str] = Field(default_factory=list)
    conversation_id: Optional[str] = None
    history: list[JobStatus] = Field(default_factory=list)

    def transition(self, status: JobStatus) -> None:
        self.status = status
        self.history.append(status)

    def raise_for_status(self) -> None:
        """Raise the matching error unless the job completed"""
        if self.status == JobStatus.completed:
            return
        if self.status == JobStatus.cancelled:
            raise OperationCancelled()
        if self.status == JobStatus.timed_out:
            raise JobTimedOut(self.error or "Job timed out", self.remediation or "", self.job_id)
        if self.status == JobStatus.failed:
            raise JobFailed(self.error or "Job failed", self.remediation or "", self.job_id)
        raise RemoteJobError(f"Job {self.job_id} is still {self.status.value}")


class PollState(BaseModel):
    elapsed: float = 0.0
    consecutive_error_count: int = 0
