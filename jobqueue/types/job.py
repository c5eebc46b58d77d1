"""
Job-related type definitions returned by the store and used by workers.
"""

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, Field, field_validator

from jobqueue.constants import (
    DEFAULT_LIST_LIMIT,
    MAX_LIST_LIMIT,
    MIN_LIST_LIMIT,
    TERMINAL_STATUSES,
    JobStatus,
)
from jobqueue.utils import finite_int, safe_parse_json

if TYPE_CHECKING:
    from jobqueue.db.models import Job


class JobRecord(BaseModel):
    """
    Snapshot of a job row.

    payload and result are whatever JSON value the caller stored; corrupt
    columns come back as None.
    """

    job_id: str
    kind: str
    payload: Any = None
    requester: str
    idempotency_key: str = ""
    status: JobStatus
    priority: int
    run_at: int
    created_at: int
    updated_at: int
    attempt: int
    max_attempts: int
    locked_by: str | None = None
    lease_until: int | None = None
    last_error: str = ""
    result: Any = None

    @classmethod
    def from_row(cls, row: "Job") -> "JobRecord":
        """Map a database row to a record."""
        return cls(
            job_id=row.job_id,
            kind=row.kind,
            payload=safe_parse_json(row.payload_json),
            requester=row.requester,
            idempotency_key=row.idempotency_key or "",
            status=JobStatus(row.status),
            priority=row.priority,
            run_at=row.run_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
            attempt=row.attempt,
            max_attempts=row.max_attempts,
            locked_by=row.locked_by,
            lease_until=row.lease_until,
            last_error=str(row.last_error or ""),
            result=safe_parse_json(row.result_json),
        )

    @property
    def is_terminal(self) -> bool:
        """Check if the job can no longer change state."""
        return self.status in TERMINAL_STATUSES

    @property
    def is_retryable(self) -> bool:
        """Check if a failure now would schedule another attempt."""
        return max(1, self.attempt) < max(1, self.max_attempts)


class EnqueueResult(BaseModel):
    """Outcome of enqueue: the job id and whether an existing job was reused."""

    job_id: str
    deduped: bool


class FailResult(BaseModel):
    """Outcome of a successful fail(): the job's new status."""

    status: Literal["queued", "failed"]


class JobFilters(BaseModel):
    """
    Filters for listing jobs.
    All fields are optional; limit is clamped to [1, 500].
    """

    requester: str | None = None
    statuses: list[JobStatus] | None = None
    kinds: list[str] | None = None
    limit: int = Field(default=DEFAULT_LIST_LIMIT)

    @field_validator("limit", mode="before")
    @classmethod
    def clamp_limit(cls, value: Any) -> int:
        """Floor and clamp the limit; unusable values fall back to the default."""
        limit = finite_int(value)
        if limit is None:
            limit = DEFAULT_LIST_LIMIT
        return max(MIN_LIST_LIMIT, min(MAX_LIST_LIMIT, limit))


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.
    """

    success: bool
    output: Any = None
    error: str | None = None
    duration_ms: float | None = None


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata and the lease state maintained by the worker.
    """

    job_id: str
    kind: str
    requester: str
    attempt: int
    max_attempts: int
    payload: Any
    worker_id: str
    lease_until: int
    lease_lost: asyncio.Event = field(default_factory=asyncio.Event)

    @classmethod
    def from_job(cls, job: JobRecord, worker_id: str) -> "JobContext":
        """Build the handler context for a freshly claimed job."""
        return cls(
            job_id=job.job_id,
            kind=job.kind,
            requester=job.requester,
            attempt=job.attempt,
            max_attempts=job.max_attempts,
            payload=job.payload,
            worker_id=worker_id,
            lease_until=job.lease_until or 0,
        )

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts."""
        return max(0, self.max_attempts - self.attempt)
