"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - QUEUED -> RUNNING (claimed)
    - RUNNING -> RUNNING (lease expired, reclaimed by another worker)
    - RUNNING -> DONE (ack)
    - RUNNING -> QUEUED (fail with attempts remaining)
    - RUNNING -> FAILED (fail with attempts exhausted)
    - QUEUED | RUNNING -> CANCELED (cancel)
    """

    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELED = "canceled"


class JobEventType(StrEnum):
    """Types of records appended to the job event history."""

    ENQUEUE = "enqueue"
    CLAIM = "claim"
    ACK = "ack"
    RETRY = "retry"
    FAIL = "fail"
    CANCEL = "cancel"


TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.DONE, JobStatus.FAILED, JobStatus.CANCELED}
)

# Default values
DEFAULT_PRIORITY = 0
DEFAULT_MAX_ATTEMPTS = 1
DEFAULT_ERROR_MESSAGE = "unknown error"

# Listing
DEFAULT_LIST_LIMIT = 50
MIN_LIST_LIMIT = 1
MAX_LIST_LIMIT = 500

# Leases (milliseconds)
DEFAULT_LEASE_MS = 120_000
MIN_LEASE_MS = 5_000
MAX_LEASE_MS = 60 * 60_000

# Retry backoff (milliseconds)
DEFAULT_RETRY_BASE_MS = 5_000
DEFAULT_RETRY_MAX_MS = 5 * 60_000

# Pruning
MS_PER_DAY = 86_400_000
MIN_KEEP_DAYS = 1

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_JOBS_ENQUEUED = "jobs_enqueued_total"
METRIC_JOBS_CLAIMED = "jobs_claimed_total"
METRIC_JOBS_COMPLETED = "jobs_completed_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_LEASE_RECLAIMED = "lease_reclaimed_total"
METRIC_JOBS_PRUNED = "jobs_pruned_total"

# Trace span names
SPAN_CLAIM_JOB = "claim_job"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_ACK_JOB = "ack_job"
SPAN_FAIL_JOB = "fail_job"
SPAN_PRUNE_JOBS = "prune_jobs"
