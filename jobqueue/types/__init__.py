"""
Type definitions for the job queue.
Contains input/output type definitions for the store and workers.
"""

from jobqueue.types.events import JobEventRecord
from jobqueue.types.job import (
    EnqueueResult,
    FailResult,
    JobContext,
    JobFilters,
    JobRecord,
    JobResult,
)

__all__ = [
    # Store types
    "JobRecord",
    "EnqueueResult",
    "FailResult",
    "JobFilters",
    # Worker types
    "JobContext",
    "JobResult",
    # Event types
    "JobEventRecord",
]
