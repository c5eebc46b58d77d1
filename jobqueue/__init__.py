"""
Persistent Job Queue

A transactional work queue with atomic claiming, lease-based crash recovery,
idempotent enqueue, and bounded retry with backoff.
"""

__version__ = "1.0.0"

from jobqueue.exceptions import InvalidJobRequest, JobQueueError
from jobqueue.store import JobStore

__all__ = ["JobStore", "JobQueueError", "InvalidJobRequest", "__version__"]
