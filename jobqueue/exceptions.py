"""
Exceptions raised by the job queue.

Only caller misuse is raised. Races and missing jobs are reported through
None/False return values so workers can check them cheaply in a loop.
"""


class JobQueueError(Exception):
    """Base exception for job queue operations."""

    pass


class InvalidJobRequest(JobQueueError, ValueError):
    """Raised when a required argument is missing or blank."""

    pass


class UnsupportedDatabaseError(JobQueueError):
    """Raised when the configured database backend cannot host the queue."""

    pass
