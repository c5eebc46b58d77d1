"""
Event type definitions for the job audit history.
"""

from typing import TYPE_CHECKING

from pydantic import BaseModel

from jobqueue.constants import JobEventType

if TYPE_CHECKING:
    from jobqueue.db.models import JobEventRow


class JobEventRecord(BaseModel):
    """
    Immutable record of a job transition.
    Kept purely for observability; recovery never reads it.
    """

    job_id: str
    at: int
    type: JobEventType
    message: str = ""
    attempt: int

    @classmethod
    def from_row(cls, row: "JobEventRow") -> "JobEventRecord":
        """Map a database row to a record."""
        return cls(
            job_id=row.job_id,
            at=row.at,
            type=JobEventType(row.type),
            message=row.message or "",
            attempt=row.attempt,
        )
