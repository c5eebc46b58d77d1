"""
SQLAlchemy database models.
Defines the jobs table and its append-only event history.
"""

from sqlalchemy import (
    BigInteger,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobqueue.constants import JobEventType, JobStatus


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model representing a unit of work in the queue.

    This is the authoritative source of truth for job state.
    All job lifecycle transitions are guarded UPDATEs against this table.

    Key constraints:
    - (requester, idempotency_key) is unique when idempotency_key is non-empty
    - locked_by and lease_until are set and cleared together
    - timestamps are epoch milliseconds
    """

    __tablename__ = "jobs"

    job_id: Mapped[str] = mapped_column(String(36), primary_key=True)

    kind: Mapped[str] = mapped_column(Text, nullable=False)
    # Opaque JSON text, parsed lazily and tolerantly
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)

    # Requester and idempotency
    requester: Mapped[str] = mapped_column(Text, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Status and scheduling
    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="job_status",
            native_enum=False,
            create_constraint=True,
            length=16,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=JobStatus.QUEUED,
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    run_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Timestamps
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Retry tracking
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Lease management
    locked_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    lease_until: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # Outcome
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True, default="")
    result_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        # Idempotency constraint: unique per requester, only for real keys
        Index(
            "jobs_by_idempotency",
            "requester",
            "idempotency_key",
            unique=True,
            sqlite_where=text("idempotency_key != ''"),
            postgresql_where=text("idempotency_key != ''"),
        ),
        # Claim path: queued jobs ready to run
        Index("jobs_by_status_run_at", "status", "run_at"),
        # Claim path: running jobs with expired leases
        Index("jobs_by_status_lease_until", "status", "lease_until"),
        # Listing
        Index("jobs_by_requester", "requester", "created_at"),
        Index("jobs_by_kind", "kind", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"Job(job_id={self.job_id}, kind={self.kind}, "
            f"status={self.status}, attempt={self.attempt}/{self.max_attempts})"
        )


class JobEventRow(Base):
    """
    Append-only audit record of a job transition.

    Rows are never updated; they disappear only when prune deletes the
    parent job.
    """

    __tablename__ = "job_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("jobs.job_id", ondelete="CASCADE"),
        nullable=False,
    )
    at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    type: Mapped[JobEventType] = mapped_column(
        Enum(
            JobEventType,
            name="job_event_type",
            native_enum=False,
            create_constraint=True,
            length=16,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (Index("job_events_by_job_id", "job_id", "at"),)

    def __repr__(self) -> str:
        return f"JobEventRow(job_id={self.job_id}, type={self.type}, attempt={self.attempt})"
