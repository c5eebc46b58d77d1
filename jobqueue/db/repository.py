"""
Job repository for database operations.
Implements the core data access patterns for job management.

Every method runs inside the caller's transaction. State transitions are
single UPDATE statements whose WHERE clause re-checks the expected state,
so a caller that lost a race simply sees zero affected rows.
"""

import logging
from typing import Sequence

from sqlalchemy import delete, func, insert, or_, select, union_all, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.constants import TERMINAL_STATUSES, JobEventType, JobStatus
from jobqueue.db.models import Job, JobEventRow

logger = logging.getLogger(__name__)

_DIALECT_INSERTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


class JobRepository:
    """
    Repository for job database operations.

    Implements atomic operations for:
    - Job insertion guarded by the idempotency index
    - Candidate selection and guarded claim
    - Lease extension, ack, retry and terminal failure
    - Cancellation and pruning
    - Event history
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session, already inside a transaction.
        """
        self._session = session

    async def insert_job(
        self,
        job_id: str,
        kind: str,
        payload_json: str,
        requester: str,
        idempotency_key: str,
        priority: int,
        run_at: int,
        max_attempts: int,
        now: int,
    ) -> bool:
        """
        Insert a new queued job.

        Uses INSERT ... ON CONFLICT DO NOTHING so a concurrent insert with the
        same (requester, idempotency_key) is suppressed instead of raising.

        Returns:
            True if the row was inserted, False if a conflicting row won.
        """
        dialect = self._session.get_bind().dialect.name
        values = dict(
            job_id=job_id,
            kind=kind,
            payload_json=payload_json,
            requester=requester,
            idempotency_key=idempotency_key,
            status=JobStatus.QUEUED,
            priority=priority,
            run_at=run_at,
            created_at=now,
            updated_at=now,
            attempt=0,
            max_attempts=max_attempts,
            locked_by=None,
            lease_until=None,
            last_error="",
            result_json=None,
        )
        dialect_insert = _DIALECT_INSERTS.get(dialect)
        if dialect_insert is not None:
            stmt = dialect_insert(Job.__table__).values(**values).on_conflict_do_nothing()
        else:
            stmt = insert(Job.__table__).values(**values)

        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def find_job_id_by_idempotency_key(
        self,
        requester: str,
        idempotency_key: str,
    ) -> str | None:
        """
        Get a job id by requester and idempotency key.

        Args:
            requester: The requester identity.
            idempotency_key: The non-empty idempotency key.

        Returns:
            The job id or None if not found.
        """
        stmt = (
            select(Job.job_id)
            .where(
                Job.requester == requester,
                Job.idempotency_key == idempotency_key,
            )
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_job(self, job_id: str) -> Job | None:
        """
        Get a job by ID, bypassing any stale identity-map copy.

        Args:
            job_id: The job id.

        Returns:
            The Job or None if not found.
        """
        stmt = (
            select(Job)
            .where(Job.job_id == job_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        requester: str | None = None,
        statuses: Sequence[JobStatus] | None = None,
        kinds: Sequence[str] | None = None,
        limit: int = 50,
    ) -> Sequence[Job]:
        """
        List jobs newest first with optional filtering.

        Args:
            requester: Exact requester match.
            statuses: Allowed statuses.
            kinds: Allowed kinds.
            limit: Maximum number of jobs to return.

        Returns:
            Jobs ordered by created_at desc, job_id asc.
        """
        stmt = select(Job)
        if requester:
            stmt = stmt.where(Job.requester == requester)
        if statuses:
            stmt = stmt.where(Job.status.in_(list(statuses)))
        if kinds:
            stmt = stmt.where(Job.kind.in_(list(kinds)))
        stmt = stmt.order_by(Job.created_at.desc(), Job.job_id.asc()).limit(limit)

        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def select_next_candidate(self, now: int) -> tuple[str, JobStatus] | None:
        """
        Pick the best claimable job.

        Candidates are queued jobs whose run_at has passed plus running jobs
        whose lease has expired. Ordered by priority desc, run_at, created_at,
        then job_id for determinism.

        Returns:
            (job_id, current status) of the winner, or None if nothing is ready.
        """
        columns = (Job.job_id, Job.status, Job.priority, Job.run_at, Job.created_at)
        queued = select(*columns).where(
            Job.status == JobStatus.QUEUED,
            Job.run_at <= now,
        )
        abandoned = select(*columns).where(
            Job.status == JobStatus.RUNNING,
            Job.lease_until.is_not(None),
            Job.lease_until <= now,
        )
        ready = union_all(queued, abandoned).subquery("ready")
        stmt = (
            select(ready.c.job_id, ready.c.status)
            .order_by(
                ready.c.priority.desc(),
                ready.c.run_at.asc(),
                ready.c.created_at.asc(),
                ready.c.job_id.asc(),
            )
            .limit(1)
        )
        result = await self._session.execute(stmt)
        row = result.first()
        if row is None:
            return None
        return row.job_id, JobStatus(row.status)

    async def claim_job(
        self,
        job_id: str,
        worker_id: str,
        now: int,
        lease_until: int,
    ) -> bool:
        """
        Mark a candidate as running for this worker.

        The WHERE clause repeats the eligibility test used for selection, so
        a job taken by another transaction in between is left untouched.

        Returns:
            True if this worker now holds the job.
        """
        stmt = (
            update(Job)
            .where(
                Job.job_id == job_id,
                or_(
                    (Job.status == JobStatus.QUEUED) & (Job.run_at <= now),
                    (Job.status == JobStatus.RUNNING)
                    & Job.lease_until.is_not(None)
                    & (Job.lease_until <= now),
                ),
            )
            .values(
                status=JobStatus.RUNNING,
                locked_by=worker_id,
                lease_until=lease_until,
                updated_at=now,
                attempt=Job.attempt + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def extend_lease(
        self,
        job_id: str,
        worker_id: str,
        lease_until: int,
        now: int,
    ) -> bool:
        """
        Extend the lease on a running job (heartbeat).

        Returns:
            True if the worker still owns the job and the lease was moved.
        """
        stmt = (
            update(Job)
            .where(
                Job.job_id == job_id,
                Job.status == JobStatus.RUNNING,
                Job.locked_by == worker_id,
            )
            .values(lease_until=lease_until, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def complete_job(
        self,
        job_id: str,
        worker_id: str,
        result_json: str,
        now: int,
    ) -> bool:
        """
        Mark a running job owned by worker_id as done.

        Returns:
            True if the transition applied.
        """
        stmt = (
            update(Job)
            .where(
                Job.job_id == job_id,
                Job.status == JobStatus.RUNNING,
                Job.locked_by == worker_id,
            )
            .values(
                status=JobStatus.DONE,
                updated_at=now,
                locked_by=None,
                lease_until=None,
                result_json=result_json,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def requeue_job(
        self,
        job_id: str,
        worker_id: str,
        run_at: int,
        error: str,
        now: int,
    ) -> bool:
        """
        Return a failed running job to the queue for a later retry.

        Returns:
            True if the transition applied.
        """
        stmt = (
            update(Job)
            .where(
                Job.job_id == job_id,
                Job.status == JobStatus.RUNNING,
                Job.locked_by == worker_id,
            )
            .values(
                status=JobStatus.QUEUED,
                updated_at=now,
                locked_by=None,
                lease_until=None,
                run_at=run_at,
                last_error=error,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def fail_job(
        self,
        job_id: str,
        worker_id: str,
        error: str,
        now: int,
    ) -> bool:
        """
        Mark a running job as terminally failed.

        Returns:
            True if the transition applied.
        """
        stmt = (
            update(Job)
            .where(
                Job.job_id == job_id,
                Job.status == JobStatus.RUNNING,
                Job.locked_by == worker_id,
            )
            .values(
                status=JobStatus.FAILED,
                updated_at=now,
                locked_by=None,
                lease_until=None,
                last_error=error,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def cancel_job(self, job_id: str, now: int) -> bool:
        """
        Cancel a queued or running job regardless of owner.

        Returns:
            True if the transition applied.
        """
        stmt = (
            update(Job)
            .where(
                Job.job_id == job_id,
                Job.status.in_([JobStatus.QUEUED, JobStatus.RUNNING]),
            )
            .values(
                status=JobStatus.CANCELED,
                updated_at=now,
                locked_by=None,
                lease_until=None,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def prune_jobs(self, cutoff: int) -> int:
        """
        Delete terminal jobs created before cutoff, with their events.

        Events are removed explicitly as well as through the foreign key
        cascade, which SQLite only honours with PRAGMA foreign_keys on.

        Returns:
            Number of deleted jobs.
        """
        prunable = select(Job.job_id).where(
            Job.created_at < cutoff,
            Job.status.in_(list(TERMINAL_STATUSES)),
        )
        await self._session.execute(
            delete(JobEventRow)
            .where(JobEventRow.job_id.in_(prunable))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(
            delete(Job)
            .where(
                Job.created_at < cutoff,
                Job.status.in_(list(TERMINAL_STATUSES)),
            )
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount
        if count > 0:
            logger.debug("Pruned terminal jobs", extra={"count": count, "cutoff": cutoff})
        return count

    async def insert_event(
        self,
        job_id: str,
        at: int,
        event_type: JobEventType,
        attempt: int,
        message: str = "",
    ) -> None:
        """Append an entry to the job's event history."""
        await self._session.execute(
            insert(JobEventRow.__table__).values(
                job_id=job_id,
                at=at,
                type=event_type,
                message=message,
                attempt=attempt,
            )
        )

    async def list_events(self, job_id: str) -> Sequence[JobEventRow]:
        """
        Get the event history of a job, oldest first.

        Args:
            job_id: The job id.

        Returns:
            Events ordered by time, then insertion order.
        """
        stmt = (
            select(JobEventRow)
            .where(JobEventRow.job_id == job_id)
            .order_by(JobEventRow.at.asc(), JobEventRow.id.asc())
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def get_job_stats(self, requester: str | None = None) -> dict[str, int]:
        """
        Get job counts by status.

        Args:
            requester: Optional requester filter.

        Returns:
            Dictionary of status -> count.
        """
        stmt = select(Job.status, func.count()).group_by(Job.status)
        if requester:
            stmt = stmt.where(Job.requester == requester)

        result = await self._session.execute(stmt)
        return {JobStatus(status).value: count for status, count in result.all()}
