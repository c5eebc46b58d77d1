"""
Job store: the public operation surface of the queue.

Each operation opens its own short transaction, runs the guarded SQL in
JobRepository, and maps rows to JobRecord snapshots before the session
closes. Races never raise: a caller that lost a job gets None/False back.

Delivery is at-least-once. A running job whose lease expires becomes
claimable again, so a stalled worker and its successor may both execute
the same job. Handlers must be idempotent, or rely on the enqueue-time
idempotency key to avoid duplicated side effects.
"""

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from jobqueue.constants import (
    DEFAULT_ERROR_MESSAGE,
    DEFAULT_LEASE_MS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PRIORITY,
    MAX_LEASE_MS,
    MIN_KEEP_DAYS,
    MIN_LEASE_MS,
    MS_PER_DAY,
    JobEventType,
    JobStatus,
)
from jobqueue.db.connection import (
    create_engine,
    create_session_factory,
    create_tables,
    get_session_factory,
)
from jobqueue.db.repository import JobRepository
from jobqueue.exceptions import InvalidJobRequest
from jobqueue.observability.metrics import MetricsCollector, get_metrics
from jobqueue.retry import RetryPolicy, compute_backoff_ms
from jobqueue.types.events import JobEventRecord
from jobqueue.types.job import EnqueueResult, FailResult, JobFilters, JobRecord
from jobqueue.utils import clean_str, dump_json, finite_int, now_ms

logger = logging.getLogger(__name__)


def _require(value: Any, field: str) -> str:
    cleaned = clean_str(value)
    if not cleaned:
        raise InvalidJobRequest(f"{field} missing")
    return cleaned


class JobStore:
    """
    Persistent job queue backed by one transactional database.

    Operations:
    - enqueue / get_job / list_jobs
    - claim_next / extend_lease
    - ack / fail
    - cancel / prune
    - list_events / stats
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        metrics: MetricsCollector | None = None,
        engine: AsyncEngine | None = None,
    ):
        """
        Initialize the store.

        Args:
            session_factory: Factory for per-operation sessions. Defaults to the
                process-wide factory set up by init_db().
            metrics: Metrics collector. Defaults to the process-wide collector.
            engine: Engine owned by this store, disposed on close().
        """
        self._session_factory = session_factory or get_session_factory()
        self._metrics = metrics or get_metrics()
        self._engine = engine

    @classmethod
    async def open(
        cls,
        database_url: str | None = None,
        create_schema: bool = True,
        metrics: MetricsCollector | None = None,
    ) -> "JobStore":
        """
        Open a store with its own engine.

        Args:
            database_url: SQLAlchemy URL; defaults to settings.database_url.
            create_schema: Create missing tables.
            metrics: Optional metrics collector.

        Returns:
            JobStore: A store that owns (and closes) its engine.
        """
        engine = create_engine(database_url)
        if create_schema:
            await create_tables(engine)
        return cls(create_session_factory(engine), metrics=metrics, engine=engine)

    async def close(self) -> None:
        """Dispose the engine if this store owns one."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[JobRepository]:
        async with self._session_factory() as session:
            async with session.begin():
                yield JobRepository(session)

    # ------------------------------------------------------------------
    # Enqueue / read
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        *,
        kind: str,
        requester: str,
        payload: Any = None,
        idempotency_key: str | None = None,
        run_at: int | None = None,
        priority: int | None = None,
        max_attempts: int | None = None,
        now: int | None = None,
    ) -> EnqueueResult:
        """
        Add a job to the queue, or return the existing one for a repeated key.

        Args:
            kind: Task-type tag, required.
            requester: Enqueuing identity, required. Scopes the idempotency key.
            payload: Any JSON-serializable value.
            idempotency_key: Optional dedup key, unique per requester.
            run_at: Earliest epoch-ms claim time; defaults to now.
            priority: Higher claims first; defaults to 0.
            max_attempts: Claims allowed before failure is terminal; defaults to 1.
            now: Clock override in epoch ms.

        Returns:
            EnqueueResult with the job id and whether it was deduplicated.

        Raises:
            InvalidJobRequest: If kind or requester is blank.
        """
        kind = _require(kind, "enqueue.kind")
        requester = _require(requester, "enqueue.requester")
        key = clean_str(idempotency_key)
        now = now_ms() if now is None else int(now)

        requested_run_at = finite_int(run_at)
        run_at = requested_run_at if requested_run_at is not None and requested_run_at > 0 else now
        priority = finite_int(priority)
        if priority is None:
            priority = DEFAULT_PRIORITY
        attempts = finite_int(max_attempts)
        max_attempts = attempts if attempts is not None and attempts > 0 else DEFAULT_MAX_ATTEMPTS
        payload_json = dump_json(payload)

        async with self._transaction() as repo:
            if key:
                existing = await repo.find_job_id_by_idempotency_key(requester, key)
                if existing:
                    result = EnqueueResult(job_id=existing, deduped=True)
                    logger.info(
                        "Returned existing job (idempotent)",
                        extra={"job_id": existing, "requester": requester},
                    )
                    self._metrics.record_job_enqueued(kind, deduped=True)
                    return result

            job_id = str(uuid.uuid4())
            inserted = await repo.insert_job(
                job_id=job_id,
                kind=kind,
                payload_json=payload_json,
                requester=requester,
                idempotency_key=key,
                priority=priority,
                run_at=run_at,
                max_attempts=max_attempts,
                now=now,
            )
            if not inserted:
                # Lost the insert race; the winner's row is visible now
                winner = await repo.find_job_id_by_idempotency_key(requester, key) if key else None
                if winner is None:
                    raise RuntimeError("Job should exist after idempotency conflict")
                logger.info(
                    "Returned existing job after insert conflict",
                    extra={"job_id": winner, "requester": requester},
                )
                self._metrics.record_job_enqueued(kind, deduped=True)
                return EnqueueResult(job_id=winner, deduped=True)

            await repo.insert_event(job_id, now, JobEventType.ENQUEUE, attempt=0)

        logger.info(
            "Enqueued job",
            extra={"job_id": job_id, "kind": kind, "requester": requester, "run_at": run_at},
        )
        self._metrics.record_job_enqueued(kind, deduped=False)
        return EnqueueResult(job_id=job_id, deduped=False)

    async def get_job(self, job_id: str | None) -> JobRecord | None:
        """
        Get a job by id.

        Returns:
            The job, or None when job_id is blank or unknown.
        """
        job_id = clean_str(job_id)
        if not job_id:
            return None
        async with self._transaction() as repo:
            row = await repo.get_job(job_id)
            return JobRecord.from_row(row) if row is not None else None

    async def list_jobs(self, filters: JobFilters | None = None, **filter_kwargs: Any) -> list[JobRecord]:
        """
        List jobs newest first.

        Args:
            filters: JobFilters, or pass its fields as keyword arguments.

        Returns:
            Up to filters.limit jobs ordered by created_at desc, job_id asc.
        """
        if filters is None:
            filters = JobFilters(**filter_kwargs)
        async with self._transaction() as repo:
            rows = await repo.list_jobs(
                requester=clean_str(filters.requester) or None,
                statuses=filters.statuses,
                kinds=filters.kinds,
                limit=filters.limit,
            )
            return [JobRecord.from_row(row) for row in rows]

    async def list_events(self, job_id: str | None) -> list[JobEventRecord]:
        """Get a job's event history, oldest first; empty for unknown jobs."""
        job_id = clean_str(job_id)
        if not job_id:
            return []
        async with self._transaction() as repo:
            rows = await repo.list_events(job_id)
            return [JobEventRecord.from_row(row) for row in rows]

    async def stats(self, requester: str | None = None) -> dict[str, int]:
        """Get job counts per status, every status present."""
        async with self._transaction() as repo:
            counts = await repo.get_job_stats(clean_str(requester) or None)
        return {status.value: counts.get(status.value, 0) for status in JobStatus}

    # ------------------------------------------------------------------
    # Claim / lease
    # ------------------------------------------------------------------

    async def claim_next(
        self,
        *,
        worker_id: str,
        now: int | None = None,
        lease_ms: int | None = None,
    ) -> JobRecord | None:
        """
        Claim the best ready job for this worker.

        Ready means queued with run_at <= now, or running with an expired
        lease (abandoned by a crashed or stalled worker). Two concurrent
        callers never receive the same job while its lease is live.

        Args:
            worker_id: Claiming worker identity, required.
            now: Clock override in epoch ms.
            lease_ms: Lease length, clamped to [5s, 1h]; defaults to 2 minutes.

        Returns:
            The claimed job (status running, attempt incremented) or None.

        Raises:
            InvalidJobRequest: If worker_id is blank.
        """
        worker_id = _require(worker_id, "claimNext.workerId")
        now = now_ms() if now is None else int(now)
        lease = finite_int(lease_ms)
        if lease is None:
            lease = DEFAULT_LEASE_MS
        lease = max(MIN_LEASE_MS, min(MAX_LEASE_MS, lease))
        lease_until = now + lease

        async with self._transaction() as repo:
            picked = await repo.select_next_candidate(now)
            if picked is None:
                return None
            job_id, previous_status = picked

            claimed = await repo.claim_job(job_id, worker_id, now=now, lease_until=lease_until)
            if not claimed:
                logger.debug(
                    "Lost claim race",
                    extra={"job_id": job_id, "worker_id": worker_id},
                )
                return None

            row = await repo.get_job(job_id)
            if row is None:
                return None
            job = JobRecord.from_row(row)
            await repo.insert_event(job_id, now, JobEventType.CLAIM, attempt=job.attempt, message=worker_id)

        if previous_status == JobStatus.RUNNING:
            logger.warning(
                "Reclaimed job with expired lease",
                extra={"job_id": job_id, "worker_id": worker_id, "attempt": job.attempt},
            )
            self._metrics.record_lease_reclaimed(job.kind)
        else:
            logger.info(
                "Claimed job",
                extra={"job_id": job_id, "worker_id": worker_id, "attempt": job.attempt},
            )
        self._metrics.record_job_claimed(worker_id)
        return job

    async def extend_lease(
        self,
        *,
        job_id: str,
        worker_id: str,
        lease_until: int,
        now: int | None = None,
    ) -> bool:
        """
        Move the lease expiry of a job this worker still holds.

        Args:
            job_id: The job id.
            worker_id: Worker that claimed the job, required.
            lease_until: New absolute expiry in epoch ms.
            now: Clock override in epoch ms.

        Returns:
            True if the job is running and owned by worker_id.

        Raises:
            InvalidJobRequest: If worker_id is blank.
        """
        worker_id = _require(worker_id, "extendLease.workerId")
        job_id = clean_str(job_id)
        if not job_id:
            return False
        now = now_ms() if now is None else int(now)

        async with self._transaction() as repo:
            extended = await repo.extend_lease(job_id, worker_id, lease_until=int(lease_until), now=now)

        if extended:
            logger.debug("Extended lease", extra={"job_id": job_id, "lease_until": lease_until})
        return extended

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def ack(
        self,
        *,
        job_id: str,
        worker_id: str,
        result: Any = None,
        now: int | None = None,
    ) -> bool:
        """
        Mark a job done and store its result.

        A False return (unknown job, already finished, owned by another
        worker) means this worker's execution was superseded.

        Raises:
            InvalidJobRequest: If worker_id is blank.
        """
        worker_id = _require(worker_id, "ack.workerId")
        job_id = clean_str(job_id)
        if not job_id:
            return False
        now = now_ms() if now is None else int(now)
        result_json = dump_json(result)

        async with self._transaction() as repo:
            row = await repo.get_job(job_id)
            if row is None:
                return False
            kind, attempt = row.kind, row.attempt
            completed = await repo.complete_job(job_id, worker_id, result_json=result_json, now=now)
            if completed:
                await repo.insert_event(job_id, now, JobEventType.ACK, attempt=attempt)

        if completed:
            logger.info("Job completed successfully", extra={"job_id": job_id, "attempt": attempt})
            self._metrics.record_job_outcome(kind, JobStatus.DONE.value)
        else:
            logger.info(
                "Ack ignored; job not held by worker",
                extra={"job_id": job_id, "worker_id": worker_id},
            )
        return completed

    async def fail(
        self,
        *,
        job_id: str,
        worker_id: str,
        error: str | None = "",
        now: int | None = None,
        retry: RetryPolicy | None = None,
    ) -> FailResult | None:
        """
        Record a failed attempt.

        With attempts remaining the job goes back to queued with a backoff
        delay; otherwise it becomes failed.

        Args:
            job_id: The job id.
            worker_id: Worker that claimed the job, required.
            error: Failure message; blank becomes "unknown error".
            now: Clock override in epoch ms.
            retry: Backoff bounds; defaults to RetryPolicy().

        Returns:
            FailResult("queued" | "failed"), or None when the job is not
            running under this worker.

        Raises:
            InvalidJobRequest: If worker_id is blank.
        """
        worker_id = _require(worker_id, "fail.workerId")
        job_id = clean_str(job_id)
        if not job_id:
            return None
        now = now_ms() if now is None else int(now)
        error = clean_str(error) or DEFAULT_ERROR_MESSAGE
        policy = retry or RetryPolicy()

        async with self._transaction() as repo:
            row = await repo.get_job(job_id)
            if row is None:
                return None
            kind = row.kind
            attempt = max(1, row.attempt)
            max_attempts = max(1, row.max_attempts)

            if attempt < max_attempts:
                delay = compute_backoff_ms(attempt=attempt, base_ms=policy.base_ms, max_ms=policy.max_ms)
                run_at = now + delay
                if not await repo.requeue_job(job_id, worker_id, run_at=run_at, error=error, now=now):
                    return None
                await repo.insert_event(job_id, now, JobEventType.RETRY, attempt=attempt, message=error)
                outcome = FailResult(status="queued")
            else:
                if not await repo.fail_job(job_id, worker_id, error=error, now=now):
                    return None
                await repo.insert_event(job_id, now, JobEventType.FAIL, attempt=attempt, message=error)
                outcome = FailResult(status="failed")

        if outcome.status == "queued":
            logger.info(
                "Job queued for retry",
                extra={"job_id": job_id, "attempt": attempt, "run_at": run_at, "error": error},
            )
            self._metrics.record_job_outcome(kind, "retry")
        else:
            logger.warning(
                f"Job failed after {attempt} attempts",
                extra={"job_id": job_id, "error": error},
            )
            self._metrics.record_job_outcome(kind, JobStatus.FAILED.value)
        return outcome

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def cancel(self, *, job_id: str, now: int | None = None) -> bool:
        """
        Cancel a queued or running job, whoever holds it.

        Bookkeeping only: a worker already executing the job is not
        interrupted; its later ack/fail will be rejected.

        Returns:
            True if the job moved to canceled; False if blank, unknown or terminal.
        """
        job_id = clean_str(job_id)
        if not job_id:
            return False
        now = now_ms() if now is None else int(now)

        async with self._transaction() as repo:
            row = await repo.get_job(job_id)
            if row is None:
                return False
            kind, attempt = row.kind, row.attempt
            canceled = await repo.cancel_job(job_id, now=now)
            if canceled:
                await repo.insert_event(job_id, now, JobEventType.CANCEL, attempt=attempt)

        if canceled:
            logger.info("Job canceled", extra={"job_id": job_id})
            self._metrics.record_job_outcome(kind, JobStatus.CANCELED.value)
        return canceled

    async def prune(self, *, keep_days: int | float, now: int | None = None) -> int:
        """
        Delete terminal jobs older than the retention window, with their events.

        Args:
            keep_days: Retention in days, floored and raised to at least 1.
            now: Clock override in epoch ms.

        Returns:
            Number of jobs deleted. Queued and running jobs are never pruned.
        """
        now = now_ms() if now is None else int(now)
        days = max(MIN_KEEP_DAYS, finite_int(keep_days) or 0)
        cutoff = now - days * MS_PER_DAY

        async with self._transaction() as repo:
            count = await repo.prune_jobs(cutoff)

        if count > 0:
            logger.info("Pruned jobs", extra={"count": count, "keep_days": days})
        self._metrics.record_jobs_pruned(count)
        return count
