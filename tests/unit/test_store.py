"""
Unit tests for the job store.

Every test runs against a fresh file-backed SQLite database and drives the
clock explicitly through the now= arguments.
"""

from typing import Any

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from jobqueue.constants import MAX_LEASE_MS, MIN_LEASE_MS, MS_PER_DAY, JobEventType, JobStatus
from jobqueue.db.repository import JobRepository
from jobqueue.exceptions import InvalidJobRequest, JobQueueError
from jobqueue.retry import RetryPolicy
from jobqueue.store import JobStore
from jobqueue.types.job import EnqueueResult, JobFilters

# Fixed clock for deterministic scheduling (epoch ms)
T0 = 1_700_000_000_000


class TestEnqueue:
    """Tests for enqueue."""

    async def test_enqueue_defaults(self, store: JobStore, sample_payload: dict[str, Any]):
        """Test that a new job starts queued with default scheduling fields."""
        result = await store.enqueue(kind="deploy", requester="alice", payload=sample_payload, now=T0)

        assert result.deduped is False
        job = await store.get_job(result.job_id)
        assert job is not None
        assert job.status == JobStatus.QUEUED
        assert job.kind == "deploy"
        assert job.requester == "alice"
        assert job.payload == sample_payload
        assert job.priority == 0
        assert job.max_attempts == 1
        assert job.attempt == 0
        assert job.run_at == T0
        assert job.created_at == T0
        assert job.updated_at == T0
        assert job.idempotency_key == ""
        assert job.locked_by is None
        assert job.lease_until is None
        assert job.last_error == ""
        assert job.result is None

    async def test_enqueue_trims_fields(self, store: JobStore):
        """Test that kind and requester are stored trimmed."""
        result = await store.enqueue(kind="  deploy ", requester=" alice\n", now=T0)

        job = await store.get_job(result.job_id)
        assert job.kind == "deploy"
        assert job.requester == "alice"

    @pytest.mark.parametrize("kind,requester", [
        ("", "alice"),
        ("   ", "alice"),
        ("deploy", ""),
        ("deploy", "  "),
        (None, "alice"),
    ])
    async def test_enqueue_requires_kind_and_requester(self, store: JobStore, kind, requester):
        """Test that blank kind or requester is rejected."""
        with pytest.raises(InvalidJobRequest):
            await store.enqueue(kind=kind, requester=requester)

    async def test_invalid_request_is_value_error(self, store: JobStore):
        """Test the validation error hierarchy."""
        with pytest.raises(ValueError, match="enqueue.kind missing"):
            await store.enqueue(kind="", requester="alice")
        with pytest.raises(JobQueueError, match="enqueue.requester missing"):
            await store.enqueue(kind="deploy", requester="")

        assert await store.list_jobs() == []

    async def test_enqueue_coerces_numeric_options(self, store: JobStore):
        """Test flooring and fallback of priority, max_attempts and run_at."""
        result = await store.enqueue(
            kind="deploy",
            requester="alice",
            priority=3.9,
            max_attempts=2.7,
            run_at=T0 + 1500.6,
            now=T0,
        )
        job = await store.get_job(result.job_id)
        assert job.priority == 3
        assert job.max_attempts == 2
        assert job.run_at == T0 + 1500

    @pytest.mark.parametrize("max_attempts", [0, -5, float("nan"), "many"])
    async def test_enqueue_max_attempts_fallback(self, store: JobStore, max_attempts):
        """Test that non-positive or unusable max_attempts becomes 1."""
        result = await store.enqueue(kind="deploy", requester="alice", max_attempts=max_attempts, now=T0)

        job = await store.get_job(result.job_id)
        assert job.max_attempts == 1

    @pytest.mark.parametrize("run_at", [0, -10, float("inf"), None])
    async def test_enqueue_run_at_fallback(self, store: JobStore, run_at):
        """Test that a non-positive or unusable run_at means now."""
        result = await store.enqueue(kind="deploy", requester="alice", run_at=run_at, now=T0)

        job = await store.get_job(result.job_id)
        assert job.run_at == T0

    async def test_enqueue_negative_priority_kept(self, store: JobStore):
        """Test that negative priorities are allowed."""
        result = await store.enqueue(kind="deploy", requester="alice", priority=-4, now=T0)

        job = await store.get_job(result.job_id)
        assert job.priority == -4

    async def test_enqueue_records_event(self, store: JobStore):
        """Test that enqueue appends exactly one event."""
        result = await store.enqueue(kind="deploy", requester="alice", now=T0)

        events = await store.list_events(result.job_id)
        assert [e.type for e in events] == [JobEventType.ENQUEUE]
        assert events[0].at == T0
        assert events[0].attempt == 0


class TestIdempotency:
    """Tests for idempotent enqueue."""

    async def test_same_key_returns_existing_job(self, store: JobStore, idempotency_key: str):
        """Test that a repeated key returns the first job without a second row."""
        first = await store.enqueue(
            kind="deploy",
            requester="alice",
            payload={"host": "alpha"},
            idempotency_key=idempotency_key,
            now=T0,
        )
        second = await store.enqueue(
            kind="deploy",
            requester="alice",
            payload={"host": "beta"},
            idempotency_key=idempotency_key,
            now=T0 + 10,
        )

        assert second.job_id == first.job_id
        assert second.deduped is True

        jobs = await store.list_jobs(requester="alice")
        assert len(jobs) == 1
        # The first payload wins
        assert jobs[0].payload == {"host": "alpha"}
        assert len(await store.list_events(first.job_id)) == 1

    async def test_key_is_scoped_per_requester(self, store: JobStore, idempotency_key: str):
        """Test that different requesters may reuse a key."""
        first = await store.enqueue(kind="deploy", requester="alice", idempotency_key=idempotency_key)
        second = await store.enqueue(kind="deploy", requester="bob", idempotency_key=idempotency_key)

        assert first.job_id != second.job_id
        assert second.deduped is False

    async def test_blank_key_never_dedups(self, store: JobStore):
        """Test that empty or whitespace keys create distinct jobs."""
        first = await store.enqueue(kind="deploy", requester="alice", idempotency_key="")
        second = await store.enqueue(kind="deploy", requester="alice", idempotency_key="   ")
        third = await store.enqueue(kind="deploy", requester="alice")

        assert len({first.job_id, second.job_id, third.job_id}) == 3

    async def test_key_is_trimmed(self, store: JobStore):
        """Test that surrounding whitespace does not defeat deduplication."""
        first = await store.enqueue(kind="deploy", requester="alice", idempotency_key="k1")
        second = await store.enqueue(kind="deploy", requester="alice", idempotency_key="  k1 ")

        assert second.job_id == first.job_id
        assert second.deduped is True

    async def test_insert_conflict_returns_winner(
        self,
        store: JobStore,
        idempotency_key: str,
        metrics_registry,
        monkeypatch: pytest.MonkeyPatch,
    ):
        """Test the fallback when another transaction inserted the key after the lookup."""
        first = await store.enqueue(kind="deploy", requester="alice", idempotency_key=idempotency_key, now=T0)

        lookup = JobRepository.find_job_id_by_idempotency_key
        calls: list[str] = []

        async def lookup_missing_first(self, requester: str, key: str) -> str | None:
            calls.append(key)
            if len(calls) == 1:
                return None
            return await lookup(self, requester, key)

        monkeypatch.setattr(JobRepository, "find_job_id_by_idempotency_key", lookup_missing_first)

        second = await store.enqueue(
            kind="deploy",
            requester="alice",
            idempotency_key=idempotency_key,
            now=T0 + 1,
        )

        assert second == EnqueueResult(job_id=first.job_id, deduped=True)
        assert calls == [idempotency_key, idempotency_key]
        assert len(await store.list_jobs(requester="alice")) == 1
        events = await store.list_events(first.job_id)
        assert [e.type for e in events] == [JobEventType.ENQUEUE]
        assert metrics_registry.get_sample_value(
            "jobs_enqueued_total", {"kind": "deploy", "deduped": "true"}
        ) == 1

    async def test_key_dedups_after_job_finished(self, store: JobStore):
        """Test that the key keeps deduplicating once the job is terminal."""
        first = await store.enqueue(kind="deploy", requester="alice", idempotency_key="k1", now=T0)
        job = await store.claim_next(worker_id="w1", now=T0)
        assert await store.ack(job_id=job.job_id, worker_id="w1", now=T0 + 1)

        again = await store.enqueue(kind="deploy", requester="alice", idempotency_key="k1", now=T0 + 2)
        assert again.job_id == first.job_id
        assert again.deduped is True


class TestReads:
    """Tests for get_job, list_jobs, list_events and stats."""

    async def test_get_job_blank_or_unknown(self, store: JobStore):
        """Test that blank and unknown ids return None."""
        assert await store.get_job("") is None
        assert await store.get_job("   ") is None
        assert await store.get_job(None) is None
        assert await store.get_job("no-such-job") is None

    async def test_list_orders_newest_first(self, store: JobStore):
        """Test list ordering by created_at descending."""
        ids = []
        for offset in range(3):
            result = await store.enqueue(kind="deploy", requester="alice", now=T0 + offset)
            ids.append(result.job_id)

        jobs = await store.list_jobs()
        assert [j.job_id for j in jobs] == list(reversed(ids))

    async def test_list_ties_broken_by_job_id(self, store: JobStore):
        """Test that jobs created in the same millisecond are ordered by id."""
        ids = [
            (await store.enqueue(kind="deploy", requester="alice", now=T0)).job_id
            for _ in range(4)
        ]

        jobs = await store.list_jobs()
        assert [j.job_id for j in jobs] == sorted(ids)

    async def test_list_filters(self, store: JobStore):
        """Test requester, status and kind filters."""
        a = await store.enqueue(kind="deploy", requester="alice", now=T0)
        await store.enqueue(kind="backup", requester="alice", now=T0 + 1)
        await store.enqueue(kind="deploy", requester="bob", now=T0 + 2)
        claimed = await store.claim_next(worker_id="w1", now=T0 + 3)

        assert {j.requester for j in await store.list_jobs(requester="alice")} == {"alice"}
        assert [j.kind for j in await store.list_jobs(kinds=["backup"])] == ["backup"]

        running = await store.list_jobs(statuses=["running"])
        assert [j.job_id for j in running] == [claimed.job_id]

        combined = await store.list_jobs(
            JobFilters(requester="alice", statuses=[JobStatus.QUEUED, JobStatus.RUNNING], kinds=["deploy"])
        )
        assert [j.job_id for j in combined] == [a.job_id]

    async def test_list_empty_filters_match_everything(self, store: JobStore):
        """Test that empty filter lists do not restrict results."""
        await store.enqueue(kind="deploy", requester="alice")

        jobs = await store.list_jobs(requester="", statuses=[], kinds=[])
        assert len(jobs) == 1

    @pytest.mark.parametrize("limit,expected", [
        (0, 1),
        (-3, 1),
        (2, 2),
        (2.9, 2),
        (None, 5),
        (10_000, 5),
    ])
    async def test_list_limit_is_clamped(self, store: JobStore, limit, expected):
        """Test limit flooring and clamping."""
        for offset in range(5):
            await store.enqueue(kind="deploy", requester="alice", now=T0 + offset)

        jobs = await store.list_jobs(limit=limit)
        assert len(jobs) == expected

    def test_filters_limit_bounds(self):
        """Test the JobFilters limit clamp directly."""
        assert JobFilters().limit == 50
        assert JobFilters(limit=0).limit == 1
        assert JobFilters(limit=10_000).limit == 500
        assert JobFilters(limit=float("nan")).limit == 50

    async def test_corrupt_payload_reads_as_none(self, store: JobStore, async_engine: AsyncEngine):
        """Test that unparseable stored JSON is surfaced as None."""
        result = await store.enqueue(kind="deploy", requester="alice", payload={"ok": True})
        async with async_engine.begin() as conn:
            await conn.execute(
                text("UPDATE jobs SET payload_json = '{broken', result_json = 'nope' WHERE job_id = :job_id"),
                {"job_id": result.job_id},
            )

        job = await store.get_job(result.job_id)
        assert job is not None
        assert job.payload is None
        assert job.result is None
        assert len(await store.list_jobs()) == 1

    async def test_scalar_payload_roundtrip(self, store: JobStore):
        """Test that non-object payloads are stored as given."""
        result = await store.enqueue(kind="deploy", requester="alice", payload=["a", 1, None])

        job = await store.get_job(result.job_id)
        assert job.payload == ["a", 1, None]

    async def test_list_events_unknown_job(self, store: JobStore):
        """Test that unknown or blank ids have no events."""
        assert await store.list_events("no-such-job") == []
        assert await store.list_events("") == []

    async def test_stats_counts_every_status(self, store: JobStore):
        """Test that stats reports zeros for empty statuses."""
        await store.enqueue(kind="deploy", requester="alice", now=T0)
        await store.enqueue(kind="deploy", requester="alice", now=T0)
        await store.enqueue(kind="deploy", requester="bob", now=T0)
        await store.claim_next(worker_id="w1", now=T0)

        stats = await store.stats()
        assert stats == {"queued": 2, "running": 1, "done": 0, "failed": 0, "canceled": 0}

        bob = await store.stats(requester="bob")
        assert sum(bob.values()) == 1


class TestClaim:
    """Tests for claim_next."""

    async def test_claim_marks_running(self, store: JobStore):
        """Test the fields set by a successful claim."""
        result = await store.enqueue(kind="deploy", requester="alice", now=T0)

        job = await store.claim_next(worker_id="w1", now=T0 + 100, lease_ms=30_000)

        assert job.job_id == result.job_id
        assert job.status == JobStatus.RUNNING
        assert job.locked_by == "w1"
        assert job.attempt == 1
        assert job.lease_until == T0 + 100 + 30_000
        assert job.updated_at == T0 + 100

        events = await store.list_events(job.job_id)
        assert [e.type for e in events] == [JobEventType.ENQUEUE, JobEventType.CLAIM]
        assert events[1].message == "w1"
        assert events[1].attempt == 1

    async def test_claim_empty_queue(self, store: JobStore):
        """Test that claim returns None when nothing is ready."""
        assert await store.claim_next(worker_id="w1", now=T0) is None

    async def test_claim_requires_worker_id(self, store: JobStore):
        """Test that a blank worker id is rejected."""
        await store.enqueue(kind="deploy", requester="alice", now=T0)

        with pytest.raises(InvalidJobRequest, match="claimNext.workerId missing"):
            await store.claim_next(worker_id="  ", now=T0)

    async def test_claim_respects_run_at(self, store: JobStore):
        """Test that a delayed job is invisible until its run_at."""
        result = await store.enqueue(kind="deploy", requester="alice", run_at=T0 + 60_000, now=T0)

        assert await store.claim_next(worker_id="w1", now=T0 + 59_999) is None
        job = await store.claim_next(worker_id="w1", now=T0 + 60_000)
        assert job.job_id == result.job_id

    async def test_claim_priority_order(self, store: JobStore):
        """Test that higher priority claims first, regardless of age."""
        low = await store.enqueue(kind="deploy", requester="alice", priority=0, now=T0)
        high = await store.enqueue(kind="deploy", requester="alice", priority=5, now=T0 + 1)
        mid = await store.enqueue(kind="deploy", requester="alice", priority=2, now=T0 + 2)

        order = [
            (await store.claim_next(worker_id="w1", now=T0 + 10)).job_id
            for _ in range(3)
        ]
        assert order == [high.job_id, mid.job_id, low.job_id]

    async def test_claim_fifo_within_priority(self, store: JobStore):
        """Test run_at then created_at ordering within a priority level."""
        late_run = await store.enqueue(kind="deploy", requester="alice", run_at=T0 + 5, now=T0)
        first = await store.enqueue(kind="deploy", requester="alice", now=T0 + 1)
        second = await store.enqueue(kind="deploy", requester="alice", now=T0 + 2)

        order = [
            (await store.claim_next(worker_id="w1", now=T0 + 10)).job_id
            for _ in range(3)
        ]
        assert order == [first.job_id, second.job_id, late_run.job_id]

    async def test_running_job_not_claimable_during_lease(self, store: JobStore):
        """Test that a live lease blocks other workers."""
        await store.enqueue(kind="deploy", requester="alice", now=T0)
        assert await store.claim_next(worker_id="w1", now=T0, lease_ms=10_000) is not None

        assert await store.claim_next(worker_id="w2", now=T0 + 9_999) is None

    async def test_expired_lease_is_reclaimed(self, store: JobStore, metrics_registry):
        """Test that another worker takes over after the lease expires."""
        result = await store.enqueue(kind="deploy", requester="alice", max_attempts=3, now=T0)
        await store.claim_next(worker_id="w1", now=T0, lease_ms=5_000)

        assert await store.claim_next(worker_id="w2", now=T0 + 1_000) is None
        job = await store.claim_next(worker_id="w2", now=T0 + 5_000)

        assert job.job_id == result.job_id
        assert job.locked_by == "w2"
        assert job.attempt == 2
        assert metrics_registry.get_sample_value("lease_reclaimed_total", {"kind": "deploy"}) == 1

        # The first worker has been superseded
        assert await store.ack(job_id=job.job_id, worker_id="w1", now=T0 + 5_001) is False
        assert await store.ack(job_id=job.job_id, worker_id="w2", now=T0 + 5_002) is True

    async def test_reclaim_ignores_max_attempts(self, store: JobStore):
        """Test that an abandoned job is reclaimed even past max_attempts."""
        await store.enqueue(kind="deploy", requester="alice", max_attempts=1, now=T0)
        await store.claim_next(worker_id="w1", now=T0, lease_ms=5_000)

        job = await store.claim_next(worker_id="w2", now=T0 + 5_000)
        assert job is not None
        assert job.attempt == 2

    @pytest.mark.parametrize("lease_ms,expected", [
        (1, MIN_LEASE_MS),
        (0, MIN_LEASE_MS),
        (10 * MAX_LEASE_MS, MAX_LEASE_MS),
        (None, 120_000),
        (float("nan"), 120_000),
        (45_000.8, 45_000),
    ])
    async def test_lease_is_clamped(self, store: JobStore, lease_ms, expected):
        """Test lease length bounds and defaults."""
        await store.enqueue(kind="deploy", requester="alice", now=T0)

        job = await store.claim_next(worker_id="w1", now=T0, lease_ms=lease_ms)
        assert job.lease_until == T0 + expected


class TestExtendLease:
    """Tests for extend_lease."""

    async def test_owner_extends_lease(self, store: JobStore):
        """Test that the holding worker can push out its lease."""
        await store.enqueue(kind="deploy", requester="alice", now=T0)
        job = await store.claim_next(worker_id="w1", now=T0, lease_ms=5_000)

        assert await store.extend_lease(job_id=job.job_id, worker_id="w1", lease_until=T0 + 60_000, now=T0 + 4_000)

        refreshed = await store.get_job(job.job_id)
        assert refreshed.lease_until == T0 + 60_000
        assert refreshed.updated_at == T0 + 4_000
        # The old expiry no longer makes the job claimable
        assert await store.claim_next(worker_id="w2", now=T0 + 5_000) is None

    async def test_other_worker_cannot_extend(self, store: JobStore):
        """Test that a non-owner gets False and changes nothing."""
        await store.enqueue(kind="deploy", requester="alice", now=T0)
        job = await store.claim_next(worker_id="w1", now=T0, lease_ms=5_000)

        assert await store.extend_lease(job_id=job.job_id, worker_id="w2", lease_until=T0 + 60_000) is False
        assert (await store.get_job(job.job_id)).lease_until == T0 + 5_000

    async def test_extend_non_running_job(self, store: JobStore):
        """Test that queued, unknown and blank jobs cannot be extended."""
        result = await store.enqueue(kind="deploy", requester="alice", now=T0)

        assert await store.extend_lease(job_id=result.job_id, worker_id="w1", lease_until=T0 + 1) is False
        assert await store.extend_lease(job_id="no-such-job", worker_id="w1", lease_until=T0 + 1) is False
        assert await store.extend_lease(job_id="", worker_id="w1", lease_until=T0 + 1) is False

    async def test_extend_requires_worker_id(self, store: JobStore):
        """Test that a blank worker id is rejected."""
        with pytest.raises(InvalidJobRequest):
            await store.extend_lease(job_id="any", worker_id="", lease_until=T0)


class TestAck:
    """Tests for ack."""

    async def test_ack_marks_done(self, store: JobStore):
        """Test that ack stores the result and releases the lease."""
        await store.enqueue(kind="deploy", requester="alice", now=T0)
        job = await store.claim_next(worker_id="w1", now=T0)

        assert await store.ack(job_id=job.job_id, worker_id="w1", result={"ok": True}, now=T0 + 50)

        done = await store.get_job(job.job_id)
        assert done.status == JobStatus.DONE
        assert done.result == {"ok": True}
        assert done.locked_by is None
        assert done.lease_until is None
        assert done.updated_at == T0 + 50

    async def test_double_ack_is_rejected(self, store: JobStore):
        """Test that the second ack returns False and leaves the row alone."""
        await store.enqueue(kind="deploy", requester="alice", now=T0)
        job = await store.claim_next(worker_id="w1", now=T0)

        assert await store.ack(job_id=job.job_id, worker_id="w1", result=1, now=T0 + 1) is True
        assert await store.ack(job_id=job.job_id, worker_id="w1", result=2, now=T0 + 2) is False

        done = await store.get_job(job.job_id)
        assert done.result == 1
        assert done.updated_at == T0 + 1
        acks = [e for e in await store.list_events(job.job_id) if e.type == JobEventType.ACK]
        assert len(acks) == 1

    async def test_ack_by_other_worker(self, store: JobStore):
        """Test that a worker cannot ack a job it does not hold."""
        await store.enqueue(kind="deploy", requester="alice", now=T0)
        job = await store.claim_next(worker_id="w1", now=T0)

        assert await store.ack(job_id=job.job_id, worker_id="w2") is False
        assert (await store.get_job(job.job_id)).status == JobStatus.RUNNING

    async def test_ack_queued_or_unknown_job(self, store: JobStore):
        """Test that ack only applies to running jobs."""
        result = await store.enqueue(kind="deploy", requester="alice", now=T0)

        assert await store.ack(job_id=result.job_id, worker_id="w1") is False
        assert await store.ack(job_id="no-such-job", worker_id="w1") is False
        assert await store.ack(job_id="", worker_id="w1") is False

    async def test_ack_requires_worker_id(self, store: JobStore):
        """Test that a blank worker id is rejected."""
        with pytest.raises(InvalidJobRequest, match="ack.workerId missing"):
            await store.ack(job_id="any", worker_id=None)


class TestFail:
    """Tests for fail and retry scheduling."""

    async def test_retry_then_terminal_failure(self, store: JobStore):
        """Test backoff growth across attempts and the final failure."""
        result = await store.enqueue(kind="deploy", requester="alice", max_attempts=3, now=T0)
        job_id = result.job_id
        deltas = []
        now = T0

        for attempt in (1, 2):
            job = await store.claim_next(worker_id="w1", now=now)
            assert job.attempt == attempt
            outcome = await store.fail(job_id=job_id, worker_id="w1", error=f"boom {attempt}", now=now)
            assert outcome.status == "queued"

            queued = await store.get_job(job_id)
            assert queued.status == JobStatus.QUEUED
            assert queued.locked_by is None
            assert queued.lease_until is None
            assert queued.last_error == f"boom {attempt}"
            deltas.append(queued.run_at - now)

            # Not claimable before the backoff elapses
            assert await store.claim_next(worker_id="w1", now=queued.run_at - 1) is None
            now = queued.run_at

        assert deltas == [5_000, 10_000]

        job = await store.claim_next(worker_id="w1", now=now)
        assert job.attempt == 3
        outcome = await store.fail(job_id=job_id, worker_id="w1", error="boom 3", now=now)
        assert outcome.status == "failed"

        failed = await store.get_job(job_id)
        assert failed.status == JobStatus.FAILED
        assert failed.last_error == "boom 3"
        assert await store.claim_next(worker_id="w1", now=now + MS_PER_DAY) is None

        types = [e.type for e in await store.list_events(job_id)]
        assert types == [
            JobEventType.ENQUEUE,
            JobEventType.CLAIM,
            JobEventType.RETRY,
            JobEventType.CLAIM,
            JobEventType.RETRY,
            JobEventType.CLAIM,
            JobEventType.FAIL,
        ]

    async def test_single_attempt_fails_immediately(self, store: JobStore):
        """Test that the default max_attempts of 1 means no retry."""
        await store.enqueue(kind="deploy", requester="alice", now=T0)
        job = await store.claim_next(worker_id="w1", now=T0)

        outcome = await store.fail(job_id=job.job_id, worker_id="w1", error="nope", now=T0)
        assert outcome.status == "failed"

    async def test_custom_retry_policy(self, store: JobStore):
        """Test that the passed retry bounds drive the delay."""
        await store.enqueue(kind="deploy", requester="alice", max_attempts=5, now=T0)
        job = await store.claim_next(worker_id="w1", now=T0)

        await store.fail(
            job_id=job.job_id,
            worker_id="w1",
            error="slow down",
            now=T0,
            retry=RetryPolicy(base_ms=250, max_ms=1_000),
        )
        assert (await store.get_job(job.job_id)).run_at == T0 + 250

    @pytest.mark.parametrize("error", ["", "   ", None])
    async def test_blank_error_message(self, store: JobStore, error):
        """Test the placeholder stored for an empty error."""
        await store.enqueue(kind="deploy", requester="alice", now=T0)
        job = await store.claim_next(worker_id="w1", now=T0)

        await store.fail(job_id=job.job_id, worker_id="w1", error=error, now=T0)
        assert (await store.get_job(job.job_id)).last_error == "unknown error"

    async def test_fail_by_other_worker(self, store: JobStore):
        """Test that a non-owner fail returns None and changes nothing."""
        await store.enqueue(kind="deploy", requester="alice", max_attempts=3, now=T0)
        job = await store.claim_next(worker_id="w1", now=T0)

        assert await store.fail(job_id=job.job_id, worker_id="w2", error="x", now=T0) is None

        unchanged = await store.get_job(job.job_id)
        assert unchanged.status == JobStatus.RUNNING
        assert unchanged.locked_by == "w1"
        assert unchanged.last_error == ""

    async def test_fail_not_running(self, store: JobStore):
        """Test that fail on queued, unknown or blank jobs returns None."""
        result = await store.enqueue(kind="deploy", requester="alice", now=T0)

        assert await store.fail(job_id=result.job_id, worker_id="w1", error="x") is None
        assert await store.fail(job_id="no-such-job", worker_id="w1", error="x") is None
        assert await store.fail(job_id="", worker_id="w1", error="x") is None

    async def test_fail_requires_worker_id(self, store: JobStore):
        """Test that a blank worker id is rejected."""
        with pytest.raises(InvalidJobRequest, match="fail.workerId missing"):
            await store.fail(job_id="any", worker_id="", error="x")


class TestCancel:
    """Tests for cancel."""

    async def test_cancel_queued(self, store: JobStore):
        """Test that a queued job is canceled and never claimed."""
        result = await store.enqueue(kind="deploy", requester="alice", now=T0)

        assert await store.cancel(job_id=result.job_id, now=T0 + 1) is True

        job = await store.get_job(result.job_id)
        assert job.status == JobStatus.CANCELED
        assert job.updated_at == T0 + 1
        assert await store.claim_next(worker_id="w1", now=T0 + 2) is None

    async def test_cancel_running_rejects_later_ack(self, store: JobStore):
        """Test that canceling a running job clears the lock and blocks ack."""
        await store.enqueue(kind="deploy", requester="alice", now=T0)
        job = await store.claim_next(worker_id="w1", now=T0)

        assert await store.cancel(job_id=job.job_id, now=T0 + 1) is True

        canceled = await store.get_job(job.job_id)
        assert canceled.locked_by is None
        assert canceled.lease_until is None
        assert await store.ack(job_id=job.job_id, worker_id="w1", now=T0 + 2) is False
        assert await store.fail(job_id=job.job_id, worker_id="w1", error="x", now=T0 + 2) is None
        assert await store.extend_lease(job_id=job.job_id, worker_id="w1", lease_until=T0 + 9) is False

    async def test_cancel_terminal_or_unknown(self, store: JobStore):
        """Test that terminal, unknown and blank jobs cannot be canceled."""
        await store.enqueue(kind="deploy", requester="alice", now=T0)
        job = await store.claim_next(worker_id="w1", now=T0)
        await store.ack(job_id=job.job_id, worker_id="w1", now=T0)

        assert await store.cancel(job_id=job.job_id) is False
        assert (await store.get_job(job.job_id)).status == JobStatus.DONE
        assert await store.cancel(job_id="no-such-job") is False
        assert await store.cancel(job_id="") is False

    async def test_cancel_twice(self, store: JobStore):
        """Test that a second cancel returns False."""
        result = await store.enqueue(kind="deploy", requester="alice", now=T0)

        assert await store.cancel(job_id=result.job_id) is True
        assert await store.cancel(job_id=result.job_id) is False


class TestPrune:
    """Tests for prune."""

    async def _finish(self, store: JobStore, now: int, status: JobStatus) -> str:
        result = await store.enqueue(kind="deploy", requester="alice", now=now)
        if status == JobStatus.CANCELED:
            await store.cancel(job_id=result.job_id, now=now)
            return result.job_id
        job = await store.claim_next(worker_id="w1", now=now)
        if status == JobStatus.DONE:
            await store.ack(job_id=job.job_id, worker_id="w1", now=now)
        elif status == JobStatus.FAILED:
            await store.fail(job_id=job.job_id, worker_id="w1", error="x", now=now)
        return result.job_id

    async def test_prune_old_terminal_jobs(self, store: JobStore, metrics_registry):
        """Test that terminal jobs past retention are deleted with their events."""
        done = await self._finish(store, T0, JobStatus.DONE)
        failed = await self._finish(store, T0, JobStatus.FAILED)
        canceled = await self._finish(store, T0, JobStatus.CANCELED)

        count = await store.prune(keep_days=1, now=T0 + 2 * MS_PER_DAY)

        assert count == 3
        for job_id in (done, failed, canceled):
            assert await store.get_job(job_id) is None
            assert await store.list_events(job_id) == []
        assert metrics_registry.get_sample_value("jobs_pruned_total") == 3

    async def test_prune_keeps_active_jobs(self, store: JobStore):
        """Test that queued and running jobs survive any retention."""
        queued = await store.enqueue(kind="deploy", requester="alice", run_at=T0 + MS_PER_DAY * 30, now=T0)
        await store.enqueue(kind="deploy", requester="alice", now=T0)
        running = await store.claim_next(worker_id="w1", now=T0)

        count = await store.prune(keep_days=1, now=T0 + 10 * MS_PER_DAY)

        assert count == 0
        assert await store.get_job(queued.job_id) is not None
        assert await store.get_job(running.job_id) is not None

    async def test_prune_keeps_recent_terminal_jobs(self, store: JobStore):
        """Test that terminal jobs inside the window survive."""
        recent = await self._finish(store, T0, JobStatus.DONE)

        assert await store.prune(keep_days=7, now=T0 + 6 * MS_PER_DAY) == 0
        assert await store.get_job(recent) is not None

    @pytest.mark.parametrize("keep_days", [0, -3, 0.5, float("nan")])
    async def test_prune_keep_days_floor(self, store: JobStore, keep_days):
        """Test that retention never drops below one day."""
        job_id = await self._finish(store, T0, JobStatus.DONE)

        assert await store.prune(keep_days=keep_days, now=T0 + MS_PER_DAY - 1) == 0
        assert await store.prune(keep_days=keep_days, now=T0 + 2 * MS_PER_DAY) == 1
        assert await store.get_job(job_id) is None

    async def test_prune_boundary_is_exclusive(self, store: JobStore):
        """Test that a job created exactly at the cutoff is kept."""
        job_id = await self._finish(store, T0, JobStatus.DONE)

        assert await store.prune(keep_days=1, now=T0 + MS_PER_DAY) == 0
        assert await store.prune(keep_days=1, now=T0 + MS_PER_DAY + 1) == 1
        assert await store.get_job(job_id) is None


class TestLifecycle:
    """End-to-end scenario through the store."""

    async def test_deploy_scenario(self, store: JobStore):
        """Test a deduplicated enqueue, a failed attempt, a retry and an ack."""
        first = await store.enqueue(
            kind="deploy",
            requester="ops",
            payload={"host": "alpha"},
            idempotency_key="deploy:alpha",
            max_attempts=2,
            now=T0,
        )
        repeat = await store.enqueue(
            kind="deploy",
            requester="ops",
            payload={"host": "alpha"},
            idempotency_key="deploy:alpha",
            max_attempts=2,
            now=T0 + 1,
        )
        assert repeat.job_id == first.job_id
        assert repeat.deduped is True

        job = await store.claim_next(worker_id="w1", now=T0 + 10)
        assert job.job_id == first.job_id
        assert job.is_retryable
        assert (await store.fail(job_id=job.job_id, worker_id="w1", error="ssh timeout", now=T0 + 20)).status == "queued"

        retry_at = (await store.get_job(job.job_id)).run_at
        assert retry_at == T0 + 20 + 5_000

        job = await store.claim_next(worker_id="w2", now=retry_at)
        assert job.attempt == 2
        assert await store.ack(job_id=job.job_id, worker_id="w2", result={"deployed": True}, now=retry_at + 5)

        final = await store.get_job(job.job_id)
        assert final.status == JobStatus.DONE
        assert final.result == {"deployed": True}
        assert final.last_error == "ssh timeout"
        assert final.is_terminal
        assert await store.stats() == {"queued": 0, "running": 0, "done": 1, "failed": 0, "canceled": 0}
