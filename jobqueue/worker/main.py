"""
Worker process for executing jobs.

The worker claims jobs from the store, runs the handler registered for
each job's kind, keeps leases alive while handlers run, and reports the
outcome through ack or fail.
"""

import asyncio
import logging
import os
import signal
import socket
import time
from collections.abc import Mapping

from jobqueue.config import get_settings
from jobqueue.constants import (
    DEFAULT_ERROR_MESSAGE,
    MAX_LEASE_MS,
    MIN_LEASE_MS,
    SPAN_ACK_JOB,
    SPAN_CLAIM_JOB,
    SPAN_EXECUTE_JOB,
    SPAN_FAIL_JOB,
)
from jobqueue.db import close_db, get_engine, init_db
from jobqueue.observability.logging import bind_context, setup_logging
from jobqueue.observability.metrics import MetricsCollector, get_metrics, setup_metrics
from jobqueue.observability.tracing import instrument_sqlalchemy, job_span, setup_tracing
from jobqueue.retry import RetryPolicy
from jobqueue.store import JobStore
from jobqueue.types.job import JobContext
from jobqueue.utils import now_ms
from jobqueue.worker.handlers import JobHandler, execute_job

logger = logging.getLogger(__name__)


class Worker:
    """
    Job worker that polls for and executes jobs.

    Features:
    - Atomic claiming through JobStore.claim_next
    - Heartbeat that extends leases for long-running jobs and flags
      handlers (JobContext.lease_lost) when a job was canceled or reclaimed
    - Retry with backoff through JobStore.fail
    - Graceful shutdown on SIGTERM/SIGINT
    """

    def __init__(
        self,
        store: JobStore,
        worker_id: str | None = None,
        concurrency: int | None = None,
        poll_interval: float | None = None,
        lease_ms: int | None = None,
        heartbeat_interval: float | None = None,
        retry: RetryPolicy | None = None,
        handlers: Mapping[str, JobHandler] | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the worker.

        Args:
            store: The job store to claim from.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            concurrency: Maximum jobs executing at once.
            poll_interval: Seconds between polls when nothing was claimed.
            lease_ms: Lease length requested on claim and on every heartbeat.
            heartbeat_interval: Seconds between lease extensions.
            retry: Backoff bounds passed to fail().
            handlers: Kind -> handler table. Defaults to the global registry.
            metrics: Metrics collector. Defaults to the process-wide collector.
        """
        settings = get_settings()

        self.store = store
        self.worker_id = worker_id or settings.worker_id or f"{socket.gethostname()}-{os.getpid()}"
        self.concurrency = max(1, concurrency if concurrency is not None else settings.worker_concurrency)
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.worker_poll_interval_seconds
        )
        # Same bounds claim_next applies, so heartbeats extend by what was granted
        lease = lease_ms if lease_ms is not None else settings.worker_lease_ms
        self.lease_ms = max(MIN_LEASE_MS, min(MAX_LEASE_MS, lease))
        self.heartbeat_interval = (
            heartbeat_interval if heartbeat_interval is not None
            else settings.worker_heartbeat_interval_seconds
        )
        self.retry = retry or RetryPolicy(
            base_ms=settings.retry_base_ms,
            max_ms=settings.retry_max_ms,
        )

        self._handlers = handlers
        self._running = False
        self._current_jobs: dict[str, JobContext] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._heartbeat_task: asyncio.Task | None = None
        self._metrics = metrics or get_metrics()

    @property
    def in_flight(self) -> int:
        """Number of jobs currently executing."""
        return len(self._tasks)

    async def start(self) -> None:
        """Start the worker and run until stop() is called."""
        bind_context(worker_id=self.worker_id)
        logger.info(
            "Worker starting",
            extra={"worker_id": self.worker_id, "concurrency": self.concurrency}
        )

        self._running = True
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        while self._running:
            try:
                claimed = await self._fill_slots()
                if claimed == 0:
                    await asyncio.sleep(self.poll_interval)
            except Exception:
                logger.exception("Error in worker loop", extra={"worker_id": self.worker_id})
                await asyncio.sleep(self.poll_interval)

        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} jobs to complete")
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass

        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop claiming new jobs; in-flight jobs finish first."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False

    async def run_once(self) -> int:
        """
        Claim up to `concurrency` jobs and execute them to completion.

        No heartbeat runs, so handlers must finish within the lease. Meant
        for tests and cron-style execution.

        Returns:
            Number of jobs processed.
        """
        contexts: list[JobContext] = []
        while len(contexts) < self.concurrency:
            context = await self.claim()
            if context is None:
                break
            contexts.append(context)

        await asyncio.gather(*(self._execute_job(context) for context in contexts))
        return len(contexts)

    async def claim(self) -> JobContext | None:
        """
        Claim one job and track it as in flight.

        Returns:
            The handler context, or None when nothing is ready.
        """
        with job_span(SPAN_CLAIM_JOB, worker_id=self.worker_id) as span:
            job = await self.store.claim_next(worker_id=self.worker_id, lease_ms=self.lease_ms)
            if job is None:
                return None
            span.set_attribute("job_id", job.job_id)

        context = JobContext.from_job(job, self.worker_id)
        self._current_jobs[job.job_id] = context
        return context

    async def heartbeat(self) -> int:
        """
        Extend the leases of all in-flight jobs.

        A job whose lease cannot be extended was canceled or taken over by
        another worker; its context is flagged so the handler can stop.

        Returns:
            Number of leases extended.
        """
        extended = 0
        for job_id, context in list(self._current_jobs.items()):
            if context.lease_lost.is_set():
                continue
            lease_until = now_ms() + self.lease_ms
            ok = await self.store.extend_lease(
                job_id=job_id,
                worker_id=self.worker_id,
                lease_until=lease_until,
            )
            if ok:
                context.lease_until = lease_until
                extended += 1
            else:
                context.lease_lost.set()
                logger.warning(
                    "Lease lost; job was canceled or reclaimed",
                    extra={"job_id": job_id, "worker_id": self.worker_id},
                )
        return extended

    async def _fill_slots(self) -> int:
        """
        Claim jobs until all concurrency slots are busy or nothing is ready.

        Returns:
            Number of jobs claimed.
        """
        claimed = 0
        while self._running and len(self._tasks) < self.concurrency:
            context = await self.claim()
            if context is None:
                break
            self._tasks[context.job_id] = asyncio.create_task(self._execute_job(context))
            claimed += 1
        return claimed

    async def _execute_job(self, context: JobContext) -> None:
        """
        Execute a single claimed job and record the outcome.

        Args:
            context: The handler context of a job claimed by this worker.
        """
        start_time = time.monotonic()
        job_id = context.job_id

        try:
            logger.info(
                "Executing job",
                extra={"job_id": job_id, "kind": context.kind, "attempt": context.attempt},
            )

            with job_span(SPAN_EXECUTE_JOB, job_id=job_id, kind=context.kind, attempt=context.attempt):
                result = await execute_job(context, self._handlers)

            duration = time.monotonic() - start_time

            if result.success:
                with job_span(SPAN_ACK_JOB, job_id=job_id):
                    acked = await self.store.ack(
                        job_id=job_id,
                        worker_id=self.worker_id,
                        result=result.output,
                    )
                status = "done" if acked else "superseded"
                if not acked:
                    logger.warning(
                        "Result discarded; job was canceled or reclaimed",
                        extra={"job_id": job_id},
                    )
            else:
                with job_span(SPAN_FAIL_JOB, job_id=job_id):
                    outcome = await self.store.fail(
                        job_id=job_id,
                        worker_id=self.worker_id,
                        error=result.error or DEFAULT_ERROR_MESSAGE,
                        retry=self.retry,
                    )
                if outcome is None:
                    status = "superseded"
                else:
                    status = "retry" if outcome.status == "queued" else outcome.status

            self._metrics.record_job_duration(context.kind, status, duration)

        except Exception as e:
            logger.exception("Exception executing job", extra={"job_id": job_id})

            try:
                await self.store.fail(
                    job_id=job_id,
                    worker_id=self.worker_id,
                    error=f"Worker exception: {e}",
                    retry=self.retry,
                )
            except Exception:
                logger.exception("Failed to mark job as failed", extra={"job_id": job_id})

        finally:
            self._tasks.pop(job_id, None)
            self._current_jobs.pop(job_id, None)

    async def _heartbeat_loop(self) -> None:
        """
        Periodically extend leases on running jobs.

        Keeps in-flight jobs from becoming claimable by other workers.
        """
        while True:
            try:
                await asyncio.sleep(self.heartbeat_interval)
                if self._current_jobs:
                    await self.heartbeat()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in heartbeat loop")


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()
    setup_logging()
    setup_tracing()
    setup_metrics(settings.prometheus_port)
    await init_db()
    if settings.otel_exporter_otlp_endpoint:
        instrument_sqlalchemy(get_engine())

    worker = Worker(JobStore())

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(worker.stop())
        )

    try:
        await worker.start()
    finally:
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
