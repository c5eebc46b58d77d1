"""
Sweeper for deleting old terminal jobs.

The sweeper runs out of band from workers. Each pass prunes done, failed
and canceled jobs older than the retention window and refreshes the
queue-depth gauge. Queued and running jobs are never touched.
"""

import asyncio
import logging
import signal

from jobqueue.config import get_settings
from jobqueue.constants import SPAN_PRUNE_JOBS
from jobqueue.db import close_db, init_db
from jobqueue.observability.logging import setup_logging
from jobqueue.observability.metrics import MetricsCollector, get_metrics, setup_metrics
from jobqueue.observability.tracing import job_span, setup_tracing
from jobqueue.store import JobStore

logger = logging.getLogger(__name__)


class Sweeper:
    """
    Periodic pruner.

    Runs periodically to:
    1. Delete terminal jobs (and their events) older than keep_days
    2. Publish per-status job counts to the queue-depth gauge
    """

    def __init__(
        self,
        store: JobStore,
        interval_seconds: int | None = None,
        keep_days: int | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the sweeper.

        Args:
            store: The job store to prune.
            interval_seconds: Seconds between sweeps.
            keep_days: Retention window for terminal jobs.
            metrics: Metrics collector. Defaults to the process-wide collector.
        """
        settings = get_settings()
        self.store = store
        self.interval = (
            interval_seconds if interval_seconds is not None else settings.sweeper_interval_seconds
        )
        # prune() raises anything below one day to one day
        self.keep_days = keep_days if keep_days is not None else settings.sweeper_keep_days
        self._running = False
        self._metrics = metrics or get_metrics()

    async def start(self) -> None:
        """Start the sweeper loop."""
        logger.info(
            "Sweeper starting",
            extra={"interval": self.interval, "keep_days": self.keep_days},
        )
        self._running = True

        while self._running:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Error in sweeper loop")

            await asyncio.sleep(self.interval)

        logger.info("Sweeper stopped")

    async def stop(self) -> None:
        """Stop the sweeper."""
        logger.info("Sweeper stopping")
        self._running = False

    async def run_once(self, now: int | None = None) -> int:
        """
        Run one sweep (for testing or cron-style execution).

        Args:
            now: Clock override in epoch ms.

        Returns:
            Number of jobs pruned.
        """
        with job_span(SPAN_PRUNE_JOBS, keep_days=self.keep_days) as span:
            pruned = await self.store.prune(keep_days=self.keep_days, now=now)
            span.set_attribute("pruned", pruned)

        stats = await self.store.stats()
        self._metrics.update_queue_depth(stats)

        if pruned > 0:
            logger.info("Sweep pruned jobs", extra={"pruned": pruned, **stats})
        return pruned


async def run_async() -> None:
    """Run the sweeper asynchronously."""
    settings = get_settings()
    setup_logging()
    setup_tracing()
    setup_metrics(settings.prometheus_port)
    await init_db()

    sweeper = Sweeper(JobStore())

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(sweeper.stop())
        )

    try:
        await sweeper.start()
    finally:
        await close_db()


def run() -> None:
    """Run the sweeper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
