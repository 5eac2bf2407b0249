"""
Producer loop that keeps pushing generated jobs.
"""

import logging
import random
from collections.abc import Callable

from jobwire.constants import SPAN_PUSH_JOB
from jobwire.errors import JobwireError
from jobwire.observability.tracing import create_span
from jobwire.types.job import Job
from jobwire.worker.context import RuntimeContext

logger = logging.getLogger(__name__)

JobFactory = Callable[[], Job]


class Producer:
    """
    Pushes `job_factory()` every interval until shutdown.

    A failed push is logged and the loop carries on.
    """

    def __init__(
        self,
        context: RuntimeContext,
        job_factory: JobFactory,
        interval: float | None = None,
        jitter: float = 0.0,
    ):
        """
        Initialize the producer.

        Args:
            context: Shared runtime context.
            job_factory: Builds the next job to push.
            interval: Seconds between pushes.
            jitter: Up to this many extra random seconds per interval.
        """
        self.context = context
        self.job_factory = job_factory
        self.interval = interval or context.settings.producer_interval_seconds
        self.jitter = jitter
        self.pushed = 0

    async def run(self) -> None:
        """Push jobs until shutdown."""
        logger.info(f"Producer starting with interval {self.interval}s")

        while not self.context.shutdown.is_set():
            await self.push_once()
            await self.context.shutdown.wait(self.interval + random.uniform(0, self.jitter))

        logger.info("Producer stopped", extra={"pushed": self.pushed})

    async def push_once(self) -> Job | None:
        """
        Build and push one job.

        Returns:
            The pushed job, or None if the push failed.
        """
        try:
            job = self.job_factory()
        except Exception:
            logger.exception("Job factory failed")
            return None

        try:
            with create_span(SPAN_PUSH_JOB, jid=job.jid, queue=job.queue):
                async with self.context.pool.connection() as client:
                    await client.push(job)
        except JobwireError as e:
            logger.warning(
                "Push failed",
                extra={"jid": job.jid, "jobtype": job.jobtype, "error": str(e)},
            )
            return None

        self.pushed += 1
        logger.debug("Pushed job", extra={"jid": job.jid, "queue": job.queue})
        return job
