"""
Worker process for executing jobs.

The worker fetches jobs from its queues in priority order, runs the
registered handler and reports the outcome, while a heartbeat task keeps
the broker informed and relays its quiet/terminate requests.
"""

import asyncio
import logging
import signal
import time
from collections.abc import Callable, Sequence

from jobwire.config import Settings, get_settings
from jobwire.constants import SPAN_EXECUTE_JOB
from jobwire.errors import BrokerConnectionError, JobwireError
from jobwire.observability.logging import bind_context, setup_logging
from jobwire.observability.metrics import get_metrics
from jobwire.observability.tracing import create_span, setup_tracing
from jobwire.types.job import FailureReport, Job, JobContext
from jobwire.worker.context import RuntimeContext
from jobwire.worker.handlers import HandlerRegistry, builtin_registry
from jobwire.worker.heartbeat import Heartbeat
from jobwire.worker.producer import Producer
from jobwire.worker.supervisor import TaskFailure, TaskSupervisor

logger = logging.getLogger(__name__)


class Worker:
    """
    Job worker that fetches and executes jobs one at a time.

    Every fetched job gets exactly one report: ack if the handler returned,
    fail if it raised (an unknown job type counts as raising). Errors
    talking to the broker end the current iteration, never the loop.
    """

    def __init__(
        self,
        context: RuntimeContext,
        registry: HandlerRegistry,
        queues: Sequence[str] | None = None,
        name: str = "worker-1",
        poll_interval: float | None = None,
    ):
        """
        Initialize the worker.

        Args:
            context: Shared runtime context.
            registry: Handlers by job type.
            queues: Queue names, highest priority first.
            name: Name used in logs.
            poll_interval: Seconds to wait when no job is ready.
        """
        self.context = context
        self.registry = registry
        self.queues = list(queues or context.settings.queues)
        self.name = name
        self.poll_interval = poll_interval or context.settings.worker_poll_interval_seconds

        if not self.queues:
            raise ValueError("Worker needs at least one queue")

    async def run(self) -> None:
        """Fetch and execute jobs until shutdown is requested."""
        bind_context(worker=self.name)
        logger.info("Worker starting", extra={"queues": self.queues})

        shutdown = self.context.shutdown
        while not shutdown.is_set():
            if self.context.is_quiet:
                await shutdown.wait(self.poll_interval)
                continue

            try:
                processed = await self.process_one()
            except BrokerConnectionError as e:
                logger.warning("Broker connection failed", extra={"error": str(e)})
                processed = False
            except JobwireError as e:
                logger.error("Broker rejected request", extra={"error": str(e)})
                processed = False
            except Exception:
                logger.exception("Unexpected error while processing a job")
                processed = False

            if not processed:
                await shutdown.wait(self.poll_interval)

        logger.info("Worker stopped")

    async def process_one(self) -> bool:
        """
        Fetch one job and run it to a reported outcome.

        Returns:
            True if a job was fetched, False if the queues were empty.

        Raises:
            JobwireError: If fetching or reporting failed.
        """
        async with self.context.pool.connection() as client:
            job = await client.fetch(self.queues)

        if job is None:
            return False

        self.context.metrics.record_job_fetched(job.queue)
        error = await self._execute(job)

        async with self.context.pool.connection() as client:
            if error is None:
                await client.ack(job.jid)
            else:
                await client.fail(FailureReport.from_exception(job.jid, error))

        return True

    async def _execute(self, job: Job) -> BaseException | None:
        """
        Run the handler for `job`.

        Returns:
            The exception the handler raised, or None on success.
        """
        start_time = time.monotonic()
        context = JobContext(job=job, worker_id=self.context.worker_id)

        logger.info(
            "Executing job",
            extra={"jid": job.jid, "jobtype": job.jobtype, "queue": job.queue},
        )

        try:
            with create_span(SPAN_EXECUTE_JOB, jid=job.jid, jobtype=job.jobtype):
                await self.registry.execute(context)
        except asyncio.CancelledError:
            raise
        except BaseException as e:
            # SystemExit or KeyboardInterrupt from a handler fails the job only
            duration = time.monotonic() - start_time
            logger.warning(
                "Job failed",
                extra={
                    "jid": job.jid,
                    "jobtype": job.jobtype,
                    "errortype": type(e).__name__,
                    "error": str(e),
                },
            )
            self.context.metrics.record_job_processed(job.jobtype, "failed", duration)
            return e

        duration = time.monotonic() - start_time
        logger.info(
            "Job completed successfully",
            extra={"jid": job.jid, "duration": f"{duration:.2f}s"},
        )
        self.context.metrics.record_job_processed(job.jobtype, "succeeded", duration)
        return None


def install_signal_handlers(context: RuntimeContext) -> None:
    """Turn SIGTERM/SIGINT into a shutdown request."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, context.shutdown.request, f"received {sig.name}")


async def run_worker(
    registry: HandlerRegistry,
    queues: Sequence[str] | None = None,
    *,
    settings: Settings | None = None,
    producer_factory: Callable[[RuntimeContext], Producer] | None = None,
    context: RuntimeContext | None = None,
    handle_signals: bool = True,
) -> list[TaskFailure]:
    """
    Run a worker process until shutdown.

    Args:
        registry: Handlers by job type.
        queues: Queue names, highest priority first. Defaults to settings.
        settings: Settings to use. Defaults to the cached settings.
        producer_factory: Optionally builds a producer to run alongside.
        context: Prebuilt runtime context, mostly for tests.
        handle_signals: Install SIGTERM/SIGINT handlers.

    Returns:
        Failures of supervised tasks.

    Raises:
        JobwireError: If no connection to the broker can be established.
    """
    context = context or RuntimeContext.create(settings)
    settings = context.settings

    try:
        # Fail fast if the broker is unreachable or rejects us
        async with context.pool.connection() as client:
            logger.info("Connected to broker", extra={"broker": str(client.address)})

        if handle_signals:
            install_signal_handlers(context)

        supervisor = TaskSupervisor()
        supervisor.spawn("heartbeat", Heartbeat(context).run())
        for i in range(max(1, settings.worker_concurrency)):
            name = f"worker-{i + 1}"
            supervisor.spawn(name, Worker(context, registry, queues, name=name).run())
        if producer_factory is not None:
            supervisor.spawn("producer", producer_factory(context).run())

        failures = await supervisor.join()
    finally:
        await context.pool.close()

    logger.info(
        "Worker process stopped",
        extra={"reason": context.shutdown.reason, "failed_tasks": len(failures)},
    )
    return failures


def demo_producer(context: RuntimeContext) -> Producer:
    """Producer pushing Echo jobs to the configured producer queue."""
    queue = context.settings.producer_queue
    return Producer(
        context,
        lambda: Job.create("Echo", int(time.time()), queue=queue),
        jitter=1.0,
    )


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()
    setup_logging()
    setup_tracing()

    metrics = get_metrics()
    if settings.metrics_port:
        metrics.serve(settings.metrics_port)

    await run_worker(
        builtin_registry(),
        settings=settings,
        producer_factory=demo_producer if settings.producer_enabled else None,
    )


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
