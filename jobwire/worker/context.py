"""
Runtime context shared by the worker, heartbeat and producer loops.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field

from jobwire.client.pool import ConnectionPool
from jobwire.config import Settings, get_settings
from jobwire.observability.metrics import MetricsCollector, get_metrics

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    """Hostname plus PID."""
    return f"{os.uname().nodename}-{os.getpid()}"


class ShutdownToken:
    """
    Cooperative cancellation signal.

    Monotonic: once requested it stays requested. Loops check it between
    units of work and use wait() for interruptible sleeps.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def request(self, reason: str) -> bool:
        """
        Request shutdown.

        Args:
            reason: Why, for the logs.

        Returns:
            True if this call set the token, False if it was already set.
        """
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        logger.info("Shutdown requested", extra={"reason": reason})
        return True

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float | None = None) -> bool:
        """
        Wait until shutdown is requested or `timeout` elapses.

        Returns:
            True if shutdown was requested.
        """
        if timeout is None:
            await self._event.wait()
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True


@dataclass
class RuntimeContext:
    """
    Everything the loops share, passed to them explicitly.

    Attributes:
        pool: Connection pool all loops borrow from.
        settings: Runtime settings.
        shutdown: Process-wide cancellation token.
        metrics: Metrics collector.
    """

    pool: ConnectionPool
    settings: Settings
    shutdown: ShutdownToken = field(default_factory=ShutdownToken)
    metrics: MetricsCollector = field(default_factory=get_metrics)
    _quiet: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
    ) -> "RuntimeContext":
        """
        Build a context with a fresh pool for the configured broker.

        Args:
            settings: Settings to use. Defaults to the cached settings.
            metrics: Metrics collector. Defaults to the global one.

        Returns:
            RuntimeContext: The new context.
        """
        settings = settings or get_settings()
        if not settings.worker_id:
            settings = settings.model_copy(update={"worker_id": default_worker_id()})

        metrics = metrics or get_metrics()
        pool = ConnectionPool.from_settings(settings, metrics=metrics)
        return cls(pool=pool, settings=settings, metrics=metrics)

    @property
    def worker_id(self) -> str:
        return self.settings.worker_id or default_worker_id()

    @property
    def is_quiet(self) -> bool:
        """Whether workers should stop fetching new jobs."""
        return self._quiet.is_set()

    def enter_quiet(self) -> bool:
        """
        Stop fetching new work. Monotonic, like shutdown.

        Returns:
            True if this call switched the process to quiet.
        """
        if self._quiet.is_set():
            return False
        self._quiet.set()
        logger.info("Entering quiet mode, no new jobs will be fetched")
        return True
