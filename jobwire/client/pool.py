"""
Bounded pool of broker connections.
"""

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

from jobwire.client.address import BrokerAddress
from jobwire.client.connection import ProtocolClient
from jobwire.config import Settings, get_settings
from jobwire.errors import BrokerConnectionError, PoolClosedError
from jobwire.observability.metrics import MetricsCollector

logger = logging.getLogger(__name__)

T = TypeVar("T")

ClientFactory = Callable[[], Awaitable[ProtocolClient]]


class ConnectionPool:
    """
    Lends broker connections to one caller at a time.

    Connections are created lazily, up to `capacity`. When the pool is full
    and nothing is idle, callers wait for a release. A connection that
    raised BrokerConnectionError, or that reports itself unusable, is closed
    and dropped instead of going back to the idle set.
    """

    def __init__(
        self,
        factory: ClientFactory,
        capacity: int,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the pool.

        Args:
            factory: Coroutine function returning a connected client.
            capacity: Maximum number of live connections.
            metrics: Optional metrics collector.
        """
        if capacity < 1:
            raise ValueError("Pool capacity must be at least 1")

        self.capacity = capacity
        self._factory = factory
        self._metrics = metrics
        self._idle: deque[ProtocolClient] = deque()
        self._size = 0
        self._closed = False
        self._cond = asyncio.Condition()

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
    ) -> "ConnectionPool":
        """
        Build a pool connecting to the configured broker.

        Args:
            settings: Settings to use. Defaults to the cached settings.
            metrics: Optional metrics collector.

        Returns:
            ConnectionPool: A pool with no open connections yet.
        """
        settings = settings or get_settings()
        address = BrokerAddress.from_url(settings.resolve_broker_url())
        password = settings.broker_password

        async def factory() -> ProtocolClient:
            return await ProtocolClient.connect(
                address,
                password,
                timeout=settings.broker_timeout_seconds,
                worker_id=settings.worker_id,
                payload_format=settings.payload_format,
                metrics=metrics,
            )

        return cls(factory, capacity=settings.pool_size, metrics=metrics)

    @property
    def size(self) -> int:
        """Number of live connections, idle or checked out."""
        return self._size

    @property
    def idle(self) -> int:
        return len(self._idle)

    @property
    def in_use(self) -> int:
        return self._size - len(self._idle)

    @property
    def closed(self) -> bool:
        return self._closed

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[ProtocolClient]:
        """
        Borrow a connection for the duration of the block.

        Yields:
            ProtocolClient: A client nobody else is using.

        Raises:
            PoolClosedError: If the pool has been closed.
        """
        client = await self._checkout()
        try:
            yield client
        except BrokerConnectionError:
            await self._discard(client)
            raise
        except BaseException:
            await self._release(client)
            raise
        else:
            await self._release(client)

    async def with_connection(self, fn: Callable[[ProtocolClient], Awaitable[T]]) -> T:
        """
        Run `fn` with a borrowed connection.

        Args:
            fn: Coroutine function receiving the client.

        Returns:
            Whatever `fn` returns.
        """
        async with self.connection() as client:
            return await fn(client)

    async def close(self) -> None:
        """
        Close idle connections and refuse new checkouts.

        Connections still checked out are closed when they come back.
        """
        async with self._cond:
            self._closed = True
            idle = list(self._idle)
            self._idle.clear()
            self._size -= len(idle)
            self._cond.notify_all()
        self._update_metrics()

        for client in idle:
            await client.close()
        logger.info("Connection pool closed", extra={"closed_connections": len(idle)})

    async def _checkout(self) -> ProtocolClient:
        async with self._cond:
            while True:
                if self._closed:
                    raise PoolClosedError("Connection pool is closed")
                if self._idle:
                    client = self._idle.popleft()
                    self._update_metrics()
                    return client
                if self._size < self.capacity:
                    # Reserve the slot before connecting outside the lock
                    self._size += 1
                    break
                await self._cond.wait()

        try:
            client = await self._factory()
        except BaseException:
            async with self._cond:
                self._size -= 1
                self._cond.notify()
            self._update_metrics()
            raise

        logger.debug(
            "Opened pooled connection",
            extra={"pool_size": self._size, "capacity": self.capacity},
        )
        self._update_metrics()
        return client

    async def _release(self, client: ProtocolClient) -> None:
        if not client.usable or self._closed:
            await self._discard(client)
            return

        async with self._cond:
            self._idle.append(client)
            self._cond.notify()
        self._update_metrics()

    async def _discard(self, client: ProtocolClient) -> None:
        async with self._cond:
            self._size -= 1
            self._cond.notify()
        self._update_metrics()

        logger.debug("Discarding pooled connection", extra={"client": repr(client)})
        await client.close()

    def _update_metrics(self) -> None:
        if self._metrics is not None:
            self._metrics.update_pool(idle=self.idle, in_use=self.in_use)
