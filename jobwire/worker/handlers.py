"""
Job handler registry and built-in handlers.

Job handlers must be idempotent - the broker may hand the same job out
again if a reservation expires before it is acknowledged.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from jobwire.errors import HandlerError
from jobwire.types.job import JobContext

logger = logging.getLogger(__name__)

# Handlers may be coroutine functions or plain callables
JobHandler = Callable[[JobContext], Awaitable[Any] | Any]


class HandlerRegistry:
    """
    Maps job types to handlers.

    Populated at startup and consulted for every fetched job. Plain
    (non-async) handlers run in a worker thread so they do not stall the
    heartbeat.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, JobHandler] = {}

    def register(self, jobtype: str) -> Callable[[JobHandler], JobHandler]:
        """
        Decorator to register a job handler.

        Args:
            jobtype: The job type this handler processes.

        Returns:
            Decorator function.

        Example:
            @registry.register("SendEmail")
            async def send_email(context: JobContext) -> None:
                ...
        """
        def decorator(handler: JobHandler) -> JobHandler:
            self.add(jobtype, handler)
            return handler
        return decorator

    def add(self, jobtype: str, handler: JobHandler) -> None:
        """Register `handler` for `jobtype`, replacing any previous one."""
        if not jobtype:
            raise ValueError("jobtype must not be empty")
        self._handlers[jobtype] = handler
        logger.debug(f"Registered handler for job type: {jobtype}")

    def resolve(self, jobtype: str) -> JobHandler:
        """
        Get the handler for a job type.

        Raises:
            HandlerError: If no handler is registered.
        """
        try:
            return self._handlers[jobtype]
        except KeyError:
            raise HandlerError(jobtype) from None

    def jobtypes(self) -> list[str]:
        """List all registered job types."""
        return list(self._handlers)

    def __contains__(self, jobtype: object) -> bool:
        return jobtype in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    async def execute(self, context: JobContext) -> Any:
        """
        Run the handler for the job in `context`.

        Returns:
            Whatever the handler returns.

        Raises:
            HandlerError: If the job type is unknown.
            Exception: Anything the handler raises.
        """
        handler = self.resolve(context.jobtype)
        if inspect.iscoroutinefunction(handler):
            return await handler(context)

        result = await asyncio.to_thread(handler, context)
        if inspect.isawaitable(result):
            return await result
        return result


# ============================================================================
# Built-in job handlers
# ============================================================================


async def handle_echo(context: JobContext) -> list[Any]:
    """
    Echo handler for testing.

    Logs and returns the job arguments.
    """
    logger.info(
        "Echo job executing",
        extra={"jid": context.jid, "job_args": context.args},
    )
    return context.args


async def handle_sleep(context: JobContext) -> float:
    """
    Sleep handler for testing delays.

    The first argument is the duration in seconds (default 1).
    """
    duration = float(context.args[0]) if context.args else 1.0
    logger.info(
        "Sleep job starting",
        extra={"jid": context.jid, "duration": duration},
    )
    await asyncio.sleep(duration)
    return duration


async def handle_failer(context: JobContext) -> None:
    """
    Handler that always fails - for testing failure reporting.
    """
    logger.info(
        "Failing job executing (will fail)",
        extra={"jid": context.jid},
    )
    raise RuntimeError("oops")


def builtin_registry() -> HandlerRegistry:
    """
    Build a registry holding the built-in handlers.

    Returns:
        HandlerRegistry: Echo, Sleep and Failer.
    """
    registry = HandlerRegistry()
    registry.add("Echo", handle_echo)
    registry.add("Sleep", handle_sleep)
    registry.add("Failer", handle_failer)
    return registry
