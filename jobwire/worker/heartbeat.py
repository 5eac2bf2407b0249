"""
Heartbeat loop.

Beats tell the broker the process is alive, and the replies carry the
broker's lifecycle requests: quiet (stop fetching) and terminate.
"""

import logging

from jobwire.constants import BeatSignal, HeartbeatState
from jobwire.errors import BrokerConnectionError, JobwireError
from jobwire.worker.context import RuntimeContext

logger = logging.getLogger(__name__)


class Heartbeat:
    """
    Periodically beats through the pool and applies the broker's signals.

    RUNNING -> QUIET on "quiet"; any state -> TERMINATING on "terminate",
    which also requests shutdown and ends the loop. Broker and network
    errors are logged and the beat is retried on the next interval.
    """

    def __init__(self, context: RuntimeContext, interval: float | None = None):
        """
        Initialize the heartbeat.

        Args:
            context: Shared runtime context.
            interval: Seconds between beats.
        """
        self.context = context
        self.interval = interval or context.settings.heartbeat_interval_seconds
        self.state = HeartbeatState.RUNNING

    async def run(self) -> None:
        """Beat until terminated or shut down."""
        logger.info(f"Heartbeat starting with interval {self.interval}s")

        while not self.context.shutdown.is_set():
            await self.beat_once()
            if self.state is HeartbeatState.TERMINATING:
                break
            await self.context.shutdown.wait(self.interval)

        logger.info("Heartbeat stopped", extra={"state": str(self.state)})

    async def beat_once(self) -> BeatSignal | None:
        """
        Send one beat and apply the reply.

        Returns:
            The broker's signal, or None if the beat failed.
        """
        try:
            async with self.context.pool.connection() as client:
                signal = await client.beat()
        except BrokerConnectionError as e:
            logger.warning("Heartbeat failed, will retry", extra={"error": str(e)})
            return None
        except JobwireError as e:
            logger.error("Heartbeat rejected by broker", extra={"error": str(e)})
            return None
        except Exception:
            logger.exception("Unexpected error during heartbeat")
            return None

        self.context.metrics.record_heartbeat(str(signal))
        self.apply(signal)
        return signal

    def apply(self, signal: BeatSignal) -> HeartbeatState:
        """
        Move the state machine according to a broker signal.

        Args:
            signal: The broker's reply.

        Returns:
            HeartbeatState: The new state.
        """
        if self.state is HeartbeatState.TERMINATING:
            return self.state

        if signal is BeatSignal.TERMINATE:
            self.state = HeartbeatState.TERMINATING
            self.context.enter_quiet()
            self.context.shutdown.request("broker requested termination")
        elif signal is BeatSignal.QUIET:
            self.state = HeartbeatState.QUIET
            self.context.enter_quiet()

        return self.state
