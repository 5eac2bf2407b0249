"""
Protocol client owning a single broker connection.

A ProtocolClient is not safe for concurrent use by design of the protocol:
every command must receive its reply before the next one is sent. Share
clients between tasks through a ConnectionPool instead.
"""

import asyncio
import logging
import ssl
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from jobwire.client.address import BrokerAddress
from jobwire.constants import (
    ALL_QUEUES,
    DEFAULT_PAYLOAD_FORMAT,
    DEFAULT_TIMEOUT_SECONDS,
    MAX_LINE_BYTES,
    REPLY_OK,
    BeatSignal,
    Command,
    MutateOp,
    MutateTarget,
    QueueAction,
    TrackAction,
)
from jobwire.errors import AuthError, BrokerConnectionError, FramingError, ProtocolError
from jobwire.observability.metrics import MetricsCollector
from jobwire.protocol.codec import Reply, ReplyKind, decode_json, encode_command, read_reply
from jobwire.types.admin import JobFilter, JobTrack, MutateOperation, TrackUpdate
from jobwire.types.job import FailureReport, Job

logger = logging.getLogger(__name__)


class ProtocolClient:
    """
    A connection to the broker after a successful handshake.

    Any transport failure, timeout, malformed reply or cancellation in the
    middle of a round trip leaves the client unusable: its position in the
    byte stream is unknown, so every later command is refused with
    BrokerConnectionError.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        address: BrokerAddress,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        metrics: MetricsCollector | None = None,
    ):
        self.address = address
        self.timeout = timeout
        self.payload_format: str | None = None
        self.worker_id: str | None = None
        self.authenticated = False

        self._reader = reader
        self._writer = writer
        self._metrics = metrics
        self._lock = asyncio.Lock()
        self._usable = True
        self._closed = False

    @classmethod
    async def connect(
        cls,
        address: BrokerAddress | str,
        password: str | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        worker_id: str | None = None,
        payload_format: str = DEFAULT_PAYLOAD_FORMAT,
        metrics: MetricsCollector | None = None,
    ) -> "ProtocolClient":
        """
        Open a connection and perform the handshake.

        Args:
            address: Broker address or URL.
            password: Broker password. Defaults to the one in the URL.
            timeout: Deadline in seconds for connecting and for each round trip.
            worker_id: Identifies a worker process to the broker.
            payload_format: Payload serialization to negotiate.
            metrics: Optional metrics collector.

        Returns:
            ProtocolClient: A ready-to-use client.

        Raises:
            BrokerConnectionError: If the broker cannot be reached.
            AuthError: If the broker rejects the handshake.
        """
        if isinstance(address, str):
            address = BrokerAddress.from_url(address)

        ssl_context = ssl.create_default_context() if address.tls else None
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(
                    address.host,
                    address.port,
                    ssl=ssl_context,
                    limit=MAX_LINE_BYTES,
                ),
                timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise BrokerConnectionError(f"Cannot connect to {address}: {e!r}") from e

        client = cls(reader, writer, address, timeout=timeout, metrics=metrics)
        try:
            await client.handshake(
                password if password is not None else address.password,
                worker_id=worker_id,
                payload_format=payload_format,
            )
        except BaseException:
            await client.close()
            raise

        logger.debug("Connected to broker", extra={"broker": str(address)})
        return client

    @property
    def usable(self) -> bool:
        """Whether the client can still carry commands."""
        return self._usable and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    async def handshake(
        self,
        password: str | None,
        *,
        worker_id: str | None = None,
        payload_format: str = DEFAULT_PAYLOAD_FORMAT,
    ) -> None:
        """
        Authenticate and negotiate the payload format.

        Raises:
            AuthError: If the broker rejects the handshake.
        """
        args = [f"pwd:{password or ''}", f"format:{payload_format}"]
        if worker_id:
            args.append(f"wid:{worker_id}")

        try:
            reply = await self._call(Command.HANDSHAKE, *args)
        except ProtocolError as e:
            raise AuthError(f"Handshake rejected: {e}") from e

        self._expect_ok(Command.HANDSHAKE, reply)
        self.payload_format = payload_format
        self.worker_id = worker_id
        self.authenticated = True

    async def push(self, job: Job) -> None:
        """
        Enqueue a job.

        Raises:
            ProtocolError: If the broker rejects the job, e.g. NOTUNIQUE.
        """
        reply = await self._call(Command.PUSH, payload=job)
        self._expect_ok(Command.PUSH, reply)

    async def push_bulk(self, jobs: Iterable[Job]) -> dict[str, str]:
        """
        Enqueue several jobs with one command.

        Returns:
            Mapping of jid to error message for each rejected job.
        """
        payload = [job.model_dump(mode="json", exclude_none=True) for job in jobs]
        reply = await self._call(Command.PUSH_BULK, payload=payload)
        data = self._expect_payload(Command.PUSH_BULK, reply)
        if data is None:
            return {}
        return self._expect_mapping(Command.PUSH_BULK, decode_json(data))

    async def fetch(self, queues: Sequence[str] | str) -> Job | None:
        """
        Reserve the next job from the given queues.

        Args:
            queues: Queue names, highest priority first.

        Returns:
            The reserved job, or None if no queue has a ready job.
        """
        if isinstance(queues, str):
            queues = [queues]
        if not queues:
            raise ValueError("fetch requires at least one queue name")

        reply = await self._call(Command.FETCH, *queues)
        data = self._expect_payload(Command.FETCH, reply)
        if data is None:
            return None

        try:
            return Job.from_wire(data)
        except ValidationError as e:
            self._usable = False
            raise FramingError(f"Malformed job payload: {e}") from e

    async def ack(self, jid: str) -> None:
        """
        Report successful completion of a reserved job.

        The jid travels in the payload since jids are opaque strings.

        Raises:
            ProtocolError: If the broker does not know the reservation.
        """
        reply = await self._call(Command.ACK, payload={"jid": jid})
        self._expect_ok(Command.ACK, reply)

    async def fail(self, report: FailureReport) -> None:
        """Report failure of a reserved job."""
        reply = await self._call(Command.FAIL, payload=report)
        self._expect_ok(Command.FAIL, reply)

    async def beat(self) -> BeatSignal:
        """
        Send a heartbeat.

        Returns:
            BeatSignal: What the broker wants this process to do.
        """
        reply = await self._call(Command.BEAT)

        if reply.kind is ReplyKind.SIMPLE:
            if reply.text == REPLY_OK:
                return BeatSignal.CONTINUE
            state = reply.text.lower()
        elif reply.kind is ReplyKind.PAYLOAD and reply.data is not None:
            data = decode_json(reply.data)
            state = data.get("state") if isinstance(data, dict) else None
        else:
            state = None

        if state in (BeatSignal.QUIET, BeatSignal.TERMINATE):
            return BeatSignal(state)
        raise self._unexpected(Command.BEAT, reply)

    async def info(self) -> dict[str, Any]:
        """Get the broker's state snapshot."""
        reply = await self._call(Command.INFO)
        data = self._expect_payload(Command.INFO, reply)
        if data is None:
            return {}
        return self._expect_mapping(Command.INFO, decode_json(data))

    async def flush(self) -> None:
        """Remove all data from the broker."""
        reply = await self._call(Command.FLUSH)
        self._expect_ok(Command.FLUSH, reply)

    async def pause_queues(self, *names: str) -> None:
        """Pause the named queues, or all of them with "*"."""
        await self._queue_command(QueueAction.PAUSE, names)

    async def resume_queues(self, *names: str) -> None:
        """Resume the named queues, or all of them with "*"."""
        await self._queue_command(QueueAction.RESUME, names)

    async def remove_queues(self, *names: str) -> None:
        """Remove the named queues and their jobs, or all of them with "*"."""
        await self._queue_command(QueueAction.REMOVE, names)

    async def mutate(self, operation: MutateOperation) -> None:
        """
        Apply a maintenance operation to one of the persistent job sets.

        These scan the whole set on the broker; use them for repair and
        migration, not in job code.
        """
        reply = await self._call(Command.MUTATE, payload=operation)
        self._expect_ok(Command.MUTATE, reply)

    async def kill(self, target: MutateTarget | str, job_filter: JobFilter) -> None:
        """Move matching jobs from `target` to the dead set."""
        await self._mutate(MutateOp.KILL, target, job_filter)

    async def requeue(self, target: MutateTarget | str, job_filter: JobFilter) -> None:
        """Put matching jobs from `target` back on their queues."""
        await self._mutate(MutateOp.REQUEUE, target, job_filter)

    async def discard(self, target: MutateTarget | str, job_filter: JobFilter) -> None:
        """Delete matching jobs from `target`."""
        await self._mutate(MutateOp.DISCARD, target, job_filter)

    async def clear(self, target: MutateTarget | str) -> None:
        """Empty `target` entirely."""
        await self._mutate(MutateOp.CLEAR, target, None)

    async def track_get(self, jid: str) -> JobTrack:
        """
        Get the tracked progress of a job.

        Returns:
            JobTrack: State, percent and description as the broker knows them.
        """
        reply = await self._call(Command.TRACK, TrackAction.GET, payload={"jid": jid})
        data = self._expect_payload(Command.TRACK, reply)
        if data is None:
            return JobTrack(jid=jid)

        try:
            return JobTrack.model_validate(self._expect_mapping(Command.TRACK, decode_json(data)))
        except ValidationError as e:
            self._usable = False
            raise FramingError(f"Malformed track payload: {e}") from e

    async def track_set(
        self,
        jid: str,
        percent: int | None = None,
        description: str | None = None,
        reserve_until: datetime | None = None,
    ) -> None:
        """
        Report progress for a job that is being worked on.

        Args:
            jid: The job.
            percent: Completion, 0 to 100.
            description: Short progress text.
            reserve_until: Extend the reservation; ignored if already past.
        """
        update = TrackUpdate.create(jid, percent, description, reserve_until)
        reply = await self._call(Command.TRACK, TrackAction.SET, payload=update)
        self._expect_ok(Command.TRACK, reply)

    async def close(self) -> None:
        """
        Say goodbye and close the transport.

        Safe to call more than once.
        """
        async with self._lock:
            if self._closed:
                return
            self._closed = True

            if self._usable:
                try:
                    self._writer.write(encode_command(Command.END))
                    await asyncio.wait_for(self._writer.drain(), self.timeout)
                except (OSError, asyncio.TimeoutError) as e:
                    logger.debug("Could not send END", extra={"error": repr(e)})
            self._usable = False

            self._writer.close()
            try:
                await asyncio.wait_for(self._writer.wait_closed(), self.timeout)
            except (OSError, asyncio.TimeoutError) as e:
                logger.debug("Transport did not close cleanly", extra={"error": repr(e)})

    async def _queue_command(self, action: QueueAction, names: Sequence[str]) -> None:
        if not names:
            raise ValueError(f"QUEUE {action} requires queue names or {ALL_QUEUES!r}")
        reply = await self._call(Command.QUEUE, action, *names)
        self._expect_ok(Command.QUEUE, reply)

    async def _mutate(
        self,
        op: MutateOp,
        target: MutateTarget | str,
        job_filter: JobFilter | None,
    ) -> None:
        await self.mutate(MutateOperation(cmd=op, target=MutateTarget(target), filter=job_filter))

    async def _call(self, verb: str, *args: str, payload: Any = None) -> Reply:
        """
        Perform one request/response round trip.

        Raises:
            BrokerConnectionError: On transport failure; the client is unusable.
            ProtocolError: If the broker replied with an error.
        """
        frame = encode_command(verb, *args, payload=payload)

        async with self._lock:
            if not self.usable:
                raise BrokerConnectionError(f"Connection to {self.address} is no longer usable")

            try:
                self._writer.write(frame)
                await asyncio.wait_for(self._writer.drain(), self.timeout)
                reply = await asyncio.wait_for(read_reply(self._reader), self.timeout)
            except BrokerConnectionError:
                self._usable = False
                self._record(verb, "connection_error")
                raise
            except (OSError, asyncio.TimeoutError) as e:
                self._usable = False
                self._record(verb, "connection_error")
                raise BrokerConnectionError(f"{verb} to {self.address} failed: {e!r}") from e
            except BaseException:
                # Interrupted mid round trip, the reply may still be in flight
                self._usable = False
                raise

        if reply.kind is ReplyKind.ERROR:
            self._record(verb, "error")
            reply.raise_for_error()

        self._record(verb, "ok")
        return reply

    def _record(self, verb: str, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.record_command(str(verb), outcome)

    def _unexpected(self, verb: str, reply: Reply) -> FramingError:
        self._usable = False
        return FramingError(f"Unexpected reply to {verb}: {reply.kind}{(reply.data or b'')[:64]!r}")

    def _expect_ok(self, verb: str, reply: Reply) -> None:
        if reply.kind is not ReplyKind.SIMPLE or reply.text != REPLY_OK:
            raise self._unexpected(verb, reply)

    def _expect_payload(self, verb: str, reply: Reply) -> bytes | None:
        if reply.kind is not ReplyKind.PAYLOAD:
            raise self._unexpected(verb, reply)
        return reply.data

    def _expect_mapping(self, verb: str, data: Any) -> dict[str, Any]:
        if not isinstance(data, dict):
            self._usable = False
            raise FramingError(f"Expected a JSON object in reply to {verb}")
        return data

    def __repr__(self) -> str:
        state = "usable" if self.usable else "unusable"
        return f"<ProtocolClient {self.address} {state}>"
