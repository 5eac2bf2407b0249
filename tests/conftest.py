"""
Pytest configuration and shared fixtures.

Provides an in-process fake broker speaking the wire protocol on an
ephemeral localhost port.
"""

import asyncio
import fnmatch
import json
from collections import defaultdict, deque
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timezone
from typing import Any
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry

from jobwire.client.connection import ProtocolClient
from jobwire.client.pool import ConnectionPool
from jobwire.config import Settings
from jobwire.observability.metrics import MetricsCollector
from jobwire.worker.context import RuntimeContext

# Scripted reply actions
DROP = "drop"  # close the connection instead of replying
HANG = "hang"  # never reply

PAYLOAD_COMMANDS = {"PUSH", "PUSHB", "ACK", "FAIL", "MUTATE", "TRACK"}

OK = b"+OK\r\n"


def payload_reply(data: Any) -> bytes:
    """Encode a `$n` payload reply."""
    body = json.dumps(data).encode("utf-8")
    return b"$%d\r\n%s\r\n" % (len(body), body)


class FakeBroker:
    """
    Minimal broker implementing the client-visible contract.

    Honors `at` (future jobs are not fetchable), `custom.unique_for`
    (duplicates are rejected with NOTUNIQUE), reservations (ack/fail of an
    unknown jid is an error), paused queues, the retries and dead sets fed
    by FAIL, MUTATE over those sets and TRACK. Replies to specific verbs can
    be scripted with `script()`.
    """

    def __init__(self, password: str | None = None):
        self.password = password
        self.queues: dict[str, deque[dict[str, Any]]] = defaultdict(deque)
        self.scheduled: list[dict[str, Any]] = []
        self.retries: list[dict[str, Any]] = []
        self.dead: list[dict[str, Any]] = []
        self.tracks: dict[str, dict[str, Any]] = {}
        self.reservations: dict[str, dict[str, Any]] = {}
        self.acked: list[str] = []
        self.failures: list[dict[str, Any]] = []
        self.paused: set[str] = set()
        self.commands: list[str] = []
        self.handshakes: list[dict[str, str]] = []
        self.connections = 0
        self.port = 0

        self._unique: set[str] = set()
        self._scripts: dict[str, deque[Any]] = defaultdict(deque)
        self._writers: set[asyncio.StreamWriter] = set()
        self._server: asyncio.Server | None = None
        self._stopping = asyncio.Event()

    @property
    def url(self) -> str:
        return f"tcp://127.0.0.1:{self.port}"

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        self._stopping.set()
        for writer in list(self._writers):
            writer.close()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()

    def script(self, verb: str, *replies: Any) -> None:
        """Queue raw replies (bytes, DROP or HANG) for the next `verb` commands."""
        self._scripts[verb].extend(replies)

    def enqueue(self, job: dict[str, Any]) -> None:
        self.queues[job.get("queue", "default")].append(job)

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        self._writers.add(writer)
        authenticated = False
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                verb, *args = line.decode("utf-8").split()
                self.commands.append(verb)

                payload = None
                if verb in PAYLOAD_COMMANDS:
                    payload = json.loads(await reader.readline())

                if verb == "END":
                    break

                if self._scripts[verb]:
                    reply = self._scripts[verb].popleft()
                    if reply == DROP:
                        break
                    if reply == HANG:
                        await self._stopping.wait()
                        break
                elif verb == "HANDSHAKE":
                    reply = self._handshake(args)
                    authenticated = reply == OK
                elif not authenticated:
                    reply = b"-ERR Handshake required\r\n"
                else:
                    reply = self._dispatch(verb, args, payload)

                writer.write(reply)
                await writer.drain()
        except (ConnectionError, asyncio.IncompleteReadError):
            pass
        finally:
            self._writers.discard(writer)
            writer.close()

    def _handshake(self, args: list[str]) -> bytes:
        options = dict(arg.split(":", 1) for arg in args)
        self.handshakes.append(options)
        if options.get("format") != "json":
            return b"-ERR Unsupported format\r\n"
        if self.password is not None and options.get("pwd") != self.password:
            return b"-ERR Invalid password\r\n"
        return OK

    def _dispatch(self, verb: str, args: list[str], payload: Any) -> bytes:
        if verb == "PUSH":
            error = self._push(payload)
            return OK if error is None else f"-{error}\r\n".encode()

        if verb == "PUSHB":
            errors = {}
            for job in payload:
                error = self._push(job)
                if error is not None:
                    errors[job.get("jid", "")] = error
            return payload_reply(errors)

        if verb == "FETCH":
            for name in args:
                if name in self.paused or not self.queues[name]:
                    continue
                job = self.queues[name].popleft()
                self.reservations[job["jid"]] = job
                return payload_reply(job)
            return b"$-1\r\n"

        if verb == "ACK":
            jid = payload.get("jid")
            if self.reservations.pop(jid, None) is None:
                return f"-ERR Unknown job {jid}\r\n".encode()
            self.acked.append(jid)
            return OK

        if verb == "FAIL":
            if payload.get("jid") not in self.reservations:
                return f"-ERR Unknown job {payload.get('jid')}\r\n".encode()
            job = self.reservations.pop(payload["jid"])
            self.failures.append(payload)
            retry = job.get("retry", 25)
            if retry < 0:
                self.dead.append(job)
            elif retry > 0:
                self.retries.append(job)
            return OK

        if verb == "BEAT":
            return OK

        if verb == "INFO":
            return payload_reply({"queues": {name: len(jobs) for name, jobs in self.queues.items()}})

        if verb == "FLUSH":
            self.queues.clear()
            self.scheduled.clear()
            self.retries.clear()
            self.dead.clear()
            self.tracks.clear()
            self.reservations.clear()
            self._unique.clear()
            return OK

        if verb == "QUEUE":
            action, names = args[0], args[1:]
            if names == ["*"]:
                names = list(self.queues)
            if action == "PAUSE":
                self.paused.update(names)
            elif action == "RESUME":
                self.paused.difference_update(names)
            elif action == "REMOVE":
                for name in names:
                    self.queues.pop(name, None)
            else:
                return b"-ERR Unknown queue action\r\n"
            return OK

        if verb == "MUTATE":
            return self._mutate(payload)

        if verb == "TRACK":
            jid = payload.get("jid")
            if args == ["GET"]:
                track = dict(self.tracks.get(jid, {}))
                state = "working" if jid in self.reservations else "unknown"
                return payload_reply({**track, "jid": jid, "state": state, "updated_at": "2026-01-01T00:00:00Z"})
            if args == ["SET"]:
                if not jid:
                    return b"-ERR Missing jid\r\n"
                self.tracks[jid] = payload
                return OK
            return b"-ERR Unknown track action\r\n"

        return f"-ERR Unknown command {verb}\r\n".encode()

    def _mutate(self, operation: dict[str, Any]) -> bytes:
        sets = {"scheduled": self.scheduled, "retries": self.retries, "dead": self.dead}
        target = sets.get(operation.get("target"))
        if target is None:
            return b"-ERR Unknown target\r\n"

        cmd = operation.get("cmd")
        if cmd == "clear":
            target.clear()
            return OK

        job_filter = operation.get("filter") or {}
        matched = [job for job in target if self._matches(job, job_filter)]
        if cmd not in ("kill", "requeue", "discard"):
            return b"-ERR Unknown mutate command\r\n"

        for job in matched:
            target.remove(job)
            if cmd == "kill":
                self.dead.append(job)
            elif cmd == "requeue":
                self.enqueue(job)
        return OK

    @staticmethod
    def _matches(job: dict[str, Any], job_filter: dict[str, Any]) -> bool:
        if "jids" in job_filter and job.get("jid") not in job_filter["jids"]:
            return False
        if "jobtype" in job_filter and job.get("jobtype") != job_filter["jobtype"]:
            return False
        if "regexp" in job_filter:
            return fnmatch.fnmatchcase(json.dumps(job), job_filter["regexp"])
        return True

    def _push(self, job: dict[str, Any]) -> str | None:
        if not job.get("jid") or not job.get("jobtype"):
            return "ERR jobs must have a jid and a jobtype"

        custom = job.get("custom") or {}
        if "unique_for" in custom:
            key = json.dumps([job["jobtype"], job.get("queue"), job.get("args")])
            if key in self._unique:
                return "NOTUNIQUE Job not unique"
            self._unique.add(key)

        at = job.get("at")
        if at and datetime.fromisoformat(at.replace("Z", "+00:00")) > datetime.now(timezone.utc):
            self.scheduled.append(job)
            return None

        self.enqueue(job)
        return None


@pytest_asyncio.fixture
async def broker() -> AsyncGenerator[FakeBroker, None]:
    """Start a fake broker for the duration of a test."""
    broker = FakeBroker()
    await broker.start()
    yield broker
    await broker.stop()


@pytest.fixture
def metrics() -> MetricsCollector:
    """Metrics collector on a private registry."""
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def test_settings(broker: FakeBroker) -> Settings:
    """Create test settings pointing at the fake broker."""
    return Settings(
        broker_url=broker.url,
        broker_timeout_seconds=1.0,
        pool_size=3,
        worker_id="test-worker",
        worker_queues="default",
        worker_poll_interval_seconds=0.05,
        heartbeat_interval_seconds=0.05,
        producer_interval_seconds=0.05,
        log_level="DEBUG",
        log_format="console",
    )


@pytest_asyncio.fixture
async def client(broker: FakeBroker, metrics: MetricsCollector) -> AsyncGenerator[ProtocolClient, None]:
    """A connected protocol client."""
    client = await ProtocolClient.connect(broker.url, timeout=1.0, metrics=metrics)
    yield client
    await client.close()


@pytest_asyncio.fixture
async def pool(test_settings: Settings, metrics: MetricsCollector) -> AsyncGenerator[ConnectionPool, None]:
    """A connection pool for the fake broker."""
    pool = ConnectionPool.from_settings(test_settings, metrics=metrics)
    yield pool
    await pool.close()


@pytest_asyncio.fixture
async def context(
    pool: ConnectionPool,
    test_settings: Settings,
    metrics: MetricsCollector,
) -> RuntimeContext:
    """Runtime context sharing the test pool."""
    return RuntimeContext(pool=pool, settings=test_settings, metrics=metrics)


@pytest.fixture
def offline_context(metrics: MetricsCollector) -> RuntimeContext:
    """Runtime context whose pool must never be used."""
    return RuntimeContext(pool=MagicMock(spec=ConnectionPool), settings=Settings(), metrics=metrics)


@pytest.fixture
def eventually() -> Callable[..., Awaitable[None]]:
    """Poll a predicate until it holds or time runs out."""

    async def wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError("Condition not met in time")
            await asyncio.sleep(0.01)

    return wait
