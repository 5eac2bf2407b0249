"""
Integration tests for the protocol client against the fake broker.
"""

import socket
from datetime import datetime, timedelta, timezone

import pytest

from jobwire.client.connection import ProtocolClient
from jobwire.constants import BeatSignal, MutateTarget
from jobwire.errors import AuthError, BrokerConnectionError, FramingError, ProtocolError
from jobwire.types.admin import JobFilter
from jobwire.types.job import FailureReport, Job

from conftest import DROP, HANG, FakeBroker, payload_reply


def unused_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestHandshake:
    """Tests for connecting and authenticating."""

    @pytest.mark.asyncio
    async def test_handshake_arguments(self, broker: FakeBroker):
        """Test credentials, format and worker id are sent."""
        client = await ProtocolClient.connect(broker.url, "secret", worker_id="w-1")

        assert client.authenticated is True
        assert client.payload_format == "json"
        assert broker.handshakes == [{"pwd": "secret", "format": "json", "wid": "w-1"}]
        await client.close()

    @pytest.mark.asyncio
    async def test_password_from_url(self, broker: FakeBroker):
        """Test the URL password is used when none is given."""
        broker.password = "topsecret"

        client = await ProtocolClient.connect(f"tcp://:topsecret@127.0.0.1:{broker.port}")

        assert client.usable is True
        await client.close()

    @pytest.mark.asyncio
    async def test_wrong_password(self, broker: FakeBroker):
        """Test a rejected handshake raises AuthError."""
        broker.password = "topsecret"

        with pytest.raises(AuthError):
            await ProtocolClient.connect(broker.url, "wrong")

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        """Test an unreachable broker raises BrokerConnectionError."""
        with pytest.raises(BrokerConnectionError):
            await ProtocolClient.connect(f"tcp://127.0.0.1:{unused_port()}", timeout=1.0)


class TestJobCommands:
    """Tests for push, fetch, ack and fail."""

    @pytest.mark.asyncio
    async def test_push_fetch_ack(self, client: ProtocolClient, broker: FakeBroker):
        """Test the basic job lifecycle."""
        await client.push(Job(jid="abc123", queue="default", jobtype="Echo", args=[1, "x"]))

        job = await client.fetch(["default"])
        assert job is not None
        assert job.jid == "abc123"

        await client.ack("abc123")
        assert broker.acked == ["abc123"]

    @pytest.mark.asyncio
    async def test_ack_jid_with_whitespace(self, client: ProtocolClient, broker: FakeBroker):
        """Test jids are opaque and may contain spaces."""
        await client.push(Job(jid="job 1", jobtype="Echo"))

        job = await client.fetch("default")
        await client.ack(job.jid)

        assert broker.acked == ["job 1"]
        assert client.usable is True

    @pytest.mark.asyncio
    async def test_fetched_job_equals_pushed_job(self, client: ProtocolClient):
        """Test every pushed field comes back unchanged."""
        pushed = Job.create("Echo", 1, "two", "\r\n", {"three": [3.5, None]}, queue="bulk", retry=5)
        pushed = pushed.with_custom(trace="t-1")

        await client.push(pushed)
        fetched = await client.fetch("bulk")

        assert fetched == pushed
        assert fetched.to_wire() == pushed.to_wire()

    @pytest.mark.asyncio
    async def test_fetch_empty_queue(self, client: ProtocolClient):
        """Test no ready job is None, not an error."""
        assert await client.fetch(["default", "critical"]) is None
        assert client.usable is True

    @pytest.mark.asyncio
    async def test_scheduled_job_not_immediately_visible(self, client: ProtocolClient, broker: FakeBroker):
        """Test a job scheduled an hour ahead is not fetched now."""
        job = Job.create("Echo", at=datetime.now(timezone.utc) + timedelta(hours=1))

        await client.push(job)

        assert await client.fetch(["default"]) is None
        assert [scheduled["jid"] for scheduled in broker.scheduled] == [job.jid]

    @pytest.mark.asyncio
    async def test_fetch_in_priority_order(self, client: ProtocolClient):
        """Test earlier queues are served first."""
        await client.push(Job.create("Echo", queue="bulk"))
        critical = Job.create("Echo", queue="critical")
        await client.push(critical)

        first = await client.fetch(["critical", "default", "bulk"])
        second = await client.fetch(["critical", "default", "bulk"])

        assert first.jid == critical.jid
        assert second.queue == "bulk"

    @pytest.mark.asyncio
    async def test_fetch_requires_queue(self, client: ProtocolClient):
        """Test fetching from no queues is a caller error."""
        with pytest.raises(ValueError):
            await client.fetch([])

    @pytest.mark.asyncio
    async def test_fail_sends_all_fields(self, client: ProtocolClient, broker: FakeBroker):
        """Test the FAIL payload carries jid, message, errortype and backtrace."""
        await client.push(Job(jid="abc123", jobtype="Failer"))
        await client.fetch("default")

        await client.fail(
            FailureReport(jid="abc123", message="oops", errortype="RuntimeError", backtrace=["line 1"])
        )

        assert broker.failures == [
            {"jid": "abc123", "message": "oops", "errortype": "RuntimeError", "backtrace": ["line 1"]}
        ]

    @pytest.mark.asyncio
    async def test_broker_errors_surface_as_protocol_errors(self, client: ProtocolClient):
        """Test rejected ack/fail raise ProtocolError and keep the connection."""
        with pytest.raises(ProtocolError) as exc_info:
            await client.ack("unknown")
        assert exc_info.value.code == "ERR"

        with pytest.raises(ProtocolError):
            await client.fail(FailureReport(jid="abc123", message="oops", errortype="RuntimeError"))

        assert client.usable is True
        assert await client.fetch("default") is None

    @pytest.mark.asyncio
    async def test_unique_job_rejected(self, client: ProtocolClient):
        """Test a uniqueness violation is a NOTUNIQUE ProtocolError."""
        job = Job.create("Echo", 1).unique_for(60)
        await client.push(job)

        with pytest.raises(ProtocolError) as exc_info:
            await client.push(Job.create("Echo", 1).unique_for(60))

        assert exc_info.value.code == "NOTUNIQUE"

    @pytest.mark.asyncio
    async def test_push_bulk(self, client: ProtocolClient):
        """Test bulk push reports rejected jobs only."""
        ok = Job.create("Echo", 1).unique_for(60)
        duplicate = Job.create("Echo", 1).unique_for(60)

        errors = await client.push_bulk([ok, duplicate])

        assert list(errors) == [duplicate.jid]
        assert (await client.fetch("default")).jid == ok.jid


class TestBeat:
    """Tests for heartbeat replies."""

    @pytest.mark.asyncio
    async def test_ok_means_continue(self, client: ProtocolClient):
        """Test a plain OK."""
        assert await client.beat() is BeatSignal.CONTINUE

    @pytest.mark.asyncio
    async def test_signal_tokens(self, client: ProtocolClient, broker: FakeBroker):
        """Test quiet and terminate as simple replies and as payloads."""
        broker.script("BEAT", b"+quiet\r\n", payload_reply({"state": "terminate"}))

        assert await client.beat() is BeatSignal.QUIET
        assert await client.beat() is BeatSignal.TERMINATE

    @pytest.mark.asyncio
    async def test_unknown_signal(self, client: ProtocolClient, broker: FakeBroker):
        """Test an unexpected beat reply is a framing error."""
        broker.script("BEAT", b"+dance\r\n")

        with pytest.raises(FramingError):
            await client.beat()
        assert client.usable is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reply", [b"+\xff\xfe\r\n", b"-\xff ERR\r\n"])
    async def test_non_utf8_reply(self, client: ProtocolClient, broker: FakeBroker, reply: bytes):
        """Test undecodable reply lines are framing errors that poison the client."""
        broker.script("BEAT", reply)

        with pytest.raises(FramingError):
            await client.beat()
        assert client.usable is False


class TestConnectionFailures:
    """Tests for transport and framing failures."""

    @pytest.mark.asyncio
    async def test_malformed_reply_poisons_client(self, client: ProtocolClient, broker: FakeBroker):
        """Test a malformed reply leaves the client unusable."""
        broker.script("FETCH", b"!garbage\r\n")

        with pytest.raises(FramingError):
            await client.fetch("default")

        assert client.usable is False
        with pytest.raises(BrokerConnectionError):
            await client.fetch("default")

    @pytest.mark.asyncio
    async def test_dropped_connection(self, client: ProtocolClient, broker: FakeBroker):
        """Test the broker hanging up mid command."""
        broker.script("ACK", DROP)

        with pytest.raises(BrokerConnectionError):
            await client.ack("abc123")
        assert client.usable is False

    @pytest.mark.asyncio
    async def test_timeout(self, broker: FakeBroker):
        """Test a broker that never answers."""
        client = await ProtocolClient.connect(broker.url, timeout=0.2)
        broker.script("BEAT", HANG)

        with pytest.raises(BrokerConnectionError):
            await client.beat()
        assert client.usable is False
        await client.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, client: ProtocolClient, broker: FakeBroker, eventually):
        """Test close sends END once and can be repeated."""
        await client.close()
        await client.close()

        assert client.closed is True
        await eventually(lambda: "END" in broker.commands)
        assert broker.commands.count("END") == 1


class TestAdminCommands:
    """Tests for the supplementary admin commands."""

    @pytest.mark.asyncio
    async def test_info(self, client: ProtocolClient):
        """Test the broker state snapshot."""
        await client.push(Job.create("Echo"))

        info = await client.info()

        assert info["queues"]["default"] == 1

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, client: ProtocolClient):
        """Test a paused queue hands out nothing."""
        await client.push(Job.create("Echo"))

        await client.pause_queues("default")
        assert await client.fetch("default") is None

        await client.resume_queues("*")
        assert await client.fetch("default") is not None

    @pytest.mark.asyncio
    async def test_remove_and_flush(self, client: ProtocolClient):
        """Test removing queues and flushing."""
        await client.push(Job.create("Echo", queue="a"))
        await client.push(Job.create("Echo", queue="b"))

        await client.remove_queues("a")
        assert await client.fetch("a") is None

        await client.flush()
        assert await client.fetch("b") is None

    @pytest.mark.asyncio
    async def test_queue_command_needs_names(self, client: ProtocolClient):
        """Test queue commands without names are rejected locally."""
        with pytest.raises(ValueError):
            await client.pause_queues()


def retry_entry(jid: str, jobtype: str = "Sync", *args) -> dict:
    return Job(jid=jid, jobtype=jobtype, args=list(args)).model_dump(mode="json", exclude_none=True)


class TestMutate:
    """Tests for the job set maintenance commands."""

    @pytest.mark.asyncio
    async def test_kill_by_type(self, client: ProtocolClient, broker: FakeBroker):
        """Test killing moves matching retries to the dead set."""
        broker.retries.extend([retry_entry("a"), retry_entry("b", "Other")])

        await client.kill(MutateTarget.RETRIES, JobFilter.of_type("Sync"))

        assert [job["jid"] for job in broker.retries] == ["b"]
        assert [job["jid"] for job in broker.dead] == ["a"]

    @pytest.mark.asyncio
    async def test_requeue_failed_job(self, client: ProtocolClient, broker: FakeBroker):
        """Test a failed job can be put straight back on its queue."""
        await client.push(Job(jid="abc123", jobtype="Failer"))
        await client.fetch("default")
        await client.fail(FailureReport(jid="abc123", message="oops", errortype="RuntimeError"))
        assert [job["jid"] for job in broker.retries] == ["abc123"]

        await client.requeue("retries", JobFilter.everything().with_jids("abc123"))

        assert broker.retries == []
        assert (await client.fetch("default")).jid == "abc123"

    @pytest.mark.asyncio
    async def test_discard_matching(self, client: ProtocolClient, broker: FakeBroker):
        """Test a payload pattern selects jobs to delete."""
        broker.dead.extend([retry_entry("a", "Sync", "uid:123"), retry_entry("b", "Sync", "uid:456")])

        await client.discard(MutateTarget.DEAD, JobFilter.matching("*uid:123*"))

        assert [job["jid"] for job in broker.dead] == ["b"]

    @pytest.mark.asyncio
    async def test_clear(self, client: ProtocolClient, broker: FakeBroker):
        """Test clearing empties only the target set."""
        broker.scheduled.append(retry_entry("a"))
        broker.dead.append(retry_entry("b"))

        await client.clear(MutateTarget.SCHEDULED)

        assert broker.scheduled == []
        assert len(broker.dead) == 1

    @pytest.mark.asyncio
    async def test_unknown_target(self, client: ProtocolClient, broker: FakeBroker):
        """Test an unknown set name is rejected before anything is sent."""
        with pytest.raises(ValueError):
            await client.clear("morgue")

        assert "MUTATE" not in broker.commands


class TestTracking:
    """Tests for job progress tracking."""

    @pytest.mark.asyncio
    async def test_set_then_get(self, client: ProtocolClient):
        """Test progress reported for a running job can be read back."""
        await client.push(Job(jid="job 1", jobtype="Sleep"))
        await client.fetch("default")

        await client.track_set("job 1", percent=50, description="halfway")
        track = await client.track_get("job 1")

        assert track.jid == "job 1"
        assert track.percent == 50
        assert track.description == "halfway"
        assert track.state == "working"

    @pytest.mark.asyncio
    async def test_get_untracked_job(self, client: ProtocolClient):
        """Test a job without progress reports."""
        track = await client.track_get("abc123")

        assert track.state == "unknown"
        assert track.percent is None

    @pytest.mark.asyncio
    async def test_set_requires_jid(self, client: ProtocolClient, broker: FakeBroker):
        """Test an empty jid is rejected locally."""
        with pytest.raises(ValueError):
            await client.track_set("", percent=10)

        assert "TRACK" not in broker.commands
