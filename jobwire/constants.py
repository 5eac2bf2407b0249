"""
Application constants.
Centralized location for all constant values used across the client runtime.
"""

from enum import StrEnum


class Command(StrEnum):
    """Command verbs understood by the broker."""

    HANDSHAKE = "HANDSHAKE"
    PUSH = "PUSH"
    PUSH_BULK = "PUSHB"
    FETCH = "FETCH"
    ACK = "ACK"
    FAIL = "FAIL"
    BEAT = "BEAT"
    INFO = "INFO"
    FLUSH = "FLUSH"
    QUEUE = "QUEUE"
    MUTATE = "MUTATE"
    TRACK = "TRACK"
    END = "END"


class BeatSignal(StrEnum):
    """
    Signals the broker can return in reply to a heartbeat.

    CONTINUE is what a plain OK reply means.
    """

    CONTINUE = "continue"
    QUIET = "quiet"
    TERMINATE = "terminate"


class HeartbeatState(StrEnum):
    """
    Worker process lifecycle as driven by heartbeat replies.

    State transitions:
    - RUNNING -> QUIET (quiet signal)
    - QUIET -> QUIET (repeated quiet signal)
    - RUNNING/QUIET -> TERMINATING (terminate signal, terminal)
    """

    RUNNING = "running"
    QUIET = "quiet"
    TERMINATING = "terminating"


class UniqueUntil(StrEnum):
    """How long a unique job stays unique."""

    SUCCESS = "success"
    START = "start"


class QueueAction(StrEnum):
    """Administrative queue operations."""

    PAUSE = "PAUSE"
    RESUME = "RESUME"
    REMOVE = "REMOVE"


class MutateTarget(StrEnum):
    """Persistent job sets the mutate commands operate on."""

    SCHEDULED = "scheduled"
    RETRIES = "retries"
    DEAD = "dead"


class MutateOp(StrEnum):
    """
    Mutate operations.

    KILL moves jobs to the dead set, REQUEUE puts them back on their queue,
    DISCARD deletes them and CLEAR empties the whole set.
    """

    KILL = "kill"
    REQUEUE = "requeue"
    DISCARD = "discard"
    CLEAR = "clear"


class TrackAction(StrEnum):
    """Job tracking subcommands."""

    GET = "GET"
    SET = "SET"


# Reply markers
REPLY_OK = "OK"
ALL_QUEUES = "*"

# Retry policies
RETRY_POLICY_DEFAULT = 25
RETRY_POLICY_EPHEMERAL = 0
RETRY_POLICY_DIRECT_TO_MORGUE = -1

# Default values
DEFAULT_QUEUE = "default"
DEFAULT_BROKER_PORT = 7419
DEFAULT_BROKER_URL = f"tcp://localhost:{DEFAULT_BROKER_PORT}"
DEFAULT_PAYLOAD_FORMAT = "json"
DEFAULT_TIMEOUT_SECONDS = 5.0
DEFAULT_HEARTBEAT_INTERVAL_SECONDS = 5.0
DEFAULT_POLL_INTERVAL_SECONDS = 1.0
MAX_LINE_BYTES = 1024 * 1024

# Metrics names
METRIC_COMMANDS = "broker_commands_total"
METRIC_JOBS_FETCHED = "jobs_fetched_total"
METRIC_JOBS_PROCESSED = "jobs_processed_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_HEARTBEAT_SIGNALS = "heartbeat_signals_total"
METRIC_POOL_CONNECTIONS = "pool_connections"

# Trace span names
SPAN_EXECUTE_JOB = "execute_job"
SPAN_PUSH_JOB = "push_job"
