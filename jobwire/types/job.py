"""
Job-related type definitions.
"""

import base64
import secrets
import traceback
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from jobwire.constants import DEFAULT_QUEUE, RETRY_POLICY_DEFAULT, UniqueUntil


def random_jid() -> str:
    """Generate a random, URL-safe job identifier."""
    return base64.urlsafe_b64encode(secrets.token_bytes(12)).rstrip(b"=").decode("ascii")


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


class Job(BaseModel):
    """
    A unit of work as it travels over the wire.

    Jobs are immutable: the helpers below return modified copies.
    Fields the broker adds that this model does not know about are kept
    so that a fetched job serializes back to what the broker sent.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    jid: str = Field(default_factory=random_jid, min_length=1)
    queue: str = DEFAULT_QUEUE
    jobtype: str = Field(min_length=1)
    args: list[Any] = Field(default_factory=list)
    at: str | None = None
    custom: dict[str, Any] | None = None
    retry: int | None = None

    # Broker bookkeeping
    created_at: str | None = None
    enqueued_at: str | None = None
    reserve_for: int | None = None

    @field_validator("at", mode="before")
    @classmethod
    def _normalize_at(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return _to_iso(value)
        return value

    @classmethod
    def create(
        cls,
        jobtype: str,
        *args: Any,
        queue: str = DEFAULT_QUEUE,
        retry: int | None = RETRY_POLICY_DEFAULT,
        at: datetime | str | None = None,
        custom: dict[str, Any] | None = None,
    ) -> "Job":
        """
        Build a new job with a random jid and a creation timestamp.

        Args:
            jobtype: Handler key for the job.
            *args: Positional arguments for the handler.
            queue: Target queue.
            retry: Retry budget.
            at: When the job should become visible.
            custom: Custom metadata.

        Returns:
            Job: The new job.
        """
        return cls(
            jobtype=jobtype,
            args=list(args),
            queue=queue,
            retry=retry,
            at=at,
            custom=custom,
            created_at=_utcnow_iso(),
        )

    def to_wire(self) -> bytes:
        """Serialize to a single-line JSON document."""
        return self.model_dump_json(exclude_none=True).encode("utf-8")

    @classmethod
    def from_wire(cls, data: bytes | str) -> "Job":
        """Deserialize a job sent by the broker."""
        return cls.model_validate_json(data)

    @property
    def scheduled_at(self) -> datetime | None:
        """Parsed value of `at`, if set."""
        if self.at is None:
            return None
        return datetime.fromisoformat(self.at.replace("Z", "+00:00"))

    def get_custom(self, name: str, default: Any = None) -> Any:
        """Get a custom metadata value."""
        if self.custom is None:
            return default
        return self.custom.get(name, default)

    def with_custom(self, **values: Any) -> "Job":
        """
        Return a copy with extra custom metadata.

        Names starting with "_" are reserved by the broker.
        """
        custom = dict(self.custom or {})
        custom.update(values)
        return self.model_copy(update={"custom": custom})

    def unique_for(self, seconds: int) -> "Job":
        """Keep the job unique for `seconds` or until processed."""
        return self.with_custom(unique_for=seconds)

    def unique_until(self, until: UniqueUntil | str) -> "Job":
        """Set the uniqueness deadline ("success" or "start")."""
        return self.with_custom(unique_until=str(UniqueUntil(until)))

    def expires_at(self, when: datetime) -> "Job":
        """Discard the job instead of running it after `when`."""
        return self.with_custom(expires_at=_to_iso(when))

    def expires_in(self, delta: timedelta) -> "Job":
        """Discard the job instead of running it after `delta` from now."""
        return self.expires_at(datetime.now(timezone.utc) + delta)


class FailureReport(BaseModel):
    """
    Failure details sent back to the broker with FAIL.
    """

    jid: str = Field(min_length=1)
    message: str
    errortype: str
    backtrace: list[str] = Field(default_factory=list)

    @classmethod
    def from_exception(cls, jid: str, exc: BaseException) -> "FailureReport":
        """
        Build a report from a caught exception.

        Args:
            jid: The failed job.
            exc: The exception raised while executing it.

        Returns:
            FailureReport: Message, error type name and formatted traceback.
        """
        lines = traceback.format_exception(type(exc), exc, exc.__traceback__)
        backtrace = [line.rstrip("\n") for chunk in lines for line in chunk.splitlines()]
        return cls(
            jid=jid,
            message=str(exc) or type(exc).__name__,
            errortype=type(exc).__name__,
            backtrace=backtrace,
        )

    def to_wire(self) -> bytes:
        """Serialize to a single-line JSON document."""
        return self.model_dump_json().encode("utf-8")


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    """

    job: Job
    worker_id: str

    @property
    def jid(self) -> str:
        return self.job.jid

    @property
    def args(self) -> list[Any]:
        return self.job.args

    @property
    def jobtype(self) -> str:
        return self.job.jobtype
