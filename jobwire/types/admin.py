"""
Payloads for the maintenance commands: mutating the broker's job sets and
job progress tracking.
"""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from jobwire.constants import MutateOp, MutateTarget


class JobFilter(BaseModel):
    """
    Selects jobs inside a persistent set.

    Criteria combine: `JobFilter.of_type("Sync").with_jids("a", "b")`
    matches Sync jobs with either jid. `regexp` is a glob style pattern
    matched against the whole job payload, so "*uid:123*" matches any job
    whose JSON contains that text.
    """

    model_config = ConfigDict(frozen=True)

    jids: list[str] | None = None
    regexp: str | None = None
    jobtype: str | None = None

    @classmethod
    def everything(cls) -> "JobFilter":
        """Match every job in the set."""
        return cls(regexp="*")

    @classmethod
    def of_type(cls, jobtype: str) -> "JobFilter":
        return cls(jobtype=jobtype)

    @classmethod
    def matching(cls, pattern: str) -> "JobFilter":
        return cls(regexp=pattern)

    def with_jids(self, *jids: str) -> "JobFilter":
        """Return a copy restricted to the given jids."""
        return self.model_copy(update={"jids": list(jids)})

    def with_pattern(self, pattern: str) -> "JobFilter":
        """Return a copy restricted to jobs matching `pattern`."""
        return self.model_copy(update={"regexp": pattern})

    def with_type(self, jobtype: str) -> "JobFilter":
        """Return a copy restricted to `jobtype`."""
        return self.model_copy(update={"jobtype": jobtype})


class MutateOperation(BaseModel):
    """The MUTATE payload."""

    cmd: MutateOp
    target: MutateTarget
    filter: JobFilter | None = None

    def to_wire(self) -> bytes:
        return self.model_dump_json(exclude_none=True).encode("utf-8")


class JobTrack(BaseModel):
    """Progress of a tracked job as reported by the broker."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    jid: str
    percent: int | None = None
    description: str | None = Field(default=None, alias="desc")
    state: str = "unknown"
    updated_at: str | None = None


class TrackUpdate(BaseModel):
    """The TRACK SET payload."""

    model_config = ConfigDict(populate_by_name=True)

    jid: str = Field(min_length=1)
    percent: int | None = Field(default=None, ge=0, le=100)
    description: str | None = Field(default=None, alias="desc")
    reserve_until: str | None = None

    @classmethod
    def create(
        cls,
        jid: str,
        percent: int | None = None,
        description: str | None = None,
        reserve_until: datetime | None = None,
    ) -> "TrackUpdate":
        """
        Build an update, dropping a reservation extension that is already past.

        Args:
            jid: The tracked job.
            percent: Completion, 0 to 100.
            description: Short progress text.
            reserve_until: Extend the job's reservation until this time.

        Returns:
            TrackUpdate: The update payload.
        """
        until = None
        if reserve_until is not None:
            if reserve_until.tzinfo is None:
                reserve_until = reserve_until.replace(tzinfo=timezone.utc)
            if reserve_until > datetime.now(timezone.utc):
                until = reserve_until.isoformat()

        return cls(jid=jid, percent=percent, description=description, reserve_until=until)

    def to_wire(self) -> bytes:
        return self.model_dump_json(exclude_none=True, by_alias=True).encode("utf-8")
