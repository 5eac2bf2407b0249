"""
Type definitions for the job queue client.
"""

from jobwire.types.admin import JobFilter, JobTrack, MutateOperation, TrackUpdate
from jobwire.types.job import (
    FailureReport,
    Job,
    JobContext,
    random_jid,
)

__all__ = [
    "Job",
    "FailureReport",
    "JobContext",
    "random_jid",
    "JobFilter",
    "JobTrack",
    "MutateOperation",
    "TrackUpdate",
]
