"""
Error taxonomy for broker communication and job execution.

Only BrokerConnectionError (and its FramingError subclass) says anything
about the health of a connection. Everything else is local to the
operation that raised it.
"""


class JobwireError(Exception):
    """Base class for all client runtime errors."""


class BrokerConnectionError(JobwireError, ConnectionError):
    """
    Transport-level failure: refused, reset, timed out or EOF mid-frame.

    The connection that raised it is no longer usable and must be discarded.
    """


class FramingError(BrokerConnectionError):
    """A reply line was missing or malformed."""


class AuthError(JobwireError):
    """The broker rejected the handshake."""


class ProtocolError(JobwireError):
    """
    The broker returned an error for a well-formed request.

    Attributes:
        code: Leading upper-case token of the error reply, e.g. "ERR".
        message: Remainder of the error reply.
    """

    def __init__(self, message: str, code: str = "ERR"):
        super().__init__(f"{code} {message}" if message else code)
        self.code = code
        self.message = message


class HandlerError(JobwireError):
    """No handler is registered for a job type."""

    def __init__(self, jobtype: str):
        super().__init__(f"No handler registered for job type: {jobtype}")
        self.jobtype = jobtype


class PoolClosedError(JobwireError):
    """A connection was requested from a closed pool."""
