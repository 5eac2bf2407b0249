"""
jobwire

Client runtime for a line-protocol job broker: a protocol client with a
bounded connection pool, plus a worker process that fetches jobs from
prioritized queues, runs them, reports the outcome and follows the
broker's heartbeat instructions.
"""

__version__ = "1.0.0"
