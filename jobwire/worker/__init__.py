"""
Worker module.
Runs the fetch/execute/report loop alongside the heartbeat and producer loops.
"""

from jobwire.worker.context import RuntimeContext, ShutdownToken
from jobwire.worker.handlers import HandlerRegistry, builtin_registry
from jobwire.worker.heartbeat import Heartbeat
from jobwire.worker.main import Worker, run_worker
from jobwire.worker.producer import Producer
from jobwire.worker.supervisor import TaskFailure, TaskSupervisor

__all__ = [
    "RuntimeContext",
    "ShutdownToken",
    "HandlerRegistry",
    "builtin_registry",
    "Heartbeat",
    "Worker",
    "run_worker",
    "Producer",
    "TaskFailure",
    "TaskSupervisor",
]
