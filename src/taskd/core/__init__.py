"""taskd core components."""

from taskd.core.daemon import DaemonManager
from taskd.core.manager import TaskManager
from taskd.core.monitor import TaskMonitor
from taskd.core.process import ProcessChecker
from taskd.core.state import StateStore
from taskd.core.task import Task

__all__ = [
    "DaemonManager",
    "ProcessChecker",
    "StateStore",
    "Task",
    "TaskManager",
    "TaskMonitor",
]
