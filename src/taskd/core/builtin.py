"""The builtin daemon task.

The monitoring daemon shares the task namespace under a reserved name so
that start/stop/restart/info work on it like on any task, while the
definition itself can never be added, edited or deleted.
"""

from __future__ import annotations

import shutil
import sys

from taskd.config import get_taskd_home
from taskd.errors import BuiltinTaskError
from taskd.models import RestartConfig, RestartPolicy, TaskConfig

DAEMON_TASK_NAME = "taskd"
DAEMON_FLAG = "--daemon"

_REJECTED_OPERATIONS = {
    "add": "task name conflicts with system reserved name",
    "edit": "builtin tasks are not editable",
    "delete": "builtin tasks cannot be deleted",
    "reload": "builtin tasks have no definition file",
}


def get_daemon_command() -> list[str]:
    """Command line that re-invokes taskd in daemon mode.

    Uses the installed `taskd` script if it is on PATH, otherwise runs the
    package with the current interpreter.
    """
    taskd_path = shutil.which("taskd")
    if taskd_path:
        return [taskd_path, DAEMON_FLAG]
    return [sys.executable, "-m", "taskd", DAEMON_FLAG]


class BuiltinTaskHandler:
    """Knows which names are reserved and what is allowed on them."""

    def __init__(self, names: frozenset[str] = frozenset({DAEMON_TASK_NAME})):
        self.names = names

    def is_builtin(self, name: str) -> bool:
        return name in self.names

    def get_builtin_config(self, name: str) -> TaskConfig | None:
        """Synthetic definition of a builtin task."""
        if name != DAEMON_TASK_NAME:
            return None

        command = get_daemon_command()
        return TaskConfig(
            name=DAEMON_TASK_NAME,
            display_name="taskd daemon",
            description="Background monitor that restarts auto-start tasks",
            executable=command[0],
            args=command[1:],
            workdir=str(get_taskd_home()),
            inherit_env=True,
            auto_start=False,
            max_retry_num=0,
            restart=RestartConfig(policy=RestartPolicy.NEVER),
        )

    def validate_operation(self, operation: str, name: str) -> None:
        """Raise BuiltinTaskError if the operation is not allowed on name.

        Args:
            operation: One of add, edit, delete, reload, start, stop, restart, info
            name: Task name
        """
        if not self.is_builtin(name):
            return
        reason = _REJECTED_OPERATIONS.get(operation)
        if reason is not None:
            raise BuiltinTaskError(operation, name, reason)
