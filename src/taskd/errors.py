"""Exception hierarchy for taskd."""

from __future__ import annotations


class TaskdError(Exception):
    """Base class for all taskd errors."""

    pass


class ConfigError(TaskdError):
    """Invalid or missing configuration."""

    pass


class BuiltinTaskError(ConfigError):
    """Operation not allowed on the builtin daemon task."""

    def __init__(self, operation: str, name: str, reason: str):
        self.operation = operation
        self.name = name
        super().__init__(f"cannot {operation} builtin task '{name}': {reason}")


class TaskNotFoundError(TaskdError):
    """No task with the given name is defined."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"task '{name}' not found")


class TaskExistsError(TaskdError):
    """A task with the given name is already defined."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"task '{name}' already exists")


class AlreadyRunningError(TaskdError):
    """The task (or daemon) is already running."""

    def __init__(self, name: str, pid: int | None = None):
        self.name = name
        self.pid = pid
        suffix = f" (PID {pid})" if pid else ""
        super().__init__(f"task '{name}' is already running{suffix}")


class NotRunningError(TaskdError):
    """The task (or daemon) is not running."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"task '{name}' is not running")


class SpawnError(TaskdError):
    """The OS process could not be started."""

    def __init__(self, name: str, executable: str, cause: BaseException | str):
        self.name = name
        self.executable = executable
        super().__init__(f"failed to start task '{name}' ({executable}): {cause}")


class DaemonError(TaskdError):
    """The monitoring daemon could not be started, stopped or validated."""

    pass
