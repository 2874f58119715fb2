"""Pydantic models for taskd configuration and state."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class TaskStatus(str, Enum):
    """Current status of a task."""

    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


class RestartPolicy(str, Enum):
    """When a dead auto-start task may be brought back."""

    ALWAYS = "always"
    ON_FAILURE = "on-failure"  # Only after a non-zero exit code
    NEVER = "never"


class RestartConfig(BaseModel):
    """Restart policy configuration."""

    policy: RestartPolicy = RestartPolicy.ALWAYS
    max_retry: int = 0  # Kept for file compatibility, max_retry_num wins
    delay: str = "0s"  # e.g. "500ms", "5s", "1m"


class LogConfig(BaseModel):
    """Log section of a task file (parsed, not acted on)."""

    max_size: int = 100  # MB
    max_backups: int = 3
    max_age: int = 28  # days
    compress: bool = False


class TaskConfig(BaseModel):
    """Configuration for a single task."""

    name: str = ""
    executable: str

    display_name: str = ""
    description: str = ""
    args: list[str] = Field(default_factory=list)
    workdir: str | None = None
    env: list[str] = Field(default_factory=list)  # KEY=VALUE
    inherit_env: bool = True

    # Stdio redirection, relative paths resolve against workdir
    stdin: str | None = None
    stdout: str | None = None
    stderr: str | None = None

    auto_start: bool = False
    max_retry_num: int = 3  # 0 = unlimited
    restart: RestartConfig = Field(default_factory=RestartConfig)
    log: LogConfig = Field(default_factory=LogConfig)

    stop_timeout: float = 3.0  # seconds between SIGTERM and SIGKILL

    @field_validator("executable")
    @classmethod
    def validate_executable(cls, v: str) -> str:
        """Reject blank executables."""
        if not v.strip():
            raise ValueError("executable must not be empty")
        return v

    @field_validator("env")
    @classmethod
    def validate_env(cls, v: list[str]) -> list[str]:
        """Every entry must look like KEY=VALUE."""
        for entry in v:
            key, sep, _ = entry.partition("=")
            if not sep or not key:
                raise ValueError(f"invalid env entry '{entry}', expected KEY=VALUE")
        return v


class TaskRuntimeRecord(BaseModel):
    """Persisted runtime state of one task (or the daemon)."""

    name: str
    status: TaskStatus = TaskStatus.STOPPED
    pid: int = 0
    start_time: datetime | None = None
    end_time: datetime | None = None
    exit_code: int = 0
    stopped_by_taskd: bool = False  # Explicit operator stop, blocks auto-restart
    retry_num: int = 0

    @property
    def is_running(self) -> bool:
        """Whether the record claims a live process."""
        return self.status == TaskStatus.RUNNING and self.pid > 0


class RuntimeState(BaseModel):
    """The shared runtime.json document."""

    tasks: dict[str, TaskRuntimeRecord] = Field(default_factory=dict)


class TaskIOInfo(BaseModel):
    """Resolved stdio paths of a task."""

    stdin_path: str | None = None
    stdout_path: str | None = None
    stderr_path: str | None = None
    same_output: bool = False


class TaskInfo(BaseModel):
    """Point-in-time view of a task for listings."""

    name: str
    status: TaskStatus = TaskStatus.STOPPED
    pid: int = 0
    start_time: datetime | None = None
    executable: str = ""
    exit_code: int = 0
    last_error: str = ""
    auto_start: bool = False
    retry_num: int = 0


class TaskDetailInfo(TaskInfo):
    """Status plus configuration details of a task."""

    display_name: str = ""
    description: str = ""
    workdir: str = ""
    args: list[str] = Field(default_factory=list)
    env: list[str] = Field(default_factory=list)
    inherit_env: bool = True
    max_retry_num: int = 3
    stopped_by_taskd: bool = False
    io_info: TaskIOInfo = Field(default_factory=TaskIOInfo)


class TaskdConfig(BaseModel):
    """Main taskd configuration."""

    log_level: str = "INFO"
    log_file: str | None = None
    monitor_interval: float = 5.0  # seconds
    max_tasks: int = 100
    daemon_startup_wait: float = 0.1  # seconds
