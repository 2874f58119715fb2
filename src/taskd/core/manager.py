"""Task orchestration shared by command invocations and the daemon."""

from __future__ import annotations

import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from taskd.config import (
    delete_task_file,
    get_task_file_path,
    get_tasks_dir,
    load_task,
    load_tasks,
    save_task,
    validate_task_name,
)
from taskd.core.builtin import DAEMON_TASK_NAME, BuiltinTaskHandler
from taskd.core.daemon import DaemonManager
from taskd.core.io import get_task_io_info, resolve_workdir
from taskd.core.process import ProcessChecker
from taskd.core.retry import is_restart_eligible
from taskd.core.state import StateStore
from taskd.core.task import Task
from taskd.errors import (
    AlreadyRunningError,
    ConfigError,
    DaemonError,
    NotRunningError,
    SpawnError,
    TaskdError,
    TaskExistsError,
    TaskNotFoundError,
)
from taskd.models import (
    RuntimeState,
    TaskConfig,
    TaskdConfig,
    TaskDetailInfo,
    TaskInfo,
    TaskRuntimeRecord,
    TaskStatus,
)


class TaskManager:
    """Single entry point for task operations.

    One instance is built per OS process. In-memory Task objects only own
    processes spawned (or re-attached) by this process; the runtime document
    is reloaded on every call and is the source of truth for everything
    else.
    """

    def __init__(
        self,
        store: StateStore,
        tasks_dir: Path | None = None,
        daemon: DaemonManager | None = None,
        checker: ProcessChecker | None = None,
        config: TaskdConfig | None = None,
        builtin: BuiltinTaskHandler | None = None,
    ):
        """Initialize the manager and load task definitions.

        Args:
            store: Shared runtime state
            tasks_dir: Directory of task definition files
            daemon: Daemon controller; None inside the daemon itself
            checker: Liveness checker
            config: Global configuration
            builtin: Builtin task handler
        """
        self.store = store
        self.tasks_dir = tasks_dir or get_tasks_dir()
        self.daemon = daemon
        self.checker = checker or ProcessChecker()
        self.config = config or TaskdConfig()
        self.builtin = builtin or BuiltinTaskHandler()

        self._lock = threading.RLock()
        self._tasks: dict[str, Task] = {}
        self._load()

    # Loading

    def _load(self) -> None:
        configs = load_tasks(self.tasks_dir)
        records = self.store.all_records()

        with self._lock:
            for name, config in configs.items():
                if self.builtin.is_builtin(name):
                    logger.warning(f"Ignoring task file for reserved name '{name}'")
                    continue
                self._tasks[name] = self._create_task(config, records.get(name))

    def _create_task(self, config: TaskConfig, record: TaskRuntimeRecord | None) -> Task:
        task = Task(config, on_exit=self._on_task_exit, checker=self.checker)
        if record is not None and record.is_running:
            task.restore_runtime_state(record)
        return task

    def sync_definitions(self) -> int:
        """Pick up task files added, changed or deleted by other processes.

        Returns:
            Number of tasks added, changed or dropped
        """
        configs = {
            name: config
            for name, config in load_tasks(self.tasks_dir).items()
            if not self.builtin.is_builtin(name)
        }
        changes = 0

        with self._lock:
            for name in list(self._tasks):
                if name not in configs:
                    self._tasks.pop(name).close()
                    logger.info(f"Task '{name}' was removed")
                    changes += 1

            records = self.store.all_records()
            for name, config in configs.items():
                task = self._tasks.get(name)
                if task is None:
                    self._tasks[name] = self._create_task(config, records.get(name))
                    logger.info(f"Task '{name}' was added")
                    changes += 1
                elif task.config != config:
                    task.config = config
                    logger.info(f"Task '{name}' definition changed")
                    changes += 1

        return changes

    # Lookup

    def _get_task(self, name: str) -> Task:
        task = self._tasks.get(name)
        if task is None:
            raise TaskNotFoundError(name)
        return task

    def has_task(self, name: str) -> bool:
        return self.builtin.is_builtin(name) or name in self._tasks

    def get_config(self, name: str) -> TaskConfig:
        """Definition of a task, synthetic for builtin tasks."""
        if self.builtin.is_builtin(name):
            return self.builtin.get_builtin_config(name)
        return self._get_task(name).config

    def get_configs(self) -> dict[str, TaskConfig]:
        with self._lock:
            return {name: task.config for name, task in self._tasks.items()}

    def owns_process(self, name: str, pid: int) -> bool:
        """Whether this process spawned pid for the task and is reaping it."""
        task = self._tasks.get(name)
        return task is not None and task.owns_pid(pid)

    def _require_daemon(self) -> DaemonManager:
        if self.daemon is None:
            raise DaemonError("daemon control is not available in this process")
        return self.daemon

    # Definitions

    def add_task(self, name: str, config: TaskConfig) -> TaskConfig:
        """Create a task definition.

        Raises:
            BuiltinTaskError: If name is reserved
            ConfigError: If the name is invalid or the task limit is reached
            TaskExistsError: If the task already exists
        """
        self.builtin.validate_operation("add", name)
        validate_task_name(name)
        config = config.model_copy(update={"name": name})

        with self._lock:
            if name in self._tasks or get_task_file_path(name, self.tasks_dir).exists():
                raise TaskExistsError(name)
            if len(self._tasks) >= self.config.max_tasks:
                raise ConfigError(f"task limit reached ({self.config.max_tasks})")

            save_task(config, self.tasks_dir)
            self._tasks[name] = self._create_task(config, self.store.get(name))

        logger.info(f"Added task '{name}'")
        return config

    def edit_task(self, name: str, changes: dict[str, Any]) -> TaskConfig:
        """Apply field changes to a task definition.

        Nested sections (restart, log) are merged key by key. A running
        process keeps its old settings until the next start.
        """
        self.builtin.validate_operation("edit", name)

        with self._lock:
            task = self._get_task(name)
            data = task.config.model_dump()
            for key, value in changes.items():
                if key == "name":
                    continue
                if isinstance(value, dict) and isinstance(data.get(key), dict):
                    data[key] = {**data[key], **value}
                else:
                    data[key] = value

            try:
                config = TaskConfig.model_validate(data)
            except ValidationError as e:
                raise ConfigError(f"invalid changes for task '{name}': {e}") from e

            save_task(config, self.tasks_dir)
            task.config = config

        logger.info(f"Updated task '{name}'")
        return config

    def remove_task(self, name: str) -> None:
        """Stop a task if running and delete its definition and record."""
        self.builtin.validate_operation("delete", name)

        with self._lock:
            task = self._get_task(name)
            self._attach_if_recorded(task)
            if task.is_running():
                task.stop()

            delete_task_file(name, self.tasks_dir)
            self.store.remove_task(name)
            self._tasks.pop(name, None)
            task.close()

        logger.info(f"Removed task '{name}'")

    def reload_task(self, name: str) -> TaskConfig:
        """Re-read one task definition from disk."""
        self.builtin.validate_operation("reload", name)
        config = load_task(name, self.tasks_dir)

        with self._lock:
            task = self._tasks.get(name)
            if task is None:
                self._tasks[name] = self._create_task(config, self.store.get(name))
            else:
                task.config = config

        logger.debug(f"Reloaded task '{name}'")
        return config

    # Process control

    def _attach_if_recorded(self, task: Task) -> None:
        """Adopt a process another invocation recorded after we loaded."""
        if task.is_running():
            return
        record = self.store.get(task.name)
        if record is not None and record.is_running:
            task.restore_runtime_state(record)

    def start_task(self, name: str, *, retry_num: int = 0) -> int:
        """Start a task and record it as running.

        Args:
            name: Task name
            retry_num: Retry count to record; manual starts reset it to 0

        Returns:
            PID of the started process

        Raises:
            AlreadyRunningError: If the task is already running
            SpawnError: If the process could not be started
        """
        if self.builtin.is_builtin(name):
            return self._require_daemon().start_daemon()

        with self._lock:
            task = self._get_task(name)
            self._attach_if_recorded(task)

            try:
                pid = task.start()
            except SpawnError:
                self.store.update_task(
                    TaskRuntimeRecord(
                        name=name,
                        status=TaskStatus.FAILED,
                        pid=0,
                        start_time=datetime.now(),
                        end_time=datetime.now(),
                        exit_code=-1,
                        retry_num=retry_num,
                    )
                )
                raise

            record = task.get_runtime_info()
            if record is None:
                # Exited before we could record it
                record = TaskRuntimeRecord(
                    name=name,
                    status=TaskStatus.STOPPED,
                    start_time=task.start_time,
                    end_time=task.end_time,
                    exit_code=task.exit_code,
                )
            record.retry_num = retry_num
            record.stopped_by_taskd = False
            self.store.update_task(record)

        self.ensure_daemon_if_needed()
        return pid

    def stop_task(self, name: str) -> None:
        """Stop a task and mark it stopped by the operator.

        The stopped record is written even when stopping fails, then the
        error is raised.

        Raises:
            NotRunningError: If the task was not running at all
        """
        if self.builtin.is_builtin(name):
            self._require_daemon().stop_daemon()
            return

        error: TaskdError | None = None
        stopped = False
        with self._lock:
            task = self._get_task(name)
            previous = self.store.get(name)
            self._attach_if_recorded(task)

            try:
                task.stop()
                stopped = True
            except NotRunningError as e:
                # A stale running record means it already died
                if previous is None or previous.status != TaskStatus.RUNNING:
                    error = e
            except TaskdError as e:
                logger.error(f"Failed to stop task '{name}': {e}")
                error = e

            def _apply(state: RuntimeState) -> None:
                current = state.tasks.get(name)
                # Without a live process the recorded exit code stands
                if stopped:
                    exit_code = task.exit_code
                else:
                    exit_code = current.exit_code if current else 0
                state.tasks[name] = TaskRuntimeRecord(
                    name=name,
                    status=TaskStatus.STOPPED,
                    pid=0,
                    start_time=current.start_time if current else None,
                    end_time=datetime.now(),
                    exit_code=exit_code,
                    stopped_by_taskd=True,
                    retry_num=current.retry_num if current else 0,
                )

            self.store.update(_apply)

        self.ensure_daemon_if_needed()
        if error is not None:
            raise error

    def restart_task(self, name: str) -> int:
        """Stop the task if running, then start it with a fresh retry count."""
        if self.builtin.is_builtin(name):
            daemon = self._require_daemon()
            if daemon.is_running():
                daemon.stop_daemon()
            return daemon.start_daemon()

        with self._lock:
            task = self._get_task(name)
            self._attach_if_recorded(task)
            if task.is_running():
                task.stop()
            return self.start_task(name, retry_num=0)

    def _on_task_exit(self, name: str, pid: int, exit_code: int) -> None:
        """Persist the exit of a process reaped in this OS process."""
        with self._lock:
            task = self._tasks.get(name)
            end_time = (task.end_time if task else None) or datetime.now()

            def _apply(state: RuntimeState) -> None:
                current = state.tasks.get(name)
                if current is not None and current.status == TaskStatus.RUNNING and current.pid != pid:
                    # Superseded by a newer process
                    return
                state.tasks[name] = TaskRuntimeRecord(
                    name=name,
                    status=TaskStatus.STOPPED,
                    pid=0,
                    start_time=current.start_time if current else None,
                    end_time=end_time,
                    exit_code=exit_code,
                    stopped_by_taskd=current.stopped_by_taskd if current else False,
                    retry_num=current.retry_num if current else 0,
                )

            try:
                self.store.update(_apply)
            except OSError as e:
                logger.error(f"Failed to record exit of task '{name}': {e}")

    # Queries

    def _task_info(self, task: Task, record: TaskRuntimeRecord | None) -> TaskInfo:
        info = task.get_info()
        if record is not None:
            info.retry_num = record.retry_num

        if info.status == TaskStatus.RUNNING:
            return info

        if record is None:
            return info

        if record.is_running and self.checker.check(record.pid, record.start_time).alive:
            info.status = TaskStatus.RUNNING
            info.pid = record.pid
            info.start_time = record.start_time
            return info

        # Not running anywhere: trust the record for the last outcome
        info.status = TaskStatus.FAILED if record.status == TaskStatus.FAILED else TaskStatus.STOPPED
        info.pid = 0
        info.start_time = record.start_time
        info.exit_code = record.exit_code
        return info

    def _daemon_info(self) -> TaskInfo:
        if self.daemon is not None:
            return self.daemon.get_status()

        record = self.store.get(DAEMON_TASK_NAME)
        config = self.builtin.get_builtin_config(DAEMON_TASK_NAME)
        running = record is not None and record.is_running
        return TaskInfo(
            name=DAEMON_TASK_NAME,
            status=TaskStatus.RUNNING if running else TaskStatus.STOPPED,
            pid=record.pid if running else 0,
            start_time=record.start_time if record else None,
            executable=config.executable,
        )

    def get_status(self, name: str) -> TaskInfo:
        """Current status of one task, reconciled against real liveness."""
        if self.builtin.is_builtin(name):
            return self._daemon_info()
        task = self._get_task(name)
        return self._task_info(task, self.store.get(name))

    def list_tasks(self) -> list[TaskInfo]:
        """Status of all tasks, the daemon first."""
        self.ensure_daemon_if_needed()
        records = self.store.all_records()

        with self._lock:
            infos = [self._task_info(self._tasks[name], records.get(name)) for name in sorted(self._tasks)]
        return [self._daemon_info(), *infos]

    def get_task_detail(self, name: str) -> TaskDetailInfo:
        """Status plus configuration of one task."""
        self.ensure_daemon_if_needed()
        config = self.get_config(name)
        info = self.get_status(name)
        record = self.store.get(name)

        return TaskDetailInfo(
            **info.model_dump(),
            display_name=config.display_name,
            description=config.description,
            workdir=str(resolve_workdir(config)),
            args=list(config.args),
            env=list(config.env),
            inherit_env=config.inherit_env,
            max_retry_num=config.max_retry_num,
            stopped_by_taskd=record.stopped_by_taskd if record else False,
            io_info=get_task_io_info(config),
        )

    # Daemon

    def needs_daemon(self) -> bool:
        """A daemon is needed while any task runs or may be auto-restarted."""
        records = self.store.all_records()

        with self._lock:
            for name, task in self._tasks.items():
                record = records.get(name)
                if task.is_running():
                    return True
                if record is not None and record.is_running:
                    if self.checker.check(record.pid, record.start_time).alive:
                        return True
                    # Dead but recorded running: the monitor has to heal it
                    if task.config.auto_start and not record.stopped_by_taskd:
                        return True
                    continue
                if is_restart_eligible(task.config, record):
                    return True
        return False

    def ensure_daemon_if_needed(self) -> None:
        """Make sure a daemon runs when one is needed.

        Failures are logged and never propagate to the caller.
        """
        if self.daemon is None:
            return
        try:
            if self.needs_daemon() and self.daemon.ensure_running():
                logger.info("Started taskd daemon")
        except AlreadyRunningError:
            pass
        except Exception as e:
            logger.warning(f"Could not start taskd daemon: {e}")

    def close(self) -> None:
        """Stop reporting process exits; processes keep running."""
        with self._lock:
            for task in self._tasks.values():
                task.close()
