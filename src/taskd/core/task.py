"""Task process wrapper."""

from __future__ import annotations

import os
import shlex
import signal
import subprocess
import threading
from datetime import datetime
from typing import Callable

import psutil
from loguru import logger

from taskd.core.io import TaskIO, create_task_io, resolve_workdir
from taskd.core.process import ProcessChecker
from taskd.errors import AlreadyRunningError, NotRunningError, SpawnError, TaskdError
from taskd.models import TaskConfig, TaskInfo, TaskRuntimeRecord, TaskStatus

TERMINATED_BY_USER = "Process terminated by user"
EXIT_STATUS_UNAVAILABLE = "exit status unavailable"

# (name, pid, exit_code)
ExitCallback = Callable[[str, int, int], None]


def describe_returncode(returncode: int | None) -> tuple[int, str]:
    """Map a raw return code to (exit_code, error message).

    Signal deaths are reported as -1 with the signal name.
    """
    if returncode is None:
        return 0, EXIT_STATUS_UNAVAILABLE
    if returncode < 0:
        try:
            sig_name = signal.Signals(-returncode).name
        except ValueError:
            sig_name = f"signal {-returncode}"
        return -1, f"terminated by {sig_name}"
    if returncode > 0:
        return returncode, f"exit status {returncode}"
    return 0, ""


class ProcessHandle:
    """Handle to a process spawned by this instance."""

    def __init__(self, name: str, process: subprocess.Popen[bytes], task_io: TaskIO):
        self.name = name
        self.process = process
        self.task_io = task_io
        self.started_at = datetime.now()

    @property
    def pid(self) -> int:
        """Get the process ID."""
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        """Get the return code if process has exited."""
        return self.process.returncode

    def is_running(self) -> bool:
        """Check if the process is still running."""
        return self.process.poll() is None

    def terminate(self) -> None:
        """Send SIGTERM to the process."""
        if self.is_running():
            self.process.terminate()

    def kill(self) -> None:
        """Send SIGKILL to the process."""
        if self.is_running():
            self.process.kill()

    def wait(self, timeout: float | None = None) -> int | None:
        """Wait for process to finish."""
        return self.process.wait(timeout=timeout)

    def close_files(self) -> None:
        """Close stdio handles."""
        self.task_io.close()


class AdoptedProcessHandle:
    """Handle to a process recorded by another taskd invocation.

    Uses psutil since there is no Popen object for it.
    """

    def __init__(self, name: str, pid: int, started_at: datetime | None = None):
        self.name = name
        self._pid = pid
        self.started_at = started_at or datetime.now()
        self._process: psutil.Process | None = None
        self._returncode: int | None = None

        try:
            self._process = psutil.Process(pid)
        except psutil.NoSuchProcess:
            self._process = None

    @property
    def pid(self) -> int:
        """Get the process ID."""
        return self._pid

    @property
    def returncode(self) -> int | None:
        return self._returncode

    def is_running(self) -> bool:
        """Check if the process is still running (zombies count as dead)."""
        if not self._process:
            return False
        try:
            return self._process.is_running() and self._process.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False

    def terminate(self) -> None:
        """Send SIGTERM to the process."""
        if self._process and self.is_running():
            try:
                self._process.terminate()
            except psutil.NoSuchProcess:
                pass

    def kill(self) -> None:
        """Send SIGKILL to the process."""
        if self._process and self.is_running():
            try:
                self._process.kill()
            except psutil.NoSuchProcess:
                pass

    def wait(self, timeout: float | None = None) -> int | None:
        """Wait for process to finish.

        psutil only knows the exit code of its own children; for anything
        else this returns None.
        """
        if not self._process:
            return None
        try:
            self._returncode = self._process.wait(timeout=timeout)
        except psutil.NoSuchProcess:
            self._returncode = None
        except psutil.TimeoutExpired:
            raise subprocess.TimeoutExpired(cmd=str(self._pid), timeout=timeout or 0)
        return self._returncode

    def close_files(self) -> None:
        """Nothing to close for adopted processes."""
        pass


class Task:
    """One configured command and the OS process currently running it.

    The process handle only lives in the OS process that spawned (or
    adopted) it. A background reaper thread waits for the exit, updates the
    status and reports through the exit callback.
    """

    def __init__(
        self,
        config: TaskConfig,
        on_exit: ExitCallback | None = None,
        checker: ProcessChecker | None = None,
    ):
        self.config = config
        self._on_exit = on_exit
        self._checker = checker or ProcessChecker()
        self._lock = threading.RLock()

        self._handle: ProcessHandle | AdoptedProcessHandle | None = None
        self._status = TaskStatus.STOPPED
        self._start_time: datetime | None = None
        self._end_time: datetime | None = None
        self._exit_code = 0
        self._last_error = ""
        # Bumped on every start/stop so superseded reapers stay quiet
        self._generation = 0
        self._closed = False

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def status(self) -> TaskStatus:
        with self._lock:
            if self._status == TaskStatus.RUNNING and not self._is_running_locked():
                return TaskStatus.STOPPED
            return self._status

    @property
    def pid(self) -> int:
        with self._lock:
            return self._handle.pid if self._is_running_locked() else 0

    @property
    def exit_code(self) -> int:
        return self._exit_code

    @property
    def last_error(self) -> str:
        return self._last_error

    @property
    def start_time(self) -> datetime | None:
        return self._start_time

    @property
    def end_time(self) -> datetime | None:
        return self._end_time

    def is_running(self) -> bool:
        """Check status and that the process is actually alive."""
        with self._lock:
            return self._is_running_locked()

    def owns_pid(self, pid: int) -> bool:
        """Whether pid is a live process spawned by this instance."""
        with self._lock:
            return (
                isinstance(self._handle, ProcessHandle)
                and self._handle.pid == pid
                and self._is_running_locked()
            )

    def _is_running_locked(self) -> bool:
        return (
            self._status == TaskStatus.RUNNING
            and self._handle is not None
            and self._handle.is_running()
        )

    # Command resolution

    def build_command(self) -> list[str]:
        """Executable plus arguments; without args the executable is split."""
        if self.config.args:
            return [self.config.executable, *self.config.args]
        return shlex.split(self.config.executable)

    def build_env(self) -> dict[str, str]:
        """Parent environment (if inherited) overlaid with explicit entries."""
        env = dict(os.environ) if self.config.inherit_env else {}
        for entry in self.config.env:
            key, _, value = entry.partition("=")
            env[key] = value
        return env

    # Lifecycle

    def start(self) -> int:
        """Spawn the process.

        Returns:
            The new process id

        Raises:
            AlreadyRunningError: If the task is already running
            SpawnError: If the process could not be started
        """
        with self._lock:
            if self._is_running_locked():
                raise AlreadyRunningError(self.name, self._handle.pid)

            command = self.build_command()
            workdir = resolve_workdir(self.config)

            try:
                task_io = create_task_io(self.config)
            except OSError as e:
                self._mark_failed(f"failed to set up stdio: {e}")
                raise SpawnError(self.name, self.config.executable, e) from e

            try:
                process = subprocess.Popen(
                    command,
                    cwd=str(workdir),
                    env=self.build_env(),
                    stdin=task_io.stdin or subprocess.DEVNULL,
                    stdout=task_io.stdout or subprocess.DEVNULL,
                    stderr=task_io.stderr or subprocess.DEVNULL,
                    start_new_session=True,  # Detach from the caller's process group
                )
            except (OSError, ValueError, subprocess.SubprocessError) as e:
                task_io.close()
                self._mark_failed(str(e))
                logger.error(f"Failed to start task '{self.name}': {e}")
                raise SpawnError(self.name, self.config.executable, e) from e

            handle = ProcessHandle(self.name, process, task_io)
            self._generation += 1
            self._handle = handle
            self._status = TaskStatus.RUNNING
            self._start_time = handle.started_at
            self._end_time = None
            self._exit_code = 0
            self._last_error = ""
            self._start_reaper(handle, self._generation)

            logger.info(f"Started task '{self.name}' (PID {process.pid})")
            return process.pid

    def stop(self) -> None:
        """Terminate the process: SIGTERM, then SIGKILL after the grace period.

        A process that already died counts as stopped.

        Raises:
            NotRunningError: If the task is not running
            TaskdError: If the process could not be signalled
        """
        with self._lock:
            handle = self._handle
            if self._status != TaskStatus.RUNNING or handle is None:
                raise NotRunningError(self.name)

            if not handle.is_running():
                exit_code, error = describe_returncode(handle.returncode)
                self._finish(exit_code, error)
                logger.info(f"Task '{self.name}' had already exited")
                return

            grace_period = self.config.stop_timeout
            try:
                handle.terminate()
                try:
                    handle.wait(timeout=grace_period)
                except subprocess.TimeoutExpired:
                    logger.warning(f"Task '{self.name}' did not stop gracefully, killing")
                    handle.kill()
                    try:
                        handle.wait(timeout=5)
                    except subprocess.TimeoutExpired:
                        logger.error(f"Task '{self.name}' (PID {handle.pid}) survived SIGKILL")
            except OSError as e:
                self._last_error = f"failed to terminate process: {e}"
                raise TaskdError(f"failed to stop task '{self.name}': {e}") from e

            self._finish(-1, TERMINATED_BY_USER)
            logger.info(f"Stopped task '{self.name}' (PID {handle.pid})")

    def _finish(self, exit_code: int, error: str) -> None:
        """Record a stop initiated here; the pending reaper stays silent."""
        self._generation += 1
        if self._handle is not None:
            self._handle.close_files()
        self._handle = None
        self._status = TaskStatus.STOPPED
        self._end_time = datetime.now()
        self._exit_code = exit_code
        self._last_error = error

    def _mark_failed(self, error: str) -> None:
        self._handle = None
        self._status = TaskStatus.FAILED
        self._end_time = datetime.now()
        self._exit_code = -1
        self._last_error = error

    # Reaping

    def _start_reaper(self, handle: ProcessHandle | AdoptedProcessHandle, generation: int) -> None:
        thread = threading.Thread(
            target=self._reap,
            args=(handle, generation),
            name=f"taskd-reaper-{self.name}",
            daemon=True,
        )
        thread.start()

    def _reap(self, handle: ProcessHandle | AdoptedProcessHandle, generation: int) -> None:
        try:
            returncode = handle.wait()
        except Exception as e:
            logger.error(f"Waiting for task '{self.name}' (PID {handle.pid}) failed: {e}")
            returncode = None
        exit_code, error = describe_returncode(returncode)

        with self._lock:
            handle.close_files()
            if generation != self._generation:
                return
            self._handle = None
            self._status = TaskStatus.STOPPED
            self._end_time = datetime.now()
            self._exit_code = exit_code
            self._last_error = error
            callback = None if self._closed else self._on_exit

        logger.info(f"Task '{self.name}' (PID {handle.pid}) exited with code {exit_code}")
        if callback is not None:
            try:
                callback(self.name, handle.pid, exit_code)
            except Exception:
                logger.exception(f"Exit callback for task '{self.name}' failed")

    # Runtime state

    def get_runtime_info(self) -> TaskRuntimeRecord | None:
        """Snapshot for the runtime document, only while running."""
        with self._lock:
            if not self._is_running_locked():
                return None
            return TaskRuntimeRecord(
                name=self.name,
                status=TaskStatus.RUNNING,
                pid=self._handle.pid,
                start_time=self._start_time,
            )

    def restore_runtime_state(self, record: TaskRuntimeRecord) -> bool:
        """Re-attach to a process recorded as running by another invocation.

        Returns:
            True if the task is now tracked as running
        """
        with self._lock:
            if self._is_running_locked():
                return True
            if not record.is_running:
                return False

            if not self._checker.check(record.pid, record.start_time).alive:
                logger.debug(f"Recorded PID {record.pid} of task '{self.name}' is gone")
                return False

            handle = AdoptedProcessHandle(self.name, record.pid, started_at=record.start_time)
            if not handle.is_running():
                return False

            self._generation += 1
            self._handle = handle
            self._status = TaskStatus.RUNNING
            self._start_time = handle.started_at
            self._end_time = None
            self._exit_code = record.exit_code
            self._last_error = ""
            self._start_reaper(handle, self._generation)

            logger.debug(f"Re-attached to task '{self.name}' (PID {record.pid})")
            return True

    def get_info(self) -> TaskInfo:
        with self._lock:
            running = self._is_running_locked()
            return TaskInfo(
                name=self.name,
                status=TaskStatus.RUNNING if running else self.status,
                pid=self._handle.pid if running else 0,
                start_time=self._start_time,
                executable=self.config.executable,
                exit_code=self._exit_code,
                last_error=self._last_error,
                auto_start=self.config.auto_start,
            )

    def close(self) -> None:
        """Stop reporting exits. Running processes are left alone."""
        with self._lock:
            self._closed = True
