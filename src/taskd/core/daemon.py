"""Lifecycle of the background monitoring daemon."""

from __future__ import annotations

import subprocess
import time
from datetime import datetime
from pathlib import Path

from loguru import logger

from taskd.config import get_logs_dir, get_taskd_home
from taskd.core.builtin import DAEMON_FLAG, DAEMON_TASK_NAME, get_daemon_command
from taskd.core.process import ProcessChecker
from taskd.core.state import StateStore
from taskd.errors import AlreadyRunningError, DaemonError, NotRunningError
from taskd.models import RuntimeState, TaskInfo, TaskRuntimeRecord, TaskStatus

DAEMON_LOG_NAME = "daemon.log"


class DaemonManager:
    """Starts, stops and validates the single daemon process.

    The daemon is tracked through its record in the runtime document under
    the builtin task name. A record only counts as running when the pid is
    alive and still looks like a taskd daemon.
    """

    def __init__(
        self,
        store: StateStore,
        checker: ProcessChecker | None = None,
        logs_dir: Path | None = None,
        startup_wait: float = 0.1,
        stop_timeout: float = 10.0,
        command: list[str] | None = None,
    ):
        """Initialize the daemon manager.

        Args:
            store: Shared runtime state
            checker: Liveness checker
            logs_dir: Directory for daemon.log
            startup_wait: Seconds to wait before checking the child survived
            stop_timeout: Grace period before the daemon is killed
            command: Override of the daemon command line
        """
        self.store = store
        self.checker = checker or ProcessChecker()
        self.logs_dir = logs_dir or get_logs_dir()
        self.startup_wait = startup_wait
        self.stop_timeout = stop_timeout
        self._command = command

    @property
    def command(self) -> list[str]:
        return self._command or get_daemon_command()

    def _is_valid(self, record: TaskRuntimeRecord | None) -> bool:
        if record is None or not record.is_running:
            return False
        return self.checker.check(record.pid, record.start_time, cmdline_marker=DAEMON_FLAG).alive

    def validate_daemon_state(self) -> TaskRuntimeRecord | None:
        """Return the daemon record if it is valid, healing it otherwise.

        A record that claims running but fails the liveness or identity
        check is rewritten as stopped.
        """
        record = self.store.get(DAEMON_TASK_NAME)
        if self._is_valid(record):
            return record

        if record is not None and record.status == TaskStatus.RUNNING:
            stale_pid = record.pid
            logger.warning(f"Daemon record points at PID {stale_pid}, which is not a taskd daemon")

            def _heal(state: RuntimeState) -> None:
                current = state.tasks.get(DAEMON_TASK_NAME)
                if current is None or current.pid != stale_pid:
                    return
                current.status = TaskStatus.STOPPED
                current.pid = 0
                current.end_time = datetime.now()

            self.store.update(_heal)
        return None

    def is_running(self) -> bool:
        return self.validate_daemon_state() is not None

    def get_status(self) -> TaskInfo:
        """Status of the daemon as a task listing entry."""
        record = self.validate_daemon_state()
        if record is None:
            stored = self.store.get(DAEMON_TASK_NAME)
            return TaskInfo(
                name=DAEMON_TASK_NAME,
                status=TaskStatus.STOPPED,
                start_time=stored.start_time if stored else None,
                executable=" ".join(self.command),
                exit_code=stored.exit_code if stored else 0,
            )
        return TaskInfo(
            name=DAEMON_TASK_NAME,
            status=TaskStatus.RUNNING,
            pid=record.pid,
            start_time=record.start_time,
            executable=" ".join(self.command),
        )

    def start_daemon(self) -> int:
        """Spawn the daemon detached from the caller.

        Returns:
            PID of the daemon

        Raises:
            AlreadyRunningError: If a valid daemon is already running
            DaemonError: If the daemon could not be started or recorded
        """
        existing = self.validate_daemon_state()
        if existing is not None:
            raise AlreadyRunningError(DAEMON_TASK_NAME, existing.pid)

        command = self.command
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.logs_dir / DAEMON_LOG_NAME
        started_at = datetime.now()

        try:
            with open(log_path, "ab") as log_file:
                process = subprocess.Popen(
                    command,
                    cwd=str(get_taskd_home()),
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as e:
            raise DaemonError(f"failed to start daemon ({' '.join(command)}): {e}") from e

        if self.startup_wait > 0:
            time.sleep(self.startup_wait)

        returncode = process.poll()
        if returncode is not None:
            raise DaemonError(f"daemon exited during startup with code {returncode}, see {log_path}")

        record = TaskRuntimeRecord(
            name=DAEMON_TASK_NAME,
            status=TaskStatus.RUNNING,
            pid=process.pid,
            start_time=started_at,
        )
        try:
            self.store.update_task(record)
        except Exception as e:
            # No daemon may run without a record pointing at it
            logger.error(f"Failed to record daemon PID {process.pid}, killing it: {e}")
            process.kill()
            raise DaemonError(f"failed to record daemon state: {e}") from e

        logger.info(f"Started daemon (PID {process.pid})")
        return process.pid

    def stop_daemon(self) -> None:
        """Stop the daemon and mark it stopped by the operator.

        Raises:
            NotRunningError: If no running daemon is recorded
            DaemonError: If the process survived termination
        """
        record = self.store.get(DAEMON_TASK_NAME)
        if record is None or not record.is_running:
            raise NotRunningError(DAEMON_TASK_NAME)

        stopped = True
        if self._is_valid(record):
            logger.info(f"Stopping daemon (PID {record.pid})")
            stopped = self.checker.terminate(record.pid, self.stop_timeout)
        else:
            logger.warning(f"Recorded daemon PID {record.pid} is gone or not ours, clearing record")

        self.store.update_task(
            TaskRuntimeRecord(
                name=DAEMON_TASK_NAME,
                status=TaskStatus.STOPPED,
                pid=0,
                start_time=record.start_time,
                end_time=datetime.now(),
                exit_code=-1,
                stopped_by_taskd=True,
            )
        )

        if not stopped:
            raise DaemonError(f"daemon (PID {record.pid}) did not terminate")

    def ensure_running(self) -> bool:
        """Start a daemon unless a valid one exists.

        Returns:
            True if this call started a new daemon

        Raises:
            DaemonError: If a needed daemon could not be started
        """
        if self.is_running():
            return False
        try:
            self.start_daemon()
            return True
        except AlreadyRunningError:
            # Another invocation won the race
            return False
