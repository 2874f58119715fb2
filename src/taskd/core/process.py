"""Process liveness and identity checks."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime

import psutil
from loguru import logger

# A recorded start time is taken right after spawn, so the real process
# creation time can only trail it by a little.
START_TIME_TOLERANCE = 2.0  # seconds


@dataclass
class ProcessStatus:
    """Result of probing a recorded pid."""

    pid: int
    exists: bool = False
    is_ours: bool = False  # Passes the identity heuristics
    executable_path: str | None = None

    @property
    def alive(self) -> bool:
        """The pid is live and plausibly the recorded process."""
        return self.exists and self.is_ours


class ProcessChecker:
    """Checks whether recorded pids still belong to taskd-managed processes.

    PID reuse is detected with a best-effort heuristic: a process created
    noticeably after the recorded start time cannot be the one we started.
    The daemon is additionally required to carry the daemon flag in its
    command line.
    """

    def __init__(self, tolerance: float = START_TIME_TOLERANCE):
        self.tolerance = tolerance

    def check(
        self,
        pid: int,
        started_at: datetime | None = None,
        cmdline_marker: str | None = None,
    ) -> ProcessStatus:
        """Probe a pid.

        Args:
            pid: The recorded process id
            started_at: Recorded start time, used to reject reused pids
            cmdline_marker: Argument the process command line must contain

        Returns:
            ProcessStatus describing what was found
        """
        status = ProcessStatus(pid=pid)
        if pid <= 0:
            return status

        try:
            process = psutil.Process(pid)
            if process.status() == psutil.STATUS_ZOMBIE:
                return status
            status.exists = True
            status.is_ours = True

            if started_at is not None:
                created = datetime.fromtimestamp(process.create_time())
                if (created - started_at).total_seconds() > self.tolerance:
                    logger.debug(
                        f"PID {pid} was created at {created}, after recorded start {started_at}; "
                        "treating as reused"
                    )
                    status.is_ours = False

            if cmdline_marker is not None and status.is_ours:
                try:
                    status.is_ours = cmdline_marker in process.cmdline()
                except psutil.AccessDenied:
                    status.is_ours = False

            try:
                status.executable_path = process.exe()
            except (psutil.AccessDenied, psutil.ZombieProcess, OSError):
                pass

        except psutil.NoSuchProcess:
            return ProcessStatus(pid=pid)
        except psutil.AccessDenied:
            # Exists but belongs to someone else
            status.exists = True
            status.is_ours = False

        return status

    def is_alive(self, pid: int, started_at: datetime | None = None) -> bool:
        return self.check(pid, started_at).alive

    @staticmethod
    def get_exit_code(pid: int) -> int:
        """Best-effort exit code of a dead process.

        Only processes that are children of the caller can be reaped;
        anything else reports 0.
        """
        try:
            waited_pid, status = os.waitpid(pid, os.WNOHANG)
        except ChildProcessError:
            return 0
        except OSError as e:
            logger.debug(f"waitpid({pid}) failed: {e}")
            return 0

        if waited_pid == 0:
            return 0
        if os.WIFEXITED(status):
            return os.WEXITSTATUS(status)
        return -1

    @staticmethod
    def terminate(pid: int, grace_period: float) -> bool:
        """Terminate a process: SIGTERM, then SIGKILL after the grace period.

        Returns:
            True if the process is gone afterwards
        """
        try:
            process = psutil.Process(pid)
            process.terminate()
        except psutil.NoSuchProcess:
            return True

        try:
            process.wait(timeout=grace_period)
            return True
        except psutil.TimeoutExpired:
            logger.warning(f"PID {pid} did not stop gracefully, killing")

        try:
            process.kill()
            process.wait(timeout=5)
        except psutil.NoSuchProcess:
            pass
        except psutil.TimeoutExpired:
            logger.error(f"PID {pid} survived SIGKILL")
            return False
        return True
