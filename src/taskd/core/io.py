"""Stdio wiring for task processes."""

from __future__ import annotations

import os
from pathlib import Path
from typing import IO

from loguru import logger

from taskd.models import TaskConfig, TaskIOInfo


def resolve_workdir(config: TaskConfig) -> Path:
    """Working directory of a task, the user's home when unset."""
    if config.workdir:
        return Path(config.workdir).expanduser()
    return Path.home()


def resolve_io_path(path: str, workdir: Path) -> Path:
    """Resolve a stdio path; relative paths are taken from the workdir."""
    p = Path(path).expanduser()
    if not p.is_absolute():
        p = workdir / p
    return Path(os.path.normpath(p))


class TaskIO:
    """Open stdio handles for one process run."""

    def __init__(self) -> None:
        self.stdin: IO[bytes] | None = None
        self.stdout: IO[bytes] | None = None
        self.stderr: IO[bytes] | None = None
        self._files: list[IO[bytes]] = []

    def _track(self, f: IO[bytes]) -> IO[bytes]:
        self._files.append(f)
        return f

    def close(self) -> None:
        """Release every handle. Safe to call more than once."""
        files, self._files = self._files, []
        for f in files:
            try:
                f.close()
            except OSError as e:
                logger.debug(f"Error closing {getattr(f, 'name', f)}: {e}")


def create_task_io(config: TaskConfig) -> TaskIO:
    """Open the configured stdin/stdout/stderr files.

    Output files are opened for append and their directories created. When
    stdout and stderr resolve to the same path they share one handle.

    Raises:
        OSError: If a file cannot be opened; handles opened so far are closed
    """
    workdir = resolve_workdir(config)
    task_io = TaskIO()

    try:
        if config.stdin:
            stdin_path = resolve_io_path(config.stdin, workdir)
            task_io.stdin = task_io._track(open(stdin_path, "rb"))

        stdout_path = None
        if config.stdout:
            stdout_path = resolve_io_path(config.stdout, workdir)
            stdout_path.parent.mkdir(parents=True, exist_ok=True)
            task_io.stdout = task_io._track(open(stdout_path, "ab"))

        if config.stderr:
            stderr_path = resolve_io_path(config.stderr, workdir)
            if stderr_path == stdout_path:
                task_io.stderr = task_io.stdout
            else:
                stderr_path.parent.mkdir(parents=True, exist_ok=True)
                task_io.stderr = task_io._track(open(stderr_path, "ab"))
    except OSError:
        task_io.close()
        raise

    return task_io


def get_task_io_info(config: TaskConfig) -> TaskIOInfo:
    """Describe where a task's stdio goes, without opening anything."""
    workdir = resolve_workdir(config)
    info = TaskIOInfo()

    if config.stdin:
        info.stdin_path = str(resolve_io_path(config.stdin, workdir))
    if config.stdout:
        info.stdout_path = str(resolve_io_path(config.stdout, workdir))
    if config.stderr:
        info.stderr_path = str(resolve_io_path(config.stderr, workdir))

    info.same_output = info.stdout_path is not None and info.stdout_path == info.stderr_path
    return info
