"""Daemon-resident task monitor.

Runs one polling loop inside the daemon. Each tick reconciles records that
claim "running" against real process liveness and restarts auto-start
tasks according to their restart policy.
"""

from __future__ import annotations

import asyncio
import os
from datetime import datetime

from loguru import logger

from taskd.core.builtin import DAEMON_TASK_NAME
from taskd.core.manager import TaskManager
from taskd.core.process import ProcessChecker
from taskd.core.retry import RetryNotifier, is_restart_eligible, restart_due
from taskd.core.state import StateStore
from taskd.errors import AlreadyRunningError
from taskd.models import RuntimeState, TaskConfig, TaskRuntimeRecord, TaskStatus

DEFAULT_INTERVAL = 5.0  # seconds


class TaskMonitor:
    """Polls task liveness and performs automatic restarts."""

    def __init__(
        self,
        manager: TaskManager,
        store: StateStore,
        checker: ProcessChecker | None = None,
        interval: float = DEFAULT_INTERVAL,
        pid: int | None = None,
    ):
        """Initialize the monitor.

        Args:
            manager: Task manager of the daemon process
            store: Shared runtime state
            checker: Liveness checker
            interval: Seconds between ticks
            pid: PID recorded for the daemon (defaults to this process)
        """
        self.manager = manager
        self.store = store
        self.checker = checker or manager.checker
        self.interval = interval
        self.pid = pid or os.getpid()
        self._notifier = RetryNotifier()
        self._shutdown_event = asyncio.Event()
        self._running = False

    # Daemon record

    def register(self) -> None:
        """Record this process as the running daemon if it is not already."""
        pid = self.pid

        def _apply(state: RuntimeState) -> None:
            current = state.tasks.get(DAEMON_TASK_NAME)
            if current is not None and current.is_running and current.pid == pid:
                return
            state.tasks[DAEMON_TASK_NAME] = TaskRuntimeRecord(
                name=DAEMON_TASK_NAME,
                status=TaskStatus.RUNNING,
                pid=pid,
                start_time=datetime.now(),
            )

        self.store.update(_apply)
        logger.info(f"Daemon registered (PID {pid})")

    def unregister(self) -> None:
        """Mark the daemon stopped if the record still names this process."""
        pid = self.pid

        def _apply(state: RuntimeState) -> None:
            current = state.tasks.get(DAEMON_TASK_NAME)
            if current is None or current.pid != pid:
                return
            current.status = TaskStatus.STOPPED
            current.pid = 0
            current.end_time = datetime.now()

        self.store.update(_apply)

    # Loop

    async def run(self) -> None:
        """Run the monitor loop until shutdown() is called."""
        self._running = True
        self.register()
        logger.info(f"Task monitor started (interval {self.interval}s)")

        try:
            while not self._shutdown_event.is_set():
                self.check_tasks()

                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self.interval,
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            try:
                self.unregister()
            except OSError as e:
                logger.error(f"Failed to update daemon record on shutdown: {e}")
            self.manager.close()
            self._running = False
            logger.info("Task monitor stopped")

    def shutdown(self) -> None:
        """Signal the monitor to stop at the next tick boundary."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    @property
    def is_running(self) -> bool:
        return self._running

    # Tick

    def check_tasks(self) -> None:
        """One monitoring pass over all tasks.

        An error while handling one task is logged and does not affect the
        others.
        """
        try:
            self.manager.sync_definitions()
        except Exception:
            logger.exception("Failed to reload task definitions")

        configs = self.manager.get_configs()
        records = self.store.all_records()

        for name, record in records.items():
            config = configs.get(name)
            if name == DAEMON_TASK_NAME or config is None:
                continue
            try:
                self._check_task(config, record)
            except Exception:
                logger.exception(f"Error while monitoring task '{name}'")

    def _check_task(self, config: TaskConfig, record: TaskRuntimeRecord) -> None:
        name = config.name

        if record.status == TaskStatus.RUNNING:
            if record.pid > 0 and self.manager.owns_process(name, record.pid):
                # Reaped in this process; the exit callback records it
                return
            if record.pid > 0 and self.checker.check(record.pid, record.start_time).alive:
                return
            record = self._mark_dead(record)
            if record is None:
                return

        if record.status == TaskStatus.STOPPED and not record.stopped_by_taskd:
            if self._notifier.check(config, record):
                return

        if not is_restart_eligible(config, record):
            return
        if not restart_due(config, record):
            logger.debug(f"Task '{name}' restart delayed")
            return

        self._restart(name, record.retry_num + 1)

    def _mark_dead(self, record: TaskRuntimeRecord) -> TaskRuntimeRecord | None:
        """Record that a process recorded as running is gone.

        Returns:
            The updated record, or None if it changed underneath us
        """
        name = record.name
        dead_pid = record.pid
        exit_code = self.checker.get_exit_code(dead_pid) if dead_pid > 0 else 0
        updated: TaskRuntimeRecord | None = None

        def _apply(state: RuntimeState) -> None:
            nonlocal updated
            current = state.tasks.get(name)
            if current is None or current.status != TaskStatus.RUNNING or current.pid != dead_pid:
                return
            current.status = TaskStatus.STOPPED
            current.pid = 0
            current.end_time = datetime.now()
            current.exit_code = exit_code
            updated = current.model_copy()

        self.store.update(_apply)
        if updated is not None:
            logger.warning(f"Task '{name}' (PID {dead_pid}) is no longer running")
        return updated

    def _restart(self, name: str, retry_num: int) -> None:
        logger.info(f"Restarting task '{name}' (retry {retry_num})")
        try:
            pid = self.manager.start_task(name, retry_num=retry_num)
            logger.info(f"Task '{name}' restarted (PID {pid})")
        except AlreadyRunningError:
            logger.debug(f"Task '{name}' is already running, not restarting")
        except Exception as e:
            logger.error(f"Failed to restart task '{name}': {e}")
            previous = max(retry_num - 1, 0)

            def _apply(state: RuntimeState) -> None:
                current = state.tasks.get(name)
                state.tasks[name] = TaskRuntimeRecord(
                    name=name,
                    status=TaskStatus.STOPPED,
                    pid=0,
                    start_time=current.start_time if current else None,
                    end_time=datetime.now(),
                    exit_code=-1,
                    retry_num=previous,
                )

            self.store.update(_apply)
