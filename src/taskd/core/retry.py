"""Restart policy for auto-start tasks."""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from loguru import logger

from taskd.models import RestartPolicy, TaskStatus

if TYPE_CHECKING:
    from taskd.models import TaskConfig, TaskRuntimeRecord


DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")

_UNIT_SECONDS = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str | int | float | None) -> float:
    """Parse a duration like "500ms", "5s", "1m30s" into seconds.

    Bare numbers are seconds. Empty values mean zero.

    Raises:
        ValueError: If the string is not a valid duration
    """
    if value is None or value == "":
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)

    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass

    total = 0.0
    pos = 0
    for match in DURATION_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()

    if pos == 0 or pos != len(text):
        raise ValueError(f"invalid duration '{value}'")
    return total


def get_restart_delay(config: "TaskConfig") -> float:
    """Restart delay of a task in seconds; invalid values count as zero."""
    try:
        return parse_duration(config.restart.delay)
    except ValueError as e:
        logger.warning(f"Task '{config.name}': {e}, ignoring restart delay")
        return 0.0


def retry_limit_reached(config: "TaskConfig", retry_num: int) -> bool:
    """True when a retry limit is set and has been used up."""
    return config.max_retry_num > 0 and retry_num >= config.max_retry_num


def is_restart_eligible(config: "TaskConfig", record: "TaskRuntimeRecord | None") -> bool:
    """Whether a dead task may be restarted automatically.

    auto_start, stopped, not stopped by the operator and retries left. A
    task with no record was never started and is not eligible. The restart
    policy can narrow this further: "never" disables restarts and
    "on-failure" requires a non-zero exit code.
    """
    if not config.auto_start:
        return False
    if config.restart.policy == RestartPolicy.NEVER:
        return False
    if record is None:
        return False

    if record.status == TaskStatus.RUNNING or record.stopped_by_taskd:
        return False
    if retry_limit_reached(config, record.retry_num):
        return False
    if config.restart.policy == RestartPolicy.ON_FAILURE and record.exit_code == 0:
        return False
    return True


def restart_due(
    config: "TaskConfig",
    record: "TaskRuntimeRecord | None",
    now: datetime | None = None,
) -> bool:
    """Whether the configured restart delay has elapsed since the exit."""
    if record is None or record.end_time is None:
        return True
    delay = get_restart_delay(config)
    if delay <= 0:
        return True
    now = now or datetime.now()
    return now - record.end_time >= timedelta(seconds=delay)


class RetryNotifier:
    """Emits the "retry limit reached" warning once per exhaustion.

    The notice re-arms when the task is no longer at its limit, i.e. after a
    manual start or restart reset the counter.
    """

    def __init__(self) -> None:
        self._notified: set[str] = set()

    def check(self, config: "TaskConfig", record: "TaskRuntimeRecord") -> bool:
        """Warn if the limit was reached and not yet reported.

        Returns:
            True if a warning was emitted
        """
        name = config.name
        if not config.auto_start or not retry_limit_reached(config, record.retry_num):
            self._notified.discard(name)
            return False
        if name in self._notified:
            return False

        self._notified.add(name)
        logger.warning(
            f"Task '{name}' reached its retry limit ({record.retry_num}/{config.max_retry_num}), "
            "not restarting until started manually"
        )
        return True

    def forget(self, name: str) -> None:
        self._notified.discard(name)
