"""Durable runtime state shared between taskd processes.

The runtime document (runtime.json) is the only channel through which the
daemon and short-lived command invocations see each other's task state.
There is no cross-process lock: every write goes to a temporary file that is
atomically renamed over the target, and the previous version is kept as
runtime.json.backup so a damaged primary can be recovered.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Mapping

from loguru import logger
from pydantic import ValidationError

from taskd.models import RuntimeState, TaskRuntimeRecord

BACKUP_SUFFIX = ".backup"
CORRUPTED_SUFFIX = ".corrupted"


class StateStore:
    """Atomic read-modify-write access to runtime.json.

    Every call reloads the document from disk; nothing is cached between
    calls, so a write from another process is always observed.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.backup_path = self.path.with_name(self.path.name + BACKUP_SUFFIX)
        self._lock = threading.RLock()

    # Reading

    def load(self) -> RuntimeState:
        """Load the runtime document, recovering from corruption.

        A missing file is an empty document. A damaged file is replaced by
        the backup when it is readable; otherwise the damaged file is
        quarantined and an empty document is returned.
        """
        with self._lock:
            if not self.path.exists():
                return RuntimeState()

            try:
                return self._read(self.path)
            except (OSError, ValueError, ValidationError) as e:
                logger.error(f"Runtime state at {self.path} is unreadable: {e}")

            state = self._recover_from_backup()
            if state is not None:
                return state

            self._quarantine()
            return RuntimeState()

    def get(self, name: str) -> TaskRuntimeRecord | None:
        """Get the record for one task."""
        return self.load().tasks.get(name)

    def all_records(self) -> dict[str, TaskRuntimeRecord]:
        return dict(self.load().tasks)

    # Writing

    def save(self, state: RuntimeState) -> None:
        """Write the whole document atomically, backing up the previous one."""
        with self._lock:
            self._backup_current()
            self._write_atomic(state)

    def update(self, fn: Callable[[RuntimeState], None]) -> RuntimeState:
        """Run a read-modify-write cycle.

        Args:
            fn: Callback that mutates the freshly loaded document in place

        Returns:
            The document as written
        """
        with self._lock:
            state = self.load()
            fn(state)
            self.save(state)
            return state

    def update_task(self, record: TaskRuntimeRecord) -> None:
        """Insert or replace one record."""

        def _apply(state: RuntimeState) -> None:
            state.tasks[record.name] = record

        self.update(_apply)

    def batch_update(self, updates: Mapping[str, TaskRuntimeRecord | None]) -> None:
        """Apply several record changes in a single write.

        A value of None removes that record.
        """

        def _apply(state: RuntimeState) -> None:
            for name, record in updates.items():
                if record is None:
                    state.tasks.pop(name, None)
                else:
                    state.tasks[name] = record

        self.update(_apply)

    def remove_task(self, name: str) -> bool:
        """Delete one record. Returns True if it existed."""
        removed = False

        def _apply(state: RuntimeState) -> None:
            nonlocal removed
            removed = state.tasks.pop(name, None) is not None

        self.update(_apply)
        return removed

    # Internals

    @staticmethod
    def _read(path: Path) -> RuntimeState:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        if data is None:
            return RuntimeState()
        return RuntimeState.model_validate(data)

    def _recover_from_backup(self) -> RuntimeState | None:
        if not self.backup_path.exists():
            return None

        try:
            state = self._read(self.backup_path)
        except (OSError, ValueError, ValidationError) as e:
            logger.error(f"Backup state at {self.backup_path} is unreadable too: {e}")
            return None

        logger.warning(f"Recovered runtime state from {self.backup_path}")
        try:
            # The damaged primary must not overwrite the good backup
            self._write_atomic(state)
        except OSError as e:
            logger.error(f"Failed to rewrite {self.path} from backup: {e}")
        return state

    def _quarantine(self) -> None:
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        target = self.path.with_name(f"{self.path.name}{CORRUPTED_SUFFIX}.{timestamp}")
        try:
            os.replace(self.path, target)
            logger.warning(f"Moved corrupted runtime state to {target}")
        except OSError as e:
            logger.error(f"Failed to quarantine corrupted state {self.path}: {e}")

    def _backup_current(self) -> None:
        if not self.path.exists():
            return

        tmp_name = None
        try:
            # Unique per writer, several processes back up the same file
            with tempfile.NamedTemporaryFile(
                dir=self.backup_path.parent,
                prefix=f".{self.backup_path.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
            shutil.copyfile(self.path, tmp_name)
            os.replace(tmp_name, self.backup_path)
        except OSError as e:
            logger.warning(f"Failed to back up runtime state: {e}")
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)

    def _write_atomic(self, state: RuntimeState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(state.model_dump(mode="json"), indent=2)

        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=self.path.parent,
            prefix=f".{self.path.name}.",
            suffix=".tmp",
            delete=False,
        ) as tmp:
            tmp_name = tmp.name
            try:
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            except BaseException:
                tmp.close()
                os.unlink(tmp_name)
                raise

        try:
            os.replace(tmp_name, self.path)
        except OSError:
            os.unlink(tmp_name)
            raise
