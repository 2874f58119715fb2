"""Tests for the daemon lifecycle controller."""

import subprocess
import sys
import time
from unittest.mock import MagicMock

import psutil
import pytest

from taskd.config import ensure_home, get_logs_dir, get_runtime_file
from taskd.core.builtin import DAEMON_TASK_NAME
from taskd.core.daemon import DaemonManager
from taskd.core.process import ProcessChecker, ProcessStatus
from taskd.core.state import StateStore
from taskd.errors import AlreadyRunningError, DaemonError, NotRunningError
from taskd.models import TaskRuntimeRecord, TaskStatus

# Stands in for `taskd --daemon`: stays up and carries the daemon flag
FAKE_DAEMON = [
    sys.executable,
    "-c",
    "import time; print('daemon up', flush=True); time.sleep(30)",
    "--daemon",
]


def wait_for(predicate, timeout=5.0, interval=0.05):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def pid_gone(pid):
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


@pytest.fixture
def home(tmp_path, monkeypatch):
    monkeypatch.setenv("TASKD_HOME", str(tmp_path))
    ensure_home(tmp_path)
    return tmp_path


@pytest.fixture
def store(home):
    return StateStore(get_runtime_file(home))


@pytest.fixture
def make_daemon(home, store):
    def make(command=FAKE_DAEMON, **kwargs):
        kwargs.setdefault("startup_wait", 0.2)
        kwargs.setdefault("stop_timeout", 2.0)
        return DaemonManager(store, logs_dir=get_logs_dir(home), command=command, **kwargs)

    yield make

    record = store.get(DAEMON_TASK_NAME)
    if record is not None and record.pid > 0 and not pid_gone(record.pid):
        psutil.Process(record.pid).kill()


@pytest.fixture
def bystander():
    """A live process that is not a daemon."""
    process = subprocess.Popen(["sleep", "30"])
    yield process
    if process.poll() is None:
        process.kill()
    process.wait()


class TestStartStop:
    """Spawning and stopping the daemon."""

    def test_start_records_daemon(self, make_daemon, store):
        daemon = make_daemon()

        pid = daemon.start_daemon()

        record = store.get(DAEMON_TASK_NAME)
        assert record.status == TaskStatus.RUNNING
        assert record.pid == pid
        assert record.start_time is not None
        assert daemon.is_running()

        status = daemon.get_status()
        assert status.status == TaskStatus.RUNNING
        assert status.pid == pid

    def test_output_goes_to_daemon_log(self, make_daemon, home):
        daemon = make_daemon()
        daemon.start_daemon()

        log_file = home / "logs" / "daemon.log"
        assert wait_for(lambda: log_file.exists() and "daemon up" in log_file.read_text())

    def test_start_twice(self, make_daemon):
        daemon = make_daemon()
        pid = daemon.start_daemon()

        with pytest.raises(AlreadyRunningError) as exc_info:
            daemon.start_daemon()

        assert exc_info.value.pid == pid

    def test_stop(self, make_daemon, store):
        daemon = make_daemon()
        pid = daemon.start_daemon()

        daemon.stop_daemon()

        record = store.get(DAEMON_TASK_NAME)
        assert record.status == TaskStatus.STOPPED
        assert record.pid == 0
        assert record.exit_code == -1
        assert record.stopped_by_taskd is True
        assert pid_gone(pid)
        assert not daemon.is_running()

    def test_stop_without_daemon(self, make_daemon):
        daemon = make_daemon()
        with pytest.raises(NotRunningError):
            daemon.stop_daemon()

    def test_exits_during_startup(self, make_daemon, store, home):
        daemon = make_daemon(
            command=[sys.executable, "-c", "import sys; print('bad config'); sys.exit(2)", "--daemon"],
            startup_wait=1.0,
        )

        with pytest.raises(DaemonError, match="code 2"):
            daemon.start_daemon()

        assert store.get(DAEMON_TASK_NAME) is None
        assert "bad config" in (home / "logs" / "daemon.log").read_text()

    def test_missing_executable(self, make_daemon):
        daemon = make_daemon(command=["/nonexistent/taskd", "--daemon"])
        with pytest.raises(DaemonError):
            daemon.start_daemon()

    def test_unrecorded_daemon_is_killed(self, make_daemon, store, monkeypatch):
        """A daemon whose pid cannot be recorded does not survive."""
        spawned = []
        real_popen = subprocess.Popen

        def recording_popen(*args, **kwargs):
            process = real_popen(*args, **kwargs)
            spawned.append(process)
            return process

        monkeypatch.setattr("taskd.core.daemon.subprocess.Popen", recording_popen)
        monkeypatch.setattr(store, "update_task", MagicMock(side_effect=OSError("disk full")))
        daemon = make_daemon()

        with pytest.raises(DaemonError, match="record"):
            daemon.start_daemon()

        assert len(spawned) == 1
        spawned[0].wait(timeout=5)
        assert spawned[0].returncode is not None


class TestValidation:
    """Stale daemon records."""

    def test_dead_pid_healed(self, make_daemon, store):
        process = subprocess.Popen(["true"])
        process.wait()
        store.update_task(TaskRuntimeRecord(name=DAEMON_TASK_NAME, status=TaskStatus.RUNNING, pid=process.pid))
        daemon = make_daemon()

        assert daemon.validate_daemon_state() is None

        record = store.get(DAEMON_TASK_NAME)
        assert record.status == TaskStatus.STOPPED
        assert record.pid == 0

    def test_foreign_process_not_a_daemon(self, make_daemon, store, bystander):
        """A live pid without the daemon flag is not trusted."""
        store.update_task(
            TaskRuntimeRecord(name=DAEMON_TASK_NAME, status=TaskStatus.RUNNING, pid=bystander.pid)
        )
        daemon = make_daemon()

        assert not daemon.is_running()
        assert store.get(DAEMON_TASK_NAME).status == TaskStatus.STOPPED
        assert bystander.poll() is None

    def test_stop_stale_record(self, make_daemon, store, bystander):
        """Stopping a stale record clears it without signalling the pid."""
        store.update_task(
            TaskRuntimeRecord(name=DAEMON_TASK_NAME, status=TaskStatus.RUNNING, pid=bystander.pid)
        )
        daemon = make_daemon()

        daemon.stop_daemon()

        assert store.get(DAEMON_TASK_NAME).stopped_by_taskd is True
        assert bystander.poll() is None

    def test_start_replaces_stale_record(self, make_daemon, store, bystander):
        store.update_task(
            TaskRuntimeRecord(name=DAEMON_TASK_NAME, status=TaskStatus.RUNNING, pid=bystander.pid)
        )
        daemon = make_daemon()

        pid = daemon.start_daemon()

        assert pid != bystander.pid
        assert store.get(DAEMON_TASK_NAME).pid == pid

    def test_identity_uses_daemon_flag(self, store, home):
        checker = MagicMock(spec=ProcessChecker)
        checker.check.return_value = ProcessStatus(pid=77, exists=True, is_ours=True)
        store.update_task(TaskRuntimeRecord(name=DAEMON_TASK_NAME, status=TaskStatus.RUNNING, pid=77))
        daemon = DaemonManager(store, checker=checker, logs_dir=get_logs_dir(home))

        assert daemon.is_running()
        _, kwargs = checker.check.call_args
        assert kwargs["cmdline_marker"] == "--daemon"


class TestEnsure:
    """ensure_running."""

    def test_starts_once(self, make_daemon, store):
        daemon = make_daemon()

        assert daemon.ensure_running() is True
        pid = store.get(DAEMON_TASK_NAME).pid
        assert daemon.ensure_running() is False
        assert store.get(DAEMON_TASK_NAME).pid == pid

    def test_restarts_after_operator_stop(self, make_daemon, store):
        daemon = make_daemon()
        daemon.start_daemon()
        daemon.stop_daemon()

        assert daemon.ensure_running() is True
        assert store.get(DAEMON_TASK_NAME).status == TaskStatus.RUNNING

    def test_start_failure_propagates(self, make_daemon):
        daemon = make_daemon(command=["/nonexistent/taskd", "--daemon"])
        with pytest.raises(DaemonError):
            daemon.ensure_running()
