"""Tests for the task process wrapper and stdio wiring."""

import os
import subprocess
import sys
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path

import psutil
import pytest

from taskd.core.io import create_task_io, get_task_io_info, resolve_workdir
from taskd.core.task import TERMINATED_BY_USER, Task, describe_returncode
from taskd.errors import AlreadyRunningError, NotRunningError, SpawnError
from taskd.models import TaskConfig, TaskRuntimeRecord, TaskStatus

FIXTURES = Path(__file__).parent / "fixtures"


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


class ExitRecorder:
    """Collects exit callbacks."""

    def __init__(self):
        self.calls = []
        self.event = threading.Event()

    def __call__(self, name, pid, exit_code):
        self.calls.append((name, pid, exit_code))
        self.event.set()


@pytest.fixture
def tasks():
    created = []

    def make(config, on_exit=None):
        task = Task(config, on_exit=on_exit)
        created.append(task)
        return task

    yield make

    for task in created:
        task.close()
        if task.is_running():
            task.stop()


class TestCommand:
    """Command and environment resolution."""

    def test_split_executable_without_args(self):
        task = Task(TaskConfig(name="t", executable="sleep 5"))
        assert task.build_command() == ["sleep", "5"]

    def test_args_used_verbatim(self):
        task = Task(TaskConfig(name="t", executable="/usr/bin/env", args=["python3", "-c", "print('a b')"]))
        assert task.build_command() == ["/usr/bin/env", "python3", "-c", "print('a b')"]

    def test_env_overrides_inherited(self, monkeypatch):
        monkeypatch.setenv("TASKD_TEST_VAR", "parent")
        task = Task(TaskConfig(name="t", executable="true", env=["TASKD_TEST_VAR=child", "EXTRA=a=b"]))

        env = task.build_env()

        assert env["TASKD_TEST_VAR"] == "child"
        assert env["EXTRA"] == "a=b"
        assert "PATH" in env

    def test_env_without_inheritance(self, monkeypatch):
        monkeypatch.setenv("TASKD_TEST_VAR", "parent")
        task = Task(TaskConfig(name="t", executable="true", inherit_env=False, env=["ONLY=1"]))

        assert task.build_env() == {"ONLY": "1"}

    def test_describe_returncode(self):
        assert describe_returncode(0) == (0, "")
        assert describe_returncode(2) == (2, "exit status 2")
        code, message = describe_returncode(-9)
        assert code == -1
        assert "SIGKILL" in message


class TestLifecycle:
    """start/stop and the background reaper."""

    def test_start_and_stop(self, tasks):
        task = tasks(TaskConfig(name="sleeper", executable="sleep", args=["30"]))

        pid = task.start()

        assert pid > 0
        assert task.is_running()
        assert task.status == TaskStatus.RUNNING
        assert task.pid == pid

        task.stop()

        assert task.status == TaskStatus.STOPPED
        assert task.exit_code == -1
        assert task.last_error == TERMINATED_BY_USER
        assert task.pid == 0
        assert wait_for(lambda: pid_gone(pid))

    def test_start_twice(self, tasks):
        task = tasks(TaskConfig(name="sleeper", executable="sleep", args=["30"]))
        task.start()

        with pytest.raises(AlreadyRunningError):
            task.start()

    def test_stop_not_running(self, tasks):
        task = tasks(TaskConfig(name="idle", executable="sleep", args=["30"]))

        with pytest.raises(NotRunningError):
            task.stop()

    def test_graceful_stop(self, tasks, tmp_path):
        """A task handling SIGTERM gets to shut down cleanly."""
        out = tmp_path / "continuous.log"
        task = tasks(
            TaskConfig(
                name="continuous",
                executable=sys.executable,
                args=[str(FIXTURES / "continuous_job.py")],
                stdout=str(out),
            )
        )
        task.start()
        assert wait_for(lambda: out.exists() and "Heartbeat" in out.read_text())

        task.stop()

        assert "stopped cleanly" in out.read_text()

    def test_spawn_failure(self, tasks):
        task = tasks(TaskConfig(name="broken", executable="/nonexistent/taskd-binary"))

        with pytest.raises(SpawnError) as exc_info:
            task.start()

        assert "/nonexistent/taskd-binary" in str(exc_info.value)
        assert "broken" in str(exc_info.value)
        assert task.status == TaskStatus.FAILED
        assert task.get_runtime_info() is None

    def test_exit_callback(self, tasks):
        recorder = ExitRecorder()
        task = tasks(
            TaskConfig(name="failing", executable=sys.executable, args=[str(FIXTURES / "failing_job.py"), "3"]),
            on_exit=recorder,
        )
        pid = task.start()

        assert recorder.event.wait(5)
        assert recorder.calls == [("failing", pid, 3)]
        assert task.status == TaskStatus.STOPPED
        assert task.exit_code == 3
        assert task.last_error == "exit status 3"

    def test_killed_process_reports_minus_one(self, tasks):
        recorder = ExitRecorder()
        task = tasks(TaskConfig(name="victim", executable="sleep", args=["30"]), on_exit=recorder)
        pid = task.start()

        os.kill(pid, 9)

        assert recorder.event.wait(5)
        assert recorder.calls[0][2] == -1
        assert "SIGKILL" in task.last_error

    def test_stop_does_not_report_exit(self, tasks):
        """Operator stops are recorded by the caller, not the reaper."""
        recorder = ExitRecorder()
        task = tasks(TaskConfig(name="quiet", executable="sleep", args=["30"]), on_exit=recorder)
        task.start()

        task.stop()

        assert not recorder.event.wait(0.5)

    def test_close_silences_reaper(self, tasks):
        recorder = ExitRecorder()
        task = tasks(
            TaskConfig(name="closing", executable=sys.executable, args=[str(FIXTURES / "failing_job.py"), "1", "0.3"]),
            on_exit=recorder,
        )
        task.start()
        task.close()

        assert not recorder.event.wait(1.0)

    def test_runtime_info_only_while_running(self, tasks):
        task = tasks(TaskConfig(name="sleeper", executable="sleep", args=["30"]))
        assert task.get_runtime_info() is None

        pid = task.start()
        record = task.get_runtime_info()

        assert record.status == TaskStatus.RUNNING
        assert record.pid == pid
        assert record.start_time is not None

        task.stop()
        assert task.get_runtime_info() is None

    def test_restart_after_exit(self, tasks):
        recorder = ExitRecorder()
        task = tasks(
            TaskConfig(name="again", executable=sys.executable, args=[str(FIXTURES / "failing_job.py"), "0", "0"]),
            on_exit=recorder,
        )
        first = task.start()
        assert recorder.event.wait(5)
        recorder.event.clear()

        second = task.start()

        assert second != first
        assert recorder.event.wait(5)


class TestRestore:
    """Re-attaching to processes started by another invocation."""

    def test_restore_live_process(self, tasks):
        process = subprocess.Popen(["sleep", "30"])
        try:
            task = tasks(TaskConfig(name="adopted", executable="sleep", args=["30"]))
            record = TaskRuntimeRecord(
                name="adopted", status=TaskStatus.RUNNING, pid=process.pid, start_time=datetime.now()
            )

            assert task.restore_runtime_state(record) is True
            assert task.is_running()
            assert task.pid == process.pid
            assert not task.owns_pid(process.pid)

            task.stop()
            assert task.status == TaskStatus.STOPPED
            assert wait_for(lambda: pid_gone(process.pid))
        finally:
            if process.poll() is None:
                process.kill()
            process.wait()

    def test_restore_dead_process(self, tasks):
        process = subprocess.Popen(["true"])
        process.wait()
        task = tasks(TaskConfig(name="dead", executable="true"))
        record = TaskRuntimeRecord(name="dead", status=TaskStatus.RUNNING, pid=process.pid)

        assert task.restore_runtime_state(record) is False
        assert not task.is_running()

    def test_restore_rejects_reused_pid(self, tasks):
        process = subprocess.Popen(["sleep", "30"])
        try:
            task = tasks(TaskConfig(name="reused", executable="sleep", args=["30"]))
            record = TaskRuntimeRecord(
                name="reused",
                status=TaskStatus.RUNNING,
                pid=process.pid,
                start_time=datetime.now() - timedelta(days=1),
            )

            assert task.restore_runtime_state(record) is False
        finally:
            process.kill()
            process.wait()

    def test_restore_ignores_stopped_record(self, tasks):
        task = tasks(TaskConfig(name="stopped", executable="true"))
        record = TaskRuntimeRecord(name="stopped", status=TaskStatus.STOPPED, pid=0)

        assert task.restore_runtime_state(record) is False


class TestStdio:
    """Stdio redirection."""

    def test_default_workdir_is_home(self, tasks, tmp_path):
        out = tmp_path / "cwd.txt"
        recorder = ExitRecorder()
        task = tasks(
            TaskConfig(
                name="cwd",
                executable=sys.executable,
                args=["-c", "import os; print(os.getcwd())"],
                stdout=str(out),
            ),
            on_exit=recorder,
        )
        task.start()

        assert recorder.event.wait(5)
        assert Path(out.read_text().strip()).resolve() == Path.home().resolve()

    def test_relative_output_in_workdir(self, tasks, tmp_path):
        recorder = ExitRecorder()
        task = tasks(
            TaskConfig(
                name="rel",
                executable=sys.executable,
                args=["-c", "import sys; print('out'); print('err', file=sys.stderr)"],
                workdir=str(tmp_path),
                stdout="logs/task.log",
                stderr="logs/task.log",
            ),
            on_exit=recorder,
        )
        task.start()

        assert recorder.event.wait(5)
        content = (tmp_path / "logs" / "task.log").read_text()
        assert "out" in content
        assert "err" in content

    def test_output_appends(self, tasks, tmp_path):
        out = tmp_path / "append.log"
        out.write_text("previous\n")
        recorder = ExitRecorder()
        task = tasks(
            TaskConfig(name="append", executable="echo hello", stdout=str(out)),
            on_exit=recorder,
        )
        task.start()

        assert recorder.event.wait(5)
        assert out.read_text() == "previous\nhello\n"

    def test_stdin_from_file(self, tasks, tmp_path):
        (tmp_path / "input.txt").write_text("from stdin\n")
        recorder = ExitRecorder()
        task = tasks(
            TaskConfig(
                name="cat",
                executable="cat",
                workdir=str(tmp_path),
                stdin="input.txt",
                stdout="output.txt",
            ),
            on_exit=recorder,
        )
        task.start()

        assert recorder.event.wait(5)
        assert (tmp_path / "output.txt").read_text() == "from stdin\n"

    def test_missing_stdin_fails_start(self, tasks, tmp_path):
        task = tasks(TaskConfig(name="nostdin", executable="cat", workdir=str(tmp_path), stdin="missing.txt"))

        with pytest.raises(SpawnError):
            task.start()
        assert task.status == TaskStatus.FAILED

    def test_shared_output_handle(self, tmp_path):
        config = TaskConfig(name="io", executable="true", workdir=str(tmp_path), stdout="a.log", stderr="./a.log")

        task_io = create_task_io(config)
        try:
            assert task_io.stdout is task_io.stderr
            assert task_io.stdin is None
        finally:
            task_io.close()
        task_io.close()

    def test_io_info(self, tmp_path):
        config = TaskConfig(name="io", executable="true", workdir=str(tmp_path), stdout="a.log", stderr="/tmp/b.log")

        info = get_task_io_info(config)

        assert info.stdout_path == str(tmp_path / "a.log")
        assert info.stderr_path == "/tmp/b.log"
        assert info.stdin_path is None
        assert info.same_output is False
        assert resolve_workdir(config) == tmp_path
