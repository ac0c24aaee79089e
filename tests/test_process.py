import shlex
import sys
import time

import pytest

from deploy_supervisor.process import ProcessManager, RotatingLineLog, process_metrics


def python_command(code: str) -> str:
    return shlex.join([sys.executable, "-c", code])


def wait_until(predicate, timeout: float = 10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


@pytest.fixture
def log(tmp_path):
    return RotatingLineLog(tmp_path / "logs" / "live.log", max_bytes=512 * 1024)


def test_rotating_log_keeps_newest_half(tmp_path):
    log = RotatingLineLog(tmp_path / "app.log", max_bytes=200)
    for i in range(100):
        log.write(f"line {i:03d}")

    lines = (tmp_path / "app.log").read_text().splitlines()
    assert lines[-1] == "line 099"
    assert "line 000" not in lines
    assert (tmp_path / "app.log").stat().st_size <= 200 + len("line 099\n")


def test_tail(tmp_path):
    log = RotatingLineLog(tmp_path / "app.log", max_bytes=1024)
    for i in range(5):
        log.write(f"line {i}")

    assert log.tail(2) == ["line 3", "line 4"]
    assert RotatingLineLog(tmp_path / "missing.log", 1024).tail(5) == []


def test_output_is_captured_to_log(tmp_path, log):
    manager = ProcessManager(log, echo=False)
    managed = manager.start(
        python_command("import sys; print('hello'); sys.stderr.write('oops\\n'); sys.exit(3)"),
        tmp_path,
    )

    assert wait_until(lambda: managed.poll() is not None)
    manager.record_exit(managed)

    content = log.path.read_text()
    assert "=== Starting:" in content
    assert "[stdout] hello" in content
    assert "[stderr] oops" in content
    assert "Process exited with code 3" in content


def test_environment_overrides_are_passed(tmp_path, log):
    manager = ProcessManager(log, echo=False)
    managed = manager.start(
        python_command("import os; print('token=' + os.environ['APP_TOKEN'])"),
        tmp_path,
        env={"APP_TOKEN": "abc123"},
    )

    assert wait_until(lambda: managed.poll() is not None)
    manager.record_exit(managed)
    assert "token=abc123" in log.path.read_text()


def test_stop_terminates_gracefully(tmp_path, log):
    manager = ProcessManager(log, echo=False)
    managed = manager.start(python_command("import time; time.sleep(30)"), tmp_path)
    assert managed.alive

    code = manager.stop(managed, timeout=5)

    assert code == -15
    assert not managed.alive


def test_stop_force_kills_after_timeout(tmp_path, log):
    manager = ProcessManager(log, echo=False)
    code = (
        "import signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('ready', flush=True)\n"
        "time.sleep(30)\n"
    )
    managed = manager.start(python_command(code), tmp_path)
    assert wait_until(lambda: log.path.exists() and "[stdout] ready" in log.path.read_text())

    exit_code = manager.stop(managed, timeout=0.5)

    assert exit_code == -9
    assert not managed.alive


def test_stop_already_exited(tmp_path, log):
    manager = ProcessManager(log, echo=False)
    managed = manager.start(python_command("pass"), tmp_path)
    assert wait_until(lambda: managed.poll() is not None)

    assert manager.stop(managed) == 0


def test_spawn_failure_raises(tmp_path, log):
    manager = ProcessManager(log, echo=False)
    with pytest.raises(OSError):
        manager.start("/nonexistent/binary --flag", tmp_path)


def test_process_metrics_for_running_process(tmp_path, log):
    manager = ProcessManager(log, echo=False)
    managed = manager.start(python_command("import time; time.sleep(30)"), tmp_path)
    try:
        metrics = process_metrics(managed.pid)
    finally:
        manager.stop(managed)

    assert metrics["memory_mb"] > 0
    assert metrics["child_processes"] == 0


def test_process_metrics_for_missing_process():
    metrics = process_metrics(2**22 + 12345)
    assert metrics == {"cpu_percent": 0.0, "memory_mb": 0.0, "child_processes": 0}


def test_recent_lines_are_bounded_and_reset_on_start(tmp_path, log):
    manager = ProcessManager(log, echo=False, recent_limit=3)
    managed = manager.start(python_command("for i in range(5): print(f'line {i}')"), tmp_path)
    assert wait_until(lambda: managed.poll() is not None)
    manager.record_exit(managed)

    assert len(manager.recent) == 3
    assert manager.recent[-1].endswith("Process exited with code 0")
    assert manager.recent[-2].endswith("[stdout] line 4")

    second = manager.start(python_command("pass"), tmp_path)
    assert "=== Starting:" in manager.recent[0]
    assert wait_until(lambda: second.poll() is not None)
    manager.record_exit(second)
