"""
Launching and stopping the managed application process.

Captures stdout/stderr line by line, echoing each line to the console and
appending it to a size-bounded persistent log. Stopping is two-phase: a
terminate request to the process group, a bounded wait, then a forced kill;
``stop`` returns only once the process has actually exited.
"""

import logging
import os
import shlex
import signal
import subprocess
import sys
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import psutil

logger = logging.getLogger(__name__)


class RotatingLineLog:
    """Append-only text log that keeps the newest half of its lines once too large."""

    def __init__(self, path: Path, max_bytes: int):
        self.path = Path(path)
        self.max_bytes = max_bytes
        self._lock = threading.Lock()

    def _rotate_if_needed(self):
        try:
            if self.path.stat().st_size <= self.max_bytes:
                return
        except FileNotFoundError:
            return
        with open(self.path, "r", encoding="utf-8", errors="replace") as f:
            lines = f.readlines()
        keep_from = len(lines) // 2
        with open(self.path, "w", encoding="utf-8") as f:
            f.writelines(lines[keep_from:])

    def write(self, line: str):
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._rotate_if_needed()
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line.rstrip("\n") + "\n")
            except OSError as e:
                logger.error(f"Failed to write {self.path}: {e}")

    def tail(self, lines: int) -> list[str]:
        try:
            with open(self.path, "r", encoding="utf-8", errors="replace") as f:
                content = [line.rstrip("\n") for line in f if line.strip()]
        except FileNotFoundError:
            return []
        return content[-lines:]


@dataclass
class ManagedProcess:
    """The single supervised OS process."""

    process: subprocess.Popen
    started_at: datetime = field(default_factory=datetime.now)
    started_monotonic: float = field(default_factory=time.monotonic)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def alive(self) -> bool:
        return self.process.poll() is None

    def poll(self) -> int | None:
        return self.process.poll()

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.started_monotonic


class ProcessManager:
    """Starts and stops the managed process and captures its output."""

    def __init__(self, log: RotatingLineLog, echo: bool = True, label: str = "app", recent_limit: int = 200):
        self.log = log
        self.echo = echo
        self.label = label
        self.recent: deque[str] = deque(maxlen=recent_limit)
        self._threads: list[threading.Thread] = []

    def _write(self, source: str, text: str):
        timestamp = datetime.now().isoformat(timespec="seconds")
        entry = f"[{timestamp}] [{source}] {text}"
        self.recent.append(entry)
        self.log.write(entry)
        if self.echo:
            stream = sys.stderr if source == "stderr" else sys.stdout
            stream.write(f"[{self.label}] {text}\n")
            stream.flush()

    def start(self, command: str, cwd: Path, env: dict[str, str] | None = None) -> ManagedProcess:
        """Launch ``command`` in ``cwd``. Raises OSError if it cannot be spawned."""
        cmd = shlex.split(command)
        self.recent.clear()
        self.log.write("=" * 60)
        self._write("system", f"=== Starting: {command} (cwd {cwd}) ===")

        process_env = os.environ.copy()
        if env:
            process_env.update(env)

        process = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            cwd=str(cwd),
            env=process_env,
            start_new_session=True,  # Create new process group
        )
        managed = ManagedProcess(process=process)

        self._threads = [
            threading.Thread(target=self._capture_output, args=(process.stdout, "stdout"), daemon=True),
            threading.Thread(target=self._capture_output, args=(process.stderr, "stderr"), daemon=True),
        ]
        for thread in self._threads:
            thread.start()

        logger.info(f"Started managed process with PID {process.pid}")
        return managed

    def _signal_group(self, managed: ManagedProcess, sig: int):
        try:
            os.killpg(os.getpgid(managed.pid), sig)
        except ProcessLookupError:
            pass

    def stop(self, managed: ManagedProcess, timeout: float = 5) -> int | None:
        """Terminate gracefully, force-kill after ``timeout``. Returns the exit code."""
        process = managed.process
        if process.poll() is not None:
            return process.returncode

        logger.info(f"Stopping managed process (PID {managed.pid})...")
        self._signal_group(managed, signal.SIGTERM)
        try:
            process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Process {managed.pid} did not stop gracefully, forcing kill")
            self._signal_group(managed, signal.SIGKILL)
            process.wait()

        self._join_capture()
        self._write("system", f"Process exited with code {process.returncode}")
        return process.returncode

    def _join_capture(self, timeout: float = 2):
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []

    def record_exit(self, managed: ManagedProcess):
        """Flush captured output and note an exit that was not requested."""
        self._join_capture()
        self._write("system", f"Process exited with code {managed.process.returncode}")

    def _capture_output(self, stream, source: str):
        """Copy process output to the console and the persistent log."""
        try:
            for line in iter(stream.readline, b""):
                decoded = line.decode("utf-8", errors="replace").rstrip()
                if decoded:
                    self._write(source, decoded)
        except (OSError, ValueError) as e:
            logger.error(f"Error in log capture ({source}): {e}")
        finally:
            try:
                stream.close()
            except OSError:
                pass


def process_metrics(pid: int) -> dict:
    """CPU and memory usage of a process and its children."""
    result = {"cpu_percent": 0.0, "memory_mb": 0.0, "child_processes": 0}
    try:
        proc = psutil.Process(pid)
        cpu_percent = proc.cpu_percent(interval=0.1)
        memory_mb = proc.memory_info().rss / 1024 / 1024

        try:
            children = proc.children(recursive=True)
            result["child_processes"] = len(children)
            for child in children:
                cpu_percent += child.cpu_percent(interval=0.1)
                memory_mb += child.memory_info().rss / 1024 / 1024
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

        result["cpu_percent"] = round(cpu_percent, 1)
        result["memory_mb"] = round(memory_mb, 1)
    except psutil.NoSuchProcess:
        logger.warning(f"Process {pid} no longer exists")
    except psutil.AccessDenied:
        logger.warning(f"Access denied for process {pid}")
    return result
