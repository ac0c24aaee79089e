"""Shared fixtures: temporary live/staging trees and a fake process manager."""

from __future__ import annotations

import os
import tempfile
import time
from collections import deque
from datetime import datetime
from pathlib import Path

import pytest

# Keep the default config's data directory out of the user's home
os.environ.setdefault("SUPERVISOR_DATA_DIR", tempfile.mkdtemp(prefix="deploy-supervisor-tests-"))

from deploy_supervisor.config import Config  # noqa: E402


def write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


def snapshot(root: Path) -> dict[str, bytes]:
    """Relative path -> content for every file under root."""
    return {
        str(p.relative_to(root)): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


@pytest.fixture
def make_config(tmp_path):
    """Build a Config rooted in tmp_path with fast policy timings."""

    def _make(**overrides) -> Config:
        live = tmp_path / "live"
        live.mkdir(exist_ok=True)
        params = dict(
            live_root=live,
            staging_root=live / "staging",
            backup_root=live / "backups",
            data_dir=tmp_path / "data",
            process_log=live / "logs" / "live.log",
            staging_log=live / "staging" / "logs" / "staging.log",
            credentials_file="",
            command="app --serve",
            crash_window=30,
            max_crash_retries=2,
            poll_interval=0,
            restart_delay=0,
            rollback_delay=0,
            signal_restart_delay=0,
            staging_restart_delay=0,
            stop_timeout=2,
            tick_interval=0.01,
            unit_dir="skills",
            protected_subfolder="data",
            restorable_paths=("src", "skills"),
        )
        params.update(overrides)
        cfg = Config(**params)
        cfg.staging_root.mkdir(parents=True, exist_ok=True)
        return cfg

    return _make


@pytest.fixture
def cfg(make_config):
    return make_config()


class FakeProcess:
    """Stands in for ManagedProcess; exits when told to."""

    _next_pid = 4_000_000

    def __init__(self, returncode: int | None = None):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.returncode = returncode
        self.started_at = datetime.now()
        self.started_monotonic = time.monotonic()

    def poll(self):
        return self.returncode

    @property
    def alive(self) -> bool:
        return self.returncode is None

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.started_monotonic

    def exit(self, code: int):
        self.returncode = code


class FakeManager:
    """Records start/stop calls instead of spawning processes."""

    def __init__(self, exit_code: int | None = None, stop_delay: float = 0):
        self.exit_code = exit_code
        self.stop_delay = stop_delay
        self.fail_spawn = False
        self.started: list[FakeProcess] = []
        self.stopped: list[FakeProcess] = []
        self.envs: list[dict | None] = []
        self.commands: list[tuple[str, Path]] = []
        self.recent: deque[str] = deque(maxlen=200)

    def start(self, command, cwd, env=None):
        if self.fail_spawn:
            raise OSError("spawn failed")
        process = FakeProcess(self.exit_code)
        self.started.append(process)
        self.commands.append((command, cwd))
        self.envs.append(env)
        return process

    def stop(self, managed, timeout=5):
        if self.stop_delay:
            time.sleep(self.stop_delay)
        if managed.returncode is None:
            managed.returncode = -15
        self.stopped.append(managed)
        return managed.returncode

    def record_exit(self, managed):
        pass


@pytest.fixture
def fake_manager():
    return FakeManager()
