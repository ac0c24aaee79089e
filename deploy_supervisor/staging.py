"""
Control of the staging instance.

The staging instance runs the same command as the live process, from the
staging root and with the staging credentials file overlaid on the
environment. It is started and stopped on request only: there is no crash
handling and no rollback. Output goes to the staging log and to a buffer of
recent lines for ``status``.
"""

import logging
import threading
import time
from typing import Optional

from dotenv import dotenv_values

from .config import Config, config
from .process import ManagedProcess, ProcessManager, RotatingLineLog, process_metrics
from .results import Failure, FailureKind, OperationResult, Success

logger = logging.getLogger(__name__)

RECENT_STATUS_LINES = 20


class StagingController:
    """Starts, stops and reports on the staging process."""

    def __init__(self, cfg: Config = config, manager: ProcessManager | None = None):
        self.config = cfg
        self.manager = manager or ProcessManager(
            RotatingLineLog(cfg.staging_log, cfg.process_log_max_bytes),
            label="staging",
            recent_limit=cfg.staging_log_lines,
        )
        self.current: Optional[ManagedProcess] = None
        self.last_exit_code: int | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        self._reap()
        return self.current is not None

    def _reap(self):
        """Forget a staging process that exited on its own."""
        if self.current is None or self.current.poll() is None:
            return
        managed, self.current = self.current, None
        self.last_exit_code = managed.poll()
        self.manager.record_exit(managed)
        logger.info(f"Staging process exited (code: {self.last_exit_code})")

    def start(self) -> OperationResult:
        """Launch the staging process."""
        if not self._lock.acquire(blocking=False):
            return Failure("Another staging transition is in progress", kind=FailureKind.BUSY)
        try:
            return self._start()
        finally:
            self._lock.release()

    def stop(self) -> OperationResult:
        """Stop the staging process if it is running."""
        if not self._lock.acquire(blocking=False):
            return Failure("Another staging transition is in progress", kind=FailureKind.BUSY)
        try:
            return self._stop()
        finally:
            self._lock.release()

    def restart(self) -> OperationResult:
        """Stop, wait briefly, start again."""
        if not self._lock.acquire(blocking=False):
            return Failure("Another staging transition is in progress", kind=FailureKind.BUSY)
        try:
            stopped = self._stop()
            time.sleep(self.config.staging_restart_delay)
            started = self._start()
        finally:
            self._lock.release()
        started.data["stopped"] = stopped.message
        return started

    def status(self) -> dict:
        running = self.running
        recent = list(self.manager.recent)
        result = {
            "running": running,
            "pid": self.current.pid if running else None,
            "uptime_seconds": round(self.current.uptime, 1) if running else 0,
            "last_exit_code": self.last_exit_code,
            "recent_log": recent[-RECENT_STATUS_LINES:],
            "log_lines": len(recent),
            "log_file": str(self.config.staging_log),
        }
        if running:
            result["metrics"] = process_metrics(self.current.pid)
        return result

    def _start(self) -> OperationResult:
        cfg = self.config
        self._reap()
        if self.current is not None:
            return Failure(
                f"Staging process is already running (PID {self.current.pid}). Stop it first or restart it.",
                kind=FailureKind.BUSY,
            )
        if not cfg.staging_root.is_dir():
            return Failure(f"Staging directory not found: {cfg.staging_root}", kind=FailureKind.CONFIGURATION)

        credentials = cfg.staging_credentials_path
        env = None
        if credentials is not None:
            if not credentials.exists():
                return Failure(
                    f"Staging credentials file not found: {credentials}. The staging instance needs its own.",
                    kind=FailureKind.CONFIGURATION,
                )
            env = {k: v for k, v in dotenv_values(credentials).items() if v is not None}

        try:
            self.current = self.manager.start(cfg.staging_command, cfg.staging_root, env)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to start staging process: {e}")
            return Failure(f"Failed to start staging process: {e}", kind=FailureKind.PROCESS)

        logger.info(f"Staging process started (PID {self.current.pid})")
        return Success(f"Staging process started (PID {self.current.pid})", data={"pid": self.current.pid})

    def _stop(self) -> OperationResult:
        self._reap()
        if self.current is None:
            return Success("Staging process is not running")
        managed = self.current
        code = self.manager.stop(managed, self.config.stop_timeout)
        self.current = None
        self.last_exit_code = code
        logger.info(f"Staging process stopped (was PID {managed.pid})")
        return Success(f"Staging process stopped (was PID {managed.pid})", data={"exit_code": code})
