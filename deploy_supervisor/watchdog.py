"""
Watchdog for the managed application process.

The Supervisor owns at most one ManagedProcess. A single control loop calls
``tick`` at a fixed interval; each tick observes process exits, fires due
restarts and, every poll interval, consumes the restart signal. Operator
operations (start/stop/restart) and ticks are serialized by one lock, so a
transition requested while another is in flight is refused rather than run
concurrently.

Crash policy: an exit with a nonzero status (or a spawn failure) within the
crash window of the launch counts as a quick crash. After more than
``max_crash_retries`` consecutive quick crashes the live tree is rolled back
from the most recent backup. Exits after the window reset the count. A
rollback with no backup available is fatal.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Callable, Optional

from dotenv import dotenv_values

from . import backups
from .config import Config, config
from .errors import FatalSupervisorError
from .process import ManagedProcess, ProcessManager, RotatingLineLog, process_metrics
from .results import Failure, FailureKind, OperationResult, Success
from .signals import RecordSlot, RestartSignal

logger = logging.getLogger(__name__)


class State(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    CRASH_DETECTED = "crash_detected"
    ROLLING_BACK = "rolling_back"
    STOPPING = "stopping"
    FATAL = "fatal"


class Supervisor:
    """Supervises the managed process for one live root."""

    def __init__(self, cfg: Config = config, manager: ProcessManager | None = None):
        self.config = cfg
        self.manager = manager or ProcessManager(RotatingLineLog(cfg.process_log, cfg.process_log_max_bytes))
        self.restart_slot = RecordSlot(cfg.signal_file, RestartSignal)
        self.state = State.STOPPED
        self.current: Optional[ManagedProcess] = None
        self.crash_count = 0
        self.last_exit_code: int | None = None
        self.last_rollback: str | None = None
        self._launched_at: float | None = None
        self._restart_at: float | None = None
        self._last_poll = 0.0
        self._fatal: FatalSupervisorError | None = None
        self._lock = asyncio.Lock()
        self._shutdown = asyncio.Event()
        self._on_event: Optional[Callable[[str, str, dict], None]] = None

    def set_event_callback(self, callback: Callable[[str, str, dict], None]):
        """Set callback for lifecycle events: callback(kind, message, details)."""
        self._on_event = callback

    def _event(self, kind: str, message: str, **details):
        if not self._on_event:
            return
        try:
            self._on_event(kind, message, details)
        except Exception as e:
            logger.error(f"Event callback failed: {e}")

    @property
    def restart_pending(self) -> bool:
        return self._restart_at is not None

    # Operations

    async def start(self) -> OperationResult:
        """Launch the managed process."""
        if self._lock.locked():
            return Failure("Another transition is in progress", kind=FailureKind.BUSY)
        async with self._lock:
            if self.current is not None:
                return Failure(f"Already running (PID {self.current.pid})", kind=FailureKind.BUSY)
            self._restart_at = None
            try:
                return self._launch()
            except FatalSupervisorError as e:
                self._fatal = e
                return Failure(str(e), kind=FailureKind.PROCESS)

    async def stop(self) -> OperationResult:
        """Stop the managed process and cancel any pending restart."""
        if self._lock.locked():
            return Failure("Another transition is in progress", kind=FailureKind.BUSY)
        async with self._lock:
            self._restart_at = None
            if self.current is None:
                self.state = State.STOPPED
                return Success("Not running")
            pid = self.current.pid
            code = await self._stop_current()
            self.state = State.STOPPED
            return Success(f"Stopped (was PID {pid})", data={"exit_code": code})

    async def restart(self, reason: str = "Manual restart") -> OperationResult:
        """Intentional restart: stop, reset the crash count, start again."""
        if self._lock.locked():
            return Failure("Restart already in progress", kind=FailureKind.BUSY)
        async with self._lock:
            try:
                return await self._restart(reason)
            except FatalSupervisorError as e:
                self._fatal = e
                return Failure(str(e), kind=FailureKind.PROCESS)

    def status(self) -> dict:
        latest = backups.latest_backup(self.config.backup_root)
        result = {
            "state": self.state.value,
            "running": self.current is not None and self.current.alive,
            "pid": self.current.pid if self.current else None,
            "started_at": self.current.started_at.isoformat() if self.current else None,
            "uptime_seconds": round(self.current.uptime, 1) if self.current else 0,
            "crash_count": self.crash_count,
            "max_crash_retries": self.config.max_crash_retries,
            "restart_pending": self.restart_pending,
            "last_exit_code": self.last_exit_code,
            "last_rollback": self.last_rollback,
            "latest_backup": latest.name if latest else None,
            "signal_pending": self.restart_slot.pending(),
        }
        if self.current is not None and self.current.alive:
            result["metrics"] = process_metrics(self.current.pid)
        return result

    # Control loop

    async def tick(self):
        """Advance the state machine once. Raises FatalSupervisorError."""
        if self._fatal is not None:
            raise self._fatal
        if self._lock.locked():
            return
        async with self._lock:
            await self._check_exit()

            if self._restart_at is not None and time.monotonic() >= self._restart_at:
                self._restart_at = None
                self._launch()

            now = time.monotonic()
            if now - self._last_poll >= self.config.poll_interval:
                self._last_poll = now
                await self._check_restart_signal()

    async def run(self) -> int:
        """Run until ``shutdown``. Returns 1 after a fatal condition, else 0."""
        logger.info("=== Deployment watchdog starting ===")
        logger.info(f"Live root: {self.config.live_root}")
        logger.info(f"Signal file: {self.config.signal_file}")
        logger.info(f"Polling every {self.config.poll_interval}s for restart signals")

        if self.restart_slot.clear():
            logger.info("Cleaned up stale restart signal")

        result = await self.start()
        if not result.ok:
            logger.error(f"Initial start failed: {result.message}")
            if isinstance(result, Failure) and result.kind == FailureKind.CONFIGURATION:
                await self._stop_for_exit()
                return 1

        try:
            while not self._shutdown.is_set():
                await self.tick()
                try:
                    await asyncio.wait_for(self._shutdown.wait(), timeout=self.config.tick_interval)
                except asyncio.TimeoutError:
                    pass
        except FatalSupervisorError as e:
            self.state = State.FATAL
            logger.critical(f"{e}. Stopping watchdog.")
            self._event("fatal", str(e))
            await self._stop_for_exit()
            return 1

        await self._stop_for_exit()
        return 0

    def shutdown(self):
        """Ask ``run`` to stop the managed process and return."""
        self._shutdown.set()

    async def _stop_for_exit(self):
        async with self._lock:
            self._restart_at = None
            if self.current is not None:
                logger.info("Watchdog shutting down...")
                await self._stop_current()
            if self.state != State.FATAL:
                self.state = State.STOPPED

    # Transitions (called with the lock held)

    def _environment(self) -> dict[str, str] | None:
        path = self.config.credentials_path
        if path is None:
            return None
        return {k: v for k, v in dotenv_values(path).items() if v is not None}

    def _launch(self) -> OperationResult:
        credentials = self.config.credentials_path
        if credentials is not None and not credentials.exists():
            self.state = State.STOPPED
            logger.error(f"Credentials file not found: {credentials}")
            return Failure(f"Credentials file not found: {credentials}", kind=FailureKind.CONFIGURATION)

        self.state = State.STARTING
        self._launched_at = time.monotonic()
        try:
            self.current = self.manager.start(self.config.command, self.config.live_root, self._environment())
        except (OSError, ValueError) as e:
            logger.error(f"Failed to start managed process: {e}")
            self._event("spawn_error", str(e))
            self._handle_crash()
            return Failure(f"Failed to start managed process: {e}", kind=FailureKind.PROCESS)

        self.state = State.RUNNING
        self._event("start", f"Started (PID {self.current.pid})", pid=self.current.pid)
        return Success(f"Started (PID {self.current.pid})", data={"pid": self.current.pid})

    async def _stop_current(self) -> int | None:
        managed = self.current
        self.state = State.STOPPING
        code = await asyncio.to_thread(self.manager.stop, managed, self.config.stop_timeout)
        self.current = None
        self.last_exit_code = code
        self._event("stop", f"Stopped (PID {managed.pid})", pid=managed.pid, exit_code=code)
        return code

    async def _check_exit(self):
        if self.current is None:
            return
        code = self.current.poll()
        if code is None:
            return

        managed, self.current = self.current, None
        self.last_exit_code = code
        await asyncio.to_thread(self.manager.record_exit, managed)
        logger.info(f"Managed process exited (code: {code})")
        self._event("exit", f"Exited with code {code}", pid=managed.pid, exit_code=code)

        if code == 0:
            self.state = State.STOPPED
            return
        self._handle_crash()

    def _handle_crash(self):
        self.state = State.CRASH_DETECTED
        elapsed = time.monotonic() - (self._launched_at or 0)

        if elapsed < self.config.crash_window:
            self.crash_count += 1
            logger.warning(
                f"Managed process crashed quickly ({elapsed:.0f}s). "
                f"Crash count: {self.crash_count}/{self.config.max_crash_retries}"
            )
            self._event("crash", f"Quick crash after {elapsed:.1f}s", crash_count=self.crash_count)
            if self.crash_count > self.config.max_crash_retries:
                logger.warning("Too many quick crashes. Attempting rollback...")
                self._rollback()
                return
        else:
            # Long-lived process that eventually died
            self.crash_count = 0
            self._event("crash", f"Crash after {elapsed:.1f}s", crash_count=0)

        logger.info(f"Restarting in {self.config.restart_delay} seconds...")
        self._restart_at = time.monotonic() + self.config.restart_delay

    def _rollback(self):
        self.state = State.ROLLING_BACK
        backup = backups.latest_backup(self.config.backup_root)
        if backup is None:
            raise FatalSupervisorError(f"No backups found in {self.config.backup_root}. Cannot roll back")

        logger.info(f"Rolling back to backup: {backup.name}")
        try:
            restored = backups.restore_backup(backup, self.config.live_root, self.config.restorable_paths)
        except OSError as e:
            raise FatalSupervisorError(f"Rollback from {backup.name} failed: {e}") from e

        self.crash_count = 0
        self.last_rollback = backup.name
        self._event("rollback", f"Rolled back to {backup.name}", backup=backup.name, restored=restored)
        logger.info("Rollback complete. Restarting with restored version...")
        self._restart_at = time.monotonic() + self.config.rollback_delay

    async def _restart(self, reason: str) -> OperationResult:
        logger.info(f"Restarting managed process: {reason}")
        self._restart_at = None
        if self.current is not None:
            await self._stop_current()
        # Intentional restart, not a fault
        self.crash_count = 0
        self._event("restart", reason)

        await asyncio.sleep(self.config.signal_restart_delay)
        return self._launch()

    async def _check_restart_signal(self):
        if not self.restart_slot.pending():
            return
        record = self.restart_slot.take()
        if record is None:
            return
        logger.info(f"Restart signal received: {record.reason} (from {record.requested_by})")
        await self._restart(record.reason)
