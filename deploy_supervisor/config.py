"""
Configuration for the deployment supervisor.

Loads settings from environment variables with sensible defaults. The live
root is the tree the managed process runs from; staging, backups and the
signal files are located relative to it unless overridden. The supervisor's
own state (history database, log) lives in ~/.deploy-supervisor/
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_path(name: str) -> Path | None:
    value = os.environ.get(name, "")
    return Path(value) if value else None


def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw = os.environ.get(name, default)
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass
class Config:
    """Supervisor configuration."""

    # Trees
    live_root: Path = Path(os.environ.get("LIVE_ROOT", os.getcwd()))
    staging_root: Path = _env_path("STAGING_ROOT")
    backup_root: Path = _env_path("BACKUP_ROOT")
    signal_file: Path = None
    upgrade_context_file: Path = None

    # Supervisor state
    data_dir: Path = Path(os.environ.get("SUPERVISOR_DATA_DIR", str(Path.home() / ".deploy-supervisor")))
    db_path: Path = None
    supervisor_log: Path = None

    # Logging
    log_max_bytes: int = int(os.environ.get("LOG_MAX_BYTES", str(10 * 1024 * 1024)))  # 10MB
    log_backup_count: int = int(os.environ.get("LOG_BACKUP_COUNT", "5"))
    process_log: Path = _env_path("PROCESS_LOG")
    staging_log: Path = _env_path("STAGING_LOG")
    process_log_max_bytes: int = int(os.environ.get("PROCESS_LOG_MAX_BYTES", str(512 * 1024)))

    # Server
    host: str = os.environ.get("SUPERVISOR_HOST", "127.0.0.1")
    port: int = int(os.environ.get("SUPERVISOR_PORT", "9900"))

    # Managed process
    command: str = os.environ.get("MANAGED_COMMAND", "python -m app")
    credentials_file: str = os.environ.get("CREDENTIALS_FILE", ".env")

    # Staging process
    staging_command: str = os.environ.get("STAGING_COMMAND", "")
    staging_restart_delay: float = float(os.environ.get("STAGING_RESTART_DELAY", "2"))
    staging_log_lines: int = int(os.environ.get("STAGING_LOG_LINES", "200"))

    # Crash handling
    crash_window: float = float(os.environ.get("CRASH_WINDOW", "30"))
    max_crash_retries: int = int(os.environ.get("MAX_CRASH_RETRIES", "2"))
    poll_interval: float = float(os.environ.get("POLL_INTERVAL", "3"))
    restart_delay: float = float(os.environ.get("RESTART_DELAY", "3"))
    rollback_delay: float = float(os.environ.get("ROLLBACK_DELAY", "2"))
    signal_restart_delay: float = float(os.environ.get("SIGNAL_RESTART_DELAY", "2"))
    stop_timeout: float = float(os.environ.get("STOP_TIMEOUT", "5"))
    tick_interval: float = float(os.environ.get("TICK_INTERVAL", "0.5"))

    # Synchronization
    unit_dir: str = os.environ.get("UNIT_DIR", "skills")
    protected_subfolder: str = os.environ.get("PROTECTED_SUBFOLDER", "data")
    restorable_paths: tuple[str, ...] = _env_list("RESTORABLE_PATHS", "src,skills")

    def __post_init__(self):
        """Initialize derived paths and create directories."""
        self.live_root = Path(self.live_root)
        self.data_dir = Path(self.data_dir)
        if self.staging_root is None:
            self.staging_root = self.live_root / "staging"
        if self.backup_root is None:
            self.backup_root = self.live_root / "backups"
        if self.signal_file is None:
            self.signal_file = self.live_root / ".restart-signal"
        if self.upgrade_context_file is None:
            self.upgrade_context_file = self.live_root / ".upgrade-context"
        if self.process_log is None:
            self.process_log = self.live_root / "logs" / "live.log"
        if self.staging_log is None:
            self.staging_log = self.staging_root / "logs" / "staging.log"
        if not self.staging_command:
            self.staging_command = self.command
        self.db_path = self.data_dir / "supervisor.db"
        self.supervisor_log = self.data_dir / "supervisor.log"

        # Create directories
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def credentials_path(self) -> Path | None:
        """Credentials file the managed process needs, or None when unchecked."""
        if not self.credentials_file:
            return None
        return self.live_root / self.credentials_file

    @property
    def staging_credentials_path(self) -> Path | None:
        """Credentials file of the staging instance, or None when unchecked."""
        if not self.credentials_file:
            return None
        return self.staging_root / self.credentials_file


config = Config()
