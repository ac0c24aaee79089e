"""
Versioned backups of the live tree.

A backup is taken before every promotion and holds only the top-level paths
the promotion is about to overwrite or delete. Backup directories are named
``<version>-<timestamp>`` (``v1.10-2026-02-13T10-45-28``); the version label
is inferred from the existing archive. The watchdog restores from the most
recent backup when the managed process crash-loops.
"""

import logging
import re
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable

from .errors import BackupError
from .sync import replace_path

logger = logging.getLogger(__name__)

# Matches "v1.10-..." as well as the older "v-v1.10-..." naming
VERSION_PATTERN = re.compile(r"^(?:v-)?v?(\d+)\.(\d+)(?:-(.*))?$")
TIMESTAMP_FORMAT = "%Y-%m-%dT%H-%M-%S"
INITIAL_VERSION = (1, 0)


@dataclass
class BackupInfo:
    """A backup directory found in the archive."""

    path: Path
    major: int
    minor: int
    timestamp: str

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def version(self) -> str:
        return f"v{self.major}.{self.minor}"

    @property
    def sort_key(self) -> tuple:
        return (self.major, self.minor, self.timestamp)

    def paths(self) -> list[str]:
        return sorted(p.name for p in self.path.iterdir()) if self.path.is_dir() else []

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": str(self.path),
            "version": self.version,
            "timestamp": self.timestamp,
            "paths": self.paths(),
        }


def parse_version(label: str) -> tuple[int, int] | None:
    """Parse ``v1.10`` / ``1.10`` / a backup directory name into (major, minor)."""
    match = VERSION_PATTERN.match(label)
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def next_version(existing: Iterable[str]) -> str:
    """Return the label following the numerically greatest version in ``existing``.

    Only the minor component is incremented, so v1.9 is followed by v1.10.
    """
    versions = [v for v in (parse_version(name) for name in existing) if v is not None]
    major, minor = max(versions) if versions else INITIAL_VERSION
    return f"v{major}.{minor + 1}"


def list_backups(backup_root: Path) -> list[BackupInfo]:
    """List versioned backups, oldest first."""
    backup_root = Path(backup_root)
    if not backup_root.is_dir():
        return []

    backups = []
    for entry in backup_root.iterdir():
        if not entry.is_dir():
            continue
        match = VERSION_PATTERN.match(entry.name)
        if not match:
            continue
        backups.append(
            BackupInfo(
                path=entry,
                major=int(match.group(1)),
                minor=int(match.group(2)),
                timestamp=match.group(3) or "",
            )
        )
    return sorted(backups, key=lambda b: b.sort_key)


def latest_backup(backup_root: Path) -> BackupInfo | None:
    """Most recent backup by version, then timestamp."""
    backups = list_backups(backup_root)
    return backups[-1] if backups else None


def infer_next_version(backup_root: Path) -> str:
    return next_version(b.name for b in list_backups(backup_root))


def create_backup(dest_root: Path, planned_paths: Iterable[str], version: str, backup_root: Path) -> Path:
    """Copy the planned top-level paths of ``dest_root`` into a new backup.

    Paths that do not exist in ``dest_root`` are skipped. On failure raises
    BackupError; whatever was already copied is left on disk.
    """
    timestamp = datetime.now().strftime(TIMESTAMP_FORMAT)
    backup_dir = Path(backup_root) / f"{version}-{timestamp}"
    suffix = 1
    while backup_dir.exists():
        suffix += 1
        backup_dir = Path(backup_root) / f"{version}-{timestamp}-{suffix}"

    copied: list[str] = []
    try:
        backup_dir.mkdir(parents=True)
        for name in planned_paths:
            source = Path(dest_root) / name
            if not source.exists() and not source.is_symlink():
                continue
            if source.is_dir() and not source.is_symlink():
                shutil.copytree(source, backup_dir / name, symlinks=True)
            else:
                shutil.copy2(source, backup_dir / name, follow_symlinks=False)
            copied.append(name)
    except OSError as e:
        logger.error(f"Backup into {backup_dir} failed after {len(copied)} paths: {e}")
        raise BackupError(f"Backup failed: {e}", backup_dir=backup_dir, completed=copied) from e

    logger.info(f"Created backup at {backup_dir} ({', '.join(copied) or 'nothing to preserve'})")
    return backup_dir


def restore_backup(backup: BackupInfo, live_root: Path, restorable_paths: Iterable[str]) -> list[str]:
    """Restore the restorable paths present in ``backup`` over the live tree.

    Returns the names that were restored. Raises OSError on failure.
    """
    restored = []
    for name in restorable_paths:
        source = backup.path / name
        if not source.exists():
            continue
        replace_path(source, Path(live_root) / name)
        restored.append(name)
        logger.info(f"Restored {name}/ from {backup.name}")
    return restored
