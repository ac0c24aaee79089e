"""Exceptions raised by the synchronization, backup and supervision layers."""

from pathlib import Path


class SyncError(Exception):
    """A synchronization pass failed partway.

    ``completed`` lists the top-level entries that were fully applied before
    the failure, in the order they were processed.
    """

    def __init__(self, message: str, completed: list[str], failed: str | None = None):
        super().__init__(message)
        self.completed = list(completed)
        self.failed = failed


class NothingToSyncError(ValueError):
    """The source root has no entries left after exclusion."""


class BackupError(Exception):
    """Backup creation failed; the destination must not be touched."""

    def __init__(self, message: str, backup_dir: Path | None = None, completed: list[str] | None = None):
        super().__init__(message)
        self.backup_dir = backup_dir
        self.completed = list(completed or [])


class FatalSupervisorError(Exception):
    """Crash loop with no backup to fall back to."""
