"""
File-based records exchanged through the live root.

The restart signal is a single-slot durable channel: any writer (the
operator API, a promotion, the managed process itself) puts a record, and
the watchdog takes it, deleting the file before acting on it. The upgrade
context uses the same slot mechanics; it is written by a promotion and
consumed once by the restarted application.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Generic, Optional, TypeVar

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now().astimezone().isoformat()


@dataclass
class RestartSignal:
    """Request for the watchdog to restart the managed process."""

    reason: str
    requested_by: str = "operator"
    timestamp: str = field(default_factory=_now)
    backup_dir: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"timestamp": self.timestamp, "reason": self.reason, "requestedBy": self.requested_by}
        if self.backup_dir:
            data["backupDir"] = self.backup_dir
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "RestartSignal":
        return cls(
            reason=str(data.get("reason", "unspecified")),
            requested_by=str(data.get("requestedBy", "unknown")),
            timestamp=str(data.get("timestamp", "")),
            backup_dir=data.get("backupDir"),
        )


@dataclass
class UpgradeContext:
    """What a promotion changed, for the restarted application to announce."""

    version: str
    promoted: list[str]
    backup_dir: Optional[str] = None
    timestamp: str = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "promoted": self.promoted,
            "timestamp": self.timestamp,
            "backupDir": self.backup_dir,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UpgradeContext":
        return cls(
            version=str(data.get("version", "")),
            promoted=list(data.get("promoted") or []),
            backup_dir=data.get("backupDir"),
            timestamp=str(data.get("timestamp", "")),
        )

    @classmethod
    def consume(cls, path: Path) -> Optional["UpgradeContext"]:
        """Read and delete the upgrade context, if one was left by a promotion."""
        return RecordSlot(path, cls).take()


T = TypeVar("T", RestartSignal, UpgradeContext)


class RecordSlot(Generic[T]):
    """A persistent queue of depth one backed by a single JSON file."""

    def __init__(self, path: Path, record_type: type[T]):
        self.path = Path(path)
        self.record_type = record_type

    def put(self, record: T):
        """Write the record, replacing any pending one. Raises OSError."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f"{self.path.name}.tmp")
        with open(tmp, "w") as f:
            json.dump(record.to_dict(), f, indent=2)
        os.replace(tmp, self.path)

    def pending(self) -> bool:
        return self.path.exists()

    def take(self) -> T | None:
        """Consume the pending record.

        The file is deleted before returning. A malformed file is deleted and
        reported as no record.
        """
        try:
            with open(self.path) as f:
                raw = f.read()
        except FileNotFoundError:
            return None

        self.clear()
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("record is not an object")
            return self.record_type.from_dict(data)
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Discarded malformed record {self.path}: {e}")
            return None

    def clear(self) -> bool:
        """Delete the pending record. Returns True if one existed."""
        try:
            self.path.unlink()
            return True
        except FileNotFoundError:
            return False
