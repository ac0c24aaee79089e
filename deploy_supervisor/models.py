"""
Database models for supervisor history.

Uses Peewee ORM with SQLite. Stores watchdog lifecycle events (starts,
exits, crashes, rollbacks, restarts) and the outcome of every promotion and
revert, for the operator API to show.
"""

import json
import os
from datetime import datetime

from peewee import (
    AutoField,
    CharField,
    DatabaseProxy,
    DateTimeField,
    IntegerField,
    Model,
    SqliteDatabase,
    TextField,
)

from .results import OperationResult

database = DatabaseProxy()


def initialize_db(db_path):
    """Initialize database connection and create tables."""
    os.makedirs(os.path.dirname(str(db_path)), exist_ok=True)
    db = SqliteDatabase(
        str(db_path),
        pragmas={
            "journal_mode": "wal",
            "cache_size": -64 * 1000,
            "busy_timeout": 5000,
        },
        check_same_thread=False,
    )
    database.initialize(db)
    database.create_tables([SupervisorEvent, Deployment], safe=True)


class BaseModel(Model):
    """Base model with common configuration."""

    class Meta:
        database = database


class SupervisorEvent(BaseModel):
    """A lifecycle event of the managed process."""

    id = AutoField()
    kind = CharField(index=True)  # start, stop, exit, crash, rollback, restart, spawn_error, fatal
    message = TextField()
    pid = IntegerField(null=True)
    exit_code = IntegerField(null=True)
    details = TextField(null=True)  # JSON
    timestamp = DateTimeField(default=datetime.now, index=True)

    class Meta:
        table_name = "supervisor_events"

    @classmethod
    def record(cls, kind: str, message: str, details: dict) -> "SupervisorEvent":
        extra = {k: v for k, v in details.items() if k not in ("pid", "exit_code")}
        return cls.create(
            kind=kind,
            message=message,
            pid=details.get("pid"),
            exit_code=details.get("exit_code"),
            details=json.dumps(extra, default=str) if extra else None,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "message": self.message,
            "pid": self.pid,
            "exit_code": self.exit_code,
            "details": json.loads(self.details) if self.details else {},
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


class Deployment(BaseModel):
    """Outcome of a promotion or revert."""

    id = AutoField()
    kind = CharField(index=True)  # promote, revert
    outcome = CharField()
    version = CharField(null=True)
    message = TextField()
    paths = TextField(null=True)  # JSON list
    backup_dir = CharField(null=True)
    timestamp = DateTimeField(default=datetime.now, index=True)

    class Meta:
        table_name = "deployments"

    @classmethod
    def record(cls, kind: str, result: OperationResult) -> "Deployment":
        data = result.to_dict()
        paths = data.get("promoted") or data.get("copied") or data.get("completed")
        return cls.create(
            kind=kind,
            outcome=result.outcome.value,
            version=data.get("version"),
            message=result.message,
            paths=json.dumps(paths) if paths else None,
            backup_dir=data.get("backup_dir"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "outcome": self.outcome,
            "version": self.version,
            "message": self.message,
            "paths": json.loads(self.paths) if self.paths else [],
            "backup_dir": self.backup_dir,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }
