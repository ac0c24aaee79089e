"""
Operation results returned to operator tooling.

Every supervisor and deployment operation returns one of four shapes:
Success, SoftSuccess (done, but a secondary step needs manual follow-up),
PartialFailure (some paths changed, backup available) or Failure (nothing
changed).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Optional


class Outcome(Enum):
    SUCCESS = "success"
    SOFT_SUCCESS = "soft_success"
    PARTIAL_FAILURE = "partial_failure"
    FAILURE = "failure"


class FailureKind(Enum):
    CONFIGURATION = "configuration"
    BUSY = "busy"
    IO = "io"
    PROCESS = "process"


@dataclass
class OperationResult:
    """Base shape shared by all outcomes."""

    outcome: ClassVar[Outcome]

    message: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.outcome in (Outcome.SUCCESS, Outcome.SOFT_SUCCESS)

    def to_dict(self) -> dict:
        return {"outcome": self.outcome.value, "ok": self.ok, "message": self.message, **self.data}


@dataclass
class Success(OperationResult):
    outcome: ClassVar[Outcome] = Outcome.SUCCESS


@dataclass
class SoftSuccess(OperationResult):
    """Succeeded, but a non-critical step failed and needs manual follow-up."""

    outcome: ClassVar[Outcome] = Outcome.SOFT_SUCCESS

    follow_up: str = ""

    def to_dict(self) -> dict:
        return {**super().to_dict(), "follow_up": self.follow_up}


@dataclass
class PartialFailure(OperationResult):
    """Some paths were changed before an error; the tree may be inconsistent."""

    outcome: ClassVar[Outcome] = Outcome.PARTIAL_FAILURE

    error: str = ""
    completed: list[str] = field(default_factory=list)
    backup_dir: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "error": self.error,
            "completed": self.completed,
            "backup_dir": self.backup_dir,
        }


@dataclass
class Failure(OperationResult):
    """Refused or failed without changing anything."""

    outcome: ClassVar[Outcome] = Outcome.FAILURE

    kind: FailureKind = FailureKind.IO

    def to_dict(self) -> dict:
        return {**super().to_dict(), "kind": self.kind.value}
