"""
One-way directory synchronization between staging and live.

Top-level entries of the source replace their destination counterparts
wholesale, destination entries missing from the source are removed, and
excluded entries are never touched on either side. The per-unit directory
is merged one level deeper instead: units removed upstream are deleted,
units present in the source are refreshed, and each unit's protected data
folder is left as it is in the destination.

Planning is pure; ``compute_plan`` only reads the two trees, which is what
dry runs report. ``sync`` applies the plan.
"""

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from .errors import NothingToSyncError, SyncError
from .policy import PathPolicy

logger = logging.getLogger(__name__)


@dataclass
class UnitPlan:
    """Merge actions inside the per-unit directory."""

    name: str
    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    preserved: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "added": self.added,
            "updated": self.updated,
            "removed": self.removed,
            "preserved": self.preserved,
        }


@dataclass
class SyncPlan:
    """Actions for one synchronization pass. Never persisted."""

    source: Path
    destination: Path
    copy: list[str] = field(default_factory=list)
    skip: list[str] = field(default_factory=list)
    remove: list[str] = field(default_factory=list)
    units: UnitPlan | None = None

    @property
    def touched(self) -> list[str]:
        """Top-level destination paths the pass will overwrite or delete."""
        return self.copy + self.remove

    def to_dict(self) -> dict:
        return {
            "source": str(self.source),
            "destination": str(self.destination),
            "copy": self.copy,
            "skip": self.skip,
            "remove": self.remove,
            "units": self.units.to_dict() if self.units else None,
        }


@dataclass
class SyncReport:
    copied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"copied": self.copied, "skipped": self.skipped, "removed": self.removed}


def _list_names(path: Path) -> list[str]:
    if not path.is_dir():
        return []
    return sorted(os.listdir(path))


def _plan_units(name: str, src_units: Path, dest_units: Path, policy: PathPolicy) -> UnitPlan:
    plan = UnitPlan(name=name)
    src_names = set(_list_names(src_units))
    dest_names = set(_list_names(dest_units))

    plan.removed = sorted(dest_names - src_names)
    for unit in sorted(src_names):
        if unit not in dest_names:
            plan.added.append(unit)
            continue
        plan.updated.append(unit)
        dest_unit = dest_units / unit
        if dest_unit.is_dir() and (src_units / unit).is_dir():
            for entry in _list_names(dest_unit):
                if policy.is_protected_subfolder(entry) and (dest_unit / entry).is_dir():
                    plan.preserved.append(f"{unit}/{entry}")
    return plan


def compute_plan(src_root: Path, dest_root: Path, policy: PathPolicy) -> SyncPlan:
    """Compute what a sync from ``src_root`` to ``dest_root`` would do.

    Raises NothingToSyncError if nothing is left after exclusion.
    """
    src_root = Path(src_root)
    dest_root = Path(dest_root)
    plan = SyncPlan(source=src_root, destination=dest_root)

    src_names = _list_names(src_root)
    for name in src_names:
        if policy.is_excluded(name):
            plan.skip.append(name)
        else:
            plan.copy.append(name)

    if not plan.copy:
        raise NothingToSyncError(
            f"Nothing to synchronize: {src_root} is empty or only contains excluded paths"
        )

    present = set(src_names)
    plan.remove = [
        name
        for name in _list_names(dest_root)
        if name not in present and not policy.is_excluded(name)
    ]

    for name in plan.copy:
        if policy.is_unit_dir(name) and (src_root / name).is_dir():
            plan.units = _plan_units(name, src_root / name, dest_root / name, policy)

    return plan


def remove_path(path: Path):
    """Delete a file, symlink or directory tree if it exists."""
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


def replace_path(src: Path, dest: Path):
    """Replace ``dest`` wholesale with a copy of ``src``."""
    remove_path(dest)
    if src.is_dir() and not src.is_symlink():
        shutil.copytree(src, dest, symlinks=True)
    else:
        shutil.copy2(src, dest, follow_symlinks=False)


def _merge_unit(src_unit: Path, dest_unit: Path, policy: PathPolicy):
    """Refresh one existing unit, leaving its protected subfolders alone."""
    if not dest_unit.is_dir() or dest_unit.is_symlink():
        remove_path(dest_unit)
        dest_unit.mkdir(parents=True)

    src_entries = set(os.listdir(src_unit))
    for entry in os.listdir(dest_unit):
        if policy.is_protected_subfolder(entry):
            continue
        if entry not in src_entries:
            remove_path(dest_unit / entry)

    for entry in sorted(src_entries):
        src_path = src_unit / entry
        if policy.is_protected_subfolder(entry) and (src_path.is_dir() or (dest_unit / entry).is_dir()):
            # Instance-local data stays as the destination has it
            continue
        replace_path(src_path, dest_unit / entry)


def merge_units(src_units: Path, dest_units: Path, policy: PathPolicy):
    """Merge the per-unit directory instead of replacing it."""
    if dest_units.exists() and not dest_units.is_dir():
        remove_path(dest_units)
    dest_units.mkdir(parents=True, exist_ok=True)

    src_names = set(os.listdir(src_units))
    for unit in os.listdir(dest_units):
        if unit not in src_names:
            logger.info(f"Removing unit {unit} (absent from {src_units})")
            remove_path(dest_units / unit)

    for unit in sorted(src_names):
        src_unit = src_units / unit
        dest_unit = dest_units / unit
        if not src_unit.is_dir() or src_unit.is_symlink():
            replace_path(src_unit, dest_unit)
        elif not dest_unit.exists():
            shutil.copytree(src_unit, dest_unit, symlinks=True)
        else:
            _merge_unit(src_unit, dest_unit, policy)


def apply_plan(plan: SyncPlan, policy: PathPolicy) -> SyncReport:
    """Apply a computed plan.

    On error, raises SyncError whose ``completed`` lists the entries that
    were fully applied before the failure.
    """
    report = SyncReport(skipped=list(plan.skip))
    completed: list[str] = []
    plan.destination.mkdir(parents=True, exist_ok=True)

    for name in plan.copy:
        src = plan.source / name
        dest = plan.destination / name
        try:
            if plan.units is not None and name == plan.units.name:
                merge_units(src, dest, policy)
            else:
                replace_path(src, dest)
        except OSError as e:
            logger.error(f"Sync failed at {name}: {e}")
            raise SyncError(f"Failed to synchronize {name}: {e}", completed, failed=name) from e
        completed.append(name)
        report.copied.append(name)

    for name in plan.remove:
        try:
            remove_path(plan.destination / name)
        except OSError as e:
            logger.error(f"Sync failed removing {name}: {e}")
            raise SyncError(f"Failed to remove {name}: {e}", completed, failed=name) from e
        completed.append(name)
        report.removed.append(name)

    logger.info(
        f"Synchronized {plan.source} -> {plan.destination}: "
        f"{len(report.copied)} copied, {len(report.removed)} removed, {len(report.skipped)} skipped"
    )
    return report


def sync(src_root: Path, dest_root: Path, policy: PathPolicy) -> SyncReport:
    """Plan and apply a one-way sync from ``src_root`` to ``dest_root``."""
    return apply_plan(compute_plan(src_root, dest_root, policy), policy)
