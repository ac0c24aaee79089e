"""
Promotion (staging -> live) and revert (live -> staging).

Promotion backs up every live path it is about to touch, synchronizes
staging into live, records an upgrade context for the restarted application
and hands off to the watchdog through the restart signal. Revert resets
staging to match live using the same path policy; it takes no backup and
requests no restart, the caller stops the staging process around it.

Both are blocking and share one lock, so only one deployment runs at a time.
"""

import logging
import threading
from typing import Callable, Optional

from . import backups
from .config import Config, config
from .errors import BackupError, NothingToSyncError, SyncError
from .policy import PathPolicy
from .results import Failure, FailureKind, OperationResult, PartialFailure, SoftSuccess, Success
from .signals import RecordSlot, RestartSignal, UpgradeContext
from .sync import apply_plan, compute_plan

logger = logging.getLogger(__name__)

MIXED_STATE_WARNING = (
    "WARNING: the live tree may now be in a mixed, inconsistent state. "
    "Some paths were updated from staging and others were not."
)


class DeploymentManager:
    """Runs promotions and reverts for one staging/live pair."""

    def __init__(self, cfg: Config = config, policy: PathPolicy | None = None):
        self.config = cfg
        self.policy = policy or PathPolicy.from_config(cfg)
        self.restart_slot = RecordSlot(cfg.signal_file, RestartSignal)
        self.upgrade_slot = RecordSlot(cfg.upgrade_context_file, UpgradeContext)
        self._lock = threading.Lock()
        self._on_deployment: Optional[Callable[[str, OperationResult], None]] = None

    def set_deployment_callback(self, callback: Callable[[str, OperationResult], None]):
        """Set callback for finished deployments: callback(kind, result)."""
        self._on_deployment = callback

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    def promote(self, version: str | None = None, dry_run: bool = False, skip_restart: bool = False) -> OperationResult:
        """Promote staging to live."""
        if not self._lock.acquire(blocking=False):
            return Failure("A promotion or revert is already in progress", kind=FailureKind.BUSY)
        try:
            result = self._promote(version, dry_run, skip_restart)
        finally:
            self._lock.release()
        if not dry_run:
            self._notify("promote", result)
        return result

    def revert(self, dry_run: bool = False) -> OperationResult:
        """Reset staging to match live."""
        if not self._lock.acquire(blocking=False):
            return Failure("A promotion or revert is already in progress", kind=FailureKind.BUSY)
        try:
            result = self._revert(dry_run)
        finally:
            self._lock.release()
        if not dry_run:
            self._notify("revert", result)
        return result

    def _notify(self, kind: str, result: OperationResult):
        if not self._on_deployment:
            return
        try:
            self._on_deployment(kind, result)
        except Exception as e:
            logger.error(f"Deployment callback failed: {e}")

    def _promote(self, version: str | None, dry_run: bool, skip_restart: bool) -> OperationResult:
        cfg = self.config
        if not cfg.staging_root.is_dir():
            return Failure(f"Staging directory not found: {cfg.staging_root}", kind=FailureKind.CONFIGURATION)

        if version:
            parsed = backups.parse_version(version)
            if parsed is None:
                return Failure(
                    f"Invalid version label {version!r}. Expected something like 'v1.10'",
                    kind=FailureKind.CONFIGURATION,
                )
            version = "v{}.{}".format(*parsed)
        else:
            version = backups.infer_next_version(cfg.backup_root)

        try:
            plan = compute_plan(cfg.staging_root, cfg.live_root, self.policy)
        except NothingToSyncError as e:
            return Failure(str(e), kind=FailureKind.CONFIGURATION)

        if dry_run:
            return Success(
                "Dry run - no changes made. Protected unit folders are preserved in live.",
                data={"dry_run": True, "version": version, "plan": plan.to_dict(), "policy": self.policy.to_dict()},
            )

        logger.info(f"Promoting {cfg.staging_root} -> {cfg.live_root} as {version}")

        try:
            backup_dir = backups.create_backup(cfg.live_root, plan.touched, version, cfg.backup_root)
        except BackupError as e:
            return Failure(
                f"{e}. Promotion aborted - live is untouched. Partial backup left at {e.backup_dir}",
                data={"version": version, "backup_dir": str(e.backup_dir) if e.backup_dir else None},
                kind=FailureKind.IO,
            )

        try:
            report = apply_plan(plan, self.policy)
        except SyncError as e:
            logger.critical(f"Promotion to {version} failed mid-sync: {e}. {MIXED_STATE_WARNING}")
            return PartialFailure(
                f"Promotion failed mid-copy. {MIXED_STATE_WARNING} Backup available at {backup_dir}",
                data={"version": version, "failed": e.failed},
                error=str(e),
                completed=e.completed,
                backup_dir=str(backup_dir),
            )

        data = {
            "version": version,
            "promoted": report.copied,
            "removed": report.removed,
            "skipped": report.skipped,
            "backup_dir": str(backup_dir),
            "backup_name": backup_dir.name,
        }
        follow_ups = []

        try:
            self.upgrade_slot.put(UpgradeContext(version=version, promoted=report.copied, backup_dir=str(backup_dir)))
        except OSError as e:
            logger.error(f"Failed to write upgrade context: {e}")
            follow_ups.append(f"Upgrade context not written ({e})")

        if skip_restart:
            data["restart"] = "Skipped. You'll need to restart manually."
        else:
            try:
                self.restart_slot.put(
                    RestartSignal(
                        reason=f"Promotion to {version}",
                        requested_by="promote",
                        backup_dir=str(backup_dir),
                    )
                )
                data["restart"] = "Restart signal written. The watchdog will restart the managed process."
            except OSError as e:
                logger.error(f"Promotion succeeded but restart signal failed: {e}")
                data["restart"] = f"Restart signal failed: {e}"
                follow_ups.append(f"Restart signal failed ({e}). Manual restart needed")

        message = f"Promotion complete! {len(report.copied)} paths updated from staging to live."
        if follow_ups:
            return SoftSuccess(message, data=data, follow_up="; ".join(follow_ups))
        return Success(message, data=data)

    def _revert(self, dry_run: bool) -> OperationResult:
        cfg = self.config
        if not cfg.staging_root.is_dir():
            return Failure(f"Staging directory not found: {cfg.staging_root}", kind=FailureKind.CONFIGURATION)

        try:
            plan = compute_plan(cfg.live_root, cfg.staging_root, self.policy)
        except NothingToSyncError as e:
            return Failure(str(e), kind=FailureKind.CONFIGURATION)

        if dry_run:
            return Success(
                "Dry run - no changes made. Staging would be reset to match live.",
                data={"dry_run": True, "plan": plan.to_dict(), "policy": self.policy.to_dict()},
            )

        logger.info(f"Reverting {cfg.staging_root} to match {cfg.live_root}")
        try:
            report = apply_plan(plan, self.policy)
        except SyncError as e:
            return PartialFailure(
                "Revert failed partway. Staging may be in a mixed state; run revert again.",
                error=str(e),
                completed=e.completed,
            )

        return Success(
            f"Staging reverted to match live. {len(report.copied)} paths copied, "
            f"{len(report.skipped)} skipped (instance-specific).",
            data=report.to_dict(),
        )

    def self_restart(self, reason: str = "Manual restart requested", requested_by: str = "operator") -> OperationResult:
        """Ask the watchdog to restart the managed process."""
        try:
            self.restart_slot.put(RestartSignal(reason=reason, requested_by=requested_by))
        except OSError as e:
            return Failure(f"Failed to write restart signal: {e}", kind=FailureKind.IO)
        return Success(
            "Restart signal written. The watchdog will pick it up and restart the managed process.",
            data={"signal_file": str(self.restart_slot.path)},
        )
