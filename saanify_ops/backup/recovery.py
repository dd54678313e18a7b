"""Restore, rollback and auto-recovery against the primary data store."""

import logging
import os
import socket
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from ..datastore.accounts import bootstrap_super_admin
from ..datastore.base import COLLECTIONS, REFERENCES, SUPER_ADMIN_ROLE, DataStore, normalize_record
from ..utils.errors import (
    BusyError,
    DataStoreError,
    IntegrityError,
    NotFoundError,
    PartialFailureError,
    SaanifyOpsError,
    create_error_suggestions,
)
from ..utils.files import FileManager
from .manager import BackupManager
from .models import ActionStatus, RecoveryAction, timestamp_slug, utc_now

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".recovery.lock"

ISSUE_NO_SUPER_ADMIN = "No super admin found"
ISSUE_NO_USERS = "No users found"
ISSUE_NO_SOCIETIES = "No societies found"


def read_lock_owner(path: str) -> Optional[Tuple[str, int]]:
    """Host and pid recorded in a recovery lock file, or None if unreadable."""
    try:
        with open(path, encoding="utf-8") as f:
            fields = f.read().split()
        if len(fields) == 1:
            return socket.gethostname(), int(fields[0])
        host, pid = fields
        return host, int(pid)
    except (OSError, ValueError):
        return None


def lock_owner_alive(host: str, pid: int) -> bool:
    """Whether a lock owner may still be running; owners on other hosts are assumed alive."""
    if host != socket.gethostname():
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class RecoveryEngine:
    """
    Restores backup units into the live data store.

    Restore, rollback and auto-recovery are mutually exclusive: within the
    process through a non-blocking lock, across processes through a lock
    file in the backups directory. Callers should quiesce application
    traffic before invoking any of them.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        store: DataStore,
        backup_manager: BackupManager,
        verbose: bool = False,
    ):
        """
        Initialize recovery engine.

        Args:
            config: Resolved saanify-ops configuration
            store: Live primary data store
            backup_manager: Source of backup units
            verbose: Enable verbose output
        """
        self.config = config
        self.store = store
        self.backup_manager = backup_manager
        self.verbose = verbose
        self.file_manager = FileManager(verbose=verbose)

        self.backups_dir = config["paths"]["backups_dir"]
        self.audit_dir = os.path.join(config["paths"]["logs_dir"], "recovery")
        self.lock_file = os.path.join(self.backups_dir, LOCK_FILENAME)
        self._lock = threading.Lock()

    def restore(self, backup_id: str, restore_files: bool = False) -> RecoveryAction:
        """
        Replace the live data with the contents of a backup.

        Args:
            backup_id: Backup unit to restore
            restore_files: Also write back the unit's critical project files and,
                for encrypted units, the env file

        Returns:
            RecoveryAction: Completed action with restored counts per collection

        Raises:
            BusyError: If another recovery operation is running
            NotFoundError: If the backup does not exist
            IntegrityError: If verification fails (the live store is untouched)
            PartialFailureError: If applying the target state failed part-way
        """
        with self._exclusive():
            return self._run_action(
                "restore", backup_id, lambda action: self._restore_state(backup_id, restore_files=restore_files)
            )

    def rollback(self) -> RecoveryAction:
        """
        Restore the most recent valid backup.

        Raises:
            NotFoundError: If there is no backup
        """
        with self._exclusive():
            return self._run_action("rollback", "latest", lambda action: self._rollback_state())

    def auto_recover(self) -> Dict[str, Any]:
        """
        Diagnose the live store and repair it.

        Scripted fixes run first; if issues remain and a backup exists the
        store is rolled back to it.

        Returns:
            Dict[str, Any]: Report with status (healthy, recovered or failed),
            issues, fixes, rollback and the recovery action id
        """
        with self._exclusive():
            action = self._run_action("repair", "live-store", self._repair)
            report = dict(action.result)
            report["action_id"] = action.id
            return report

    def history(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Most recent recovery audit records."""
        if not os.path.isdir(self.audit_dir):
            return []

        names = sorted((name for name in os.listdir(self.audit_dir) if name.endswith(".json")), reverse=True)
        records = []
        for name in names:
            try:
                records.append(self.file_manager.read_json(os.path.join(self.audit_dir, name)))
            except (OSError, ValueError) as e:
                logger.warning("Skipping unreadable audit record %s: %s", name, e)
        records.sort(key=lambda record: record.get("started_at") or "", reverse=True)
        return records[:limit]

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        """Hold the recovery lock for the duration of an operation."""
        if not self._lock.acquire(blocking=False):
            raise BusyError(
                "Another recovery operation is already running",
                suggestions=create_error_suggestions("recovery_busy", lock_file=self.lock_file),
            )

        try:
            os.makedirs(self.backups_dir, exist_ok=True)
            fd = self._create_lock_file()

            with os.fdopen(fd, "w") as f:
                f.write(f"{socket.gethostname()} {os.getpid()}\n")

            try:
                yield
            finally:
                try:
                    os.remove(self.lock_file)
                except FileNotFoundError:
                    logger.warning("Recovery lock file %s vanished before release", self.lock_file)
        finally:
            self._lock.release()

    def _create_lock_file(self) -> int:
        """Create the lock file exclusively, reclaiming it once if its owner is gone."""
        flags = os.O_CREAT | os.O_EXCL | os.O_WRONLY
        try:
            return os.open(self.lock_file, flags, 0o600)
        except FileExistsError as e:
            owner = read_lock_owner(self.lock_file)
            if owner is None or lock_owner_alive(*owner):
                raise self._busy(owner) from e

        logger.warning("Reclaiming stale recovery lock %s held by %s:%d", self.lock_file, *owner)
        try:
            os.remove(self.lock_file)
        except FileNotFoundError:
            logger.debug("Stale recovery lock %s already removed", self.lock_file)

        try:
            return os.open(self.lock_file, flags, 0o600)
        except FileExistsError as e:
            raise self._busy(read_lock_owner(self.lock_file)) from e

    def _busy(self, owner: Optional[Tuple[str, int]]) -> BusyError:
        holder = f" (held by {owner[0]}:{owner[1]})" if owner else ""
        return BusyError(
            "Another recovery operation is already running",
            details=f"Lock file present: {self.lock_file}{holder}",
            suggestions=create_error_suggestions("recovery_busy", lock_file=self.lock_file),
        )

    def _run_action(self, kind: str, target: str, operation: Callable[[RecoveryAction], Dict[str, Any]]) -> RecoveryAction:
        """Drive a RecoveryAction through its lifecycle, auditing every transition."""
        action = RecoveryAction(id=f"{kind}-{timestamp_slug(utc_now())}", kind=kind, target=target)
        self._audit(action)

        action.transition(ActionStatus.RUNNING)
        self._audit(action)

        if self.verbose:
            print(f"Recovery action {action.id} running ({kind} -> {target})")

        try:
            result = operation(action)
        except SaanifyOpsError as e:
            action.fail(e.to_dict())
            self._audit(action)
            logger.error("Recovery action %s failed: %s", action.id, e.message)
            raise
        except Exception as e:
            action.fail({"kind": type(e).__name__, "message": str(e)})
            self._audit(action)
            logger.error("Recovery action %s failed: %s", action.id, e)
            raise

        action.complete(result)
        self._audit(action)

        if self.verbose:
            print(f"Recovery action {action.id} completed")

        return action

    def _audit(self, action: RecoveryAction) -> None:
        """Persist the action's current state."""
        os.makedirs(self.audit_dir, exist_ok=True)
        self.file_manager.write_json(os.path.join(self.audit_dir, f"{action.id}.json"), action.to_dict())

    def _rollback_state(self) -> Dict[str, Any]:
        """Restore the latest backup; used by rollback and auto-recovery."""
        latest = self.backup_manager.latest()
        if latest is None:
            raise NotFoundError(
                "No backup available to roll back to",
                suggestions=create_error_suggestions("backup_missing"),
            )

        result = self._restore_state(latest.id)
        result["backup_timestamp"] = latest.timestamp
        return result

    def _restore_state(self, backup_id: str, restore_files: bool = False) -> Dict[str, Any]:
        """Verify, stage and apply a backup without taking the lock."""
        payload = self.backup_manager.load_verified_payload(backup_id)
        file_plan = self._plan_file_restore(backup_id) if restore_files else None
        staged = self._stage(backup_id, payload["collections"])
        total = sum(len(records) for records in staged.values())

        if self.verbose:
            print(f"Applying backup {backup_id}: {total} records")

        progress = {"applied": 0}

        if self.store.supports_transactions:
            try:
                with self.store.transaction():
                    self._apply(staged, progress)
            except (DataStoreError, OSError) as e:
                raise PartialFailureError(
                    f"Restore of {backup_id} failed; the transaction was rolled back and the store is unchanged",
                    applied=progress["applied"],
                    pending=total - progress["applied"],
                    rolled_back=True,
                    details=getattr(e, "message", str(e)),
                    suggestions=create_error_suggestions("partial_restore", backup_dir=self.backups_dir),
                ) from e
        else:
            pre_restore = self._stage("pre-restore", self.store.export())
            try:
                self._apply(staged, progress)
            except (DataStoreError, OSError) as e:
                compensated, compensation_error = self._compensate(pre_restore)
                details = getattr(e, "message", str(e))
                if compensation_error:
                    details = f"{details}; re-applying the pre-restore state also failed: {compensation_error}"
                raise PartialFailureError(
                    f"Restore of {backup_id} failed after {progress['applied']} of {total} records",
                    applied=progress["applied"],
                    pending=total - progress["applied"],
                    rolled_back=compensated,
                    details=details,
                    suggestions=create_error_suggestions("partial_restore", backup_dir=self.backups_dir),
                ) from e

        restored = {collection: len(staged[collection]) for collection in COLLECTIONS}
        logger.info("Restored backup %s: %s", backup_id, restored)

        result = {
            "backup_id": backup_id,
            "restored": restored,
            "migrations_at_backup": list(payload.get("migrations", [])),
        }
        if file_plan is not None:
            result["files"] = self._write_files(backup_id, file_plan)
        return result

    def _plan_file_restore(self, backup_id: str) -> Dict[str, Any]:
        """
        Decide which project files a restore writes, before the store is touched.

        Raises:
            IntegrityError: If the unit names a path outside the project root
        """
        project = self.backup_manager.load_project_state(backup_id)
        root = os.path.realpath(self.config["project"]["root"])

        writes: List[Tuple[str, str, str, bool]] = []
        skipped: List[str] = []
        for rel_path, content in sorted(project["files"].items()):
            if not isinstance(content, str):
                skipped.append(rel_path)
                continue
            target = os.path.realpath(os.path.join(root, rel_path))
            if os.path.commonpath([root, target]) != root:
                raise IntegrityError(
                    f"Backup {backup_id} lists a file outside the project root: {rel_path}",
                    suggestions=create_error_suggestions("backup_corrupted", backup_dir=self.backups_dir),
                )
            writes.append((rel_path, target, content, False))

        env_file = self.config["paths"].get("env_file")
        env_content = project.get("env_file_content")
        if env_file and isinstance(env_content, str):
            writes.append((os.path.basename(env_file), env_file, env_content, True))

        return {"writes": writes, "skipped": skipped, "env_file": env_file is not None and isinstance(env_content, str)}

    def _write_files(self, backup_id: str, plan: Dict[str, Any]) -> Dict[str, Any]:
        """Write planned project files; the data restore has already committed."""
        written: List[str] = []
        for rel_path, target, content, private in plan["writes"]:
            try:
                os.makedirs(os.path.dirname(target), exist_ok=True)
                self.file_manager.write_bytes(target, content.encode("utf-8"), private=private)
            except OSError as e:
                raise PartialFailureError(
                    f"Data from {backup_id} was restored but writing project files failed at {rel_path}",
                    applied=len(written),
                    pending=len(plan["writes"]) - len(written),
                    rolled_back=False,
                    details=str(e),
                    suggestions=create_error_suggestions("partial_restore", backup_dir=self.backups_dir),
                ) from e
            written.append(rel_path)

        logger.info("Restored %d project files from %s", len(written), backup_id)
        return {"written": written, "skipped": plan["skipped"], "env_file_restored": plan["env_file"]}

    def _compensate(self, pre_restore: Dict[str, List[Dict[str, Any]]]) -> Tuple[bool, Optional[str]]:
        """Re-apply the pre-restore snapshot after a failed non-transactional restore."""
        try:
            self._apply(pre_restore, {"applied": 0})
        except (DataStoreError, OSError) as e:
            logger.error("Compensation after failed restore did not complete: %s", e)
            return False, getattr(e, "message", str(e))
        return True, None

    def _stage(self, source: str, collections: Dict[str, Any]) -> Dict[str, List[Dict[str, Any]]]:
        """
        Build the full target state and check its referential integrity.

        Raises:
            IntegrityError: If records are malformed, duplicated or dangling
        """
        staged: Dict[str, List[Dict[str, Any]]] = {}

        for collection in COLLECTIONS:
            records = collections.get(collection, [])
            if not isinstance(records, list):
                raise IntegrityError(f"Collection {collection} in {source} is not a list")

            seen = set()
            staged[collection] = []
            for record in records:
                try:
                    normalized = normalize_record(collection, record)
                except (DataStoreError, TypeError) as e:
                    raise IntegrityError(f"Malformed {collection} record in {source}", details=str(e)) from e

                if normalized["id"] in seen:
                    raise IntegrityError(f"Duplicate {collection} id {normalized['id']} in {source}")
                seen.add(normalized["id"])
                staged[collection].append(normalized)

        for child, references in REFERENCES.items():
            for field, parent in references.items():
                parent_ids = {record["id"] for record in staged[parent]}
                for record in staged[child]:
                    value = record.get(field)
                    if value is not None and value not in parent_ids:
                        raise IntegrityError(
                            f"{child} record {record['id']} in {source} references missing {parent} {value}"
                        )

        return staged

    def _apply(self, state: Dict[str, List[Dict[str, Any]]], progress: Dict[str, int]) -> None:
        """Delete children before parents, then create parents before children."""
        for collection in reversed(COLLECTIONS):
            self.store.delete_all(collection)

        for collection in COLLECTIONS:
            for record in state[collection]:
                self.store.create(collection, record)
                progress["applied"] += 1

    def _diagnose(self) -> Dict[str, Any]:
        """Run the invariant checks against the live store."""
        checks = {
            "super_admins": self.store.count("users", role=SUPER_ADMIN_ROLE),
            "users": self.store.count("users"),
            "societies": self.store.count("society_accounts"),
        }

        issues = []
        if checks["super_admins"] == 0:
            issues.append(ISSUE_NO_SUPER_ADMIN)
        if checks["users"] == 0:
            issues.append(ISSUE_NO_USERS)
        if checks["societies"] == 0:
            issues.append(ISSUE_NO_SOCIETIES)

        return {"issues": issues, "checks": checks}

    def _repair(self, action: RecoveryAction) -> Dict[str, Any]:
        """Scripted fixes first, rollback when they are not enough."""
        diagnosis = self._diagnose()
        report: Dict[str, Any] = {
            "status": "healthy",
            "issues": diagnosis["issues"],
            "fixes": [],
            "rollback": None,
            "remaining_issues": [],
            "checks": diagnosis["checks"],
        }

        if not diagnosis["issues"]:
            if self.verbose:
                print("Auto-recovery: no issues detected")
            return report

        logger.warning("Auto-recovery detected issues: %s", ", ".join(diagnosis["issues"]))

        if ISSUE_NO_SUPER_ADMIN in diagnosis["issues"]:
            report["fixes"].append(self._fix_super_admin())

        remaining = self._diagnose()["issues"]

        if remaining and self.backup_manager.latest() is not None:
            try:
                report["rollback"] = {"success": True, **self._rollback_state()}
            except SaanifyOpsError as e:
                logger.error("Auto-recovery rollback failed: %s", e.message)
                report["rollback"] = {"success": False, "error": e.to_dict()}
        elif remaining:
            report["fixes"].append(
                {"name": "rollback", "success": False, "detail": "No backup available to roll back to"}
            )

        final = self._diagnose()
        remaining = final["issues"]
        report["remaining_issues"] = remaining
        report["checks"] = final["checks"]
        report["status"] = "failed" if remaining else "recovered"
        return report

    def _fix_super_admin(self) -> Dict[str, Any]:
        """Bootstrap the configured super-admin account."""
        bootstrap = self.config["bootstrap"]
        try:
            created = bootstrap_super_admin(self.store, bootstrap)
        except SaanifyOpsError as e:
            return {"name": "bootstrap_super_admin", "success": False, "detail": e.message}

        if created is None:
            return {"name": "bootstrap_super_admin", "success": True, "detail": "Super admin already present"}
        return {"name": "bootstrap_super_admin", "success": True, "detail": f"Created super admin {created['email']}"}
