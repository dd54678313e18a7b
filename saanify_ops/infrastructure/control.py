"""Master control: the token-gated command surface over every ops component."""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from ..backup.manager import BackupManager
from ..backup.recovery import RecoveryEngine
from ..datastore.accounts import tokens_match
from ..datastore.base import SUPER_ADMIN_ROLE, DataStore
from ..datastore.sql import create_datastore
from ..utils.cancellation import CancellationToken
from ..utils.errors import (
    ConfigurationError,
    NotFoundError,
    SaanifyOpsError,
    UnauthorizedError,
    create_error_suggestions,
)
from ..validation.health import HealthChecker
from .deployment import DeploymentOrchestrator

logger = logging.getLogger(__name__)

ACTIONS = (
    "create-backup",
    "list-backups",
    "verify-backup",
    "restore",
    "rollback",
    "auto-recover",
    "full-auto-deploy",
    "health-check",
    "emergency-rollback",
    "system-status",
)

# Accepted spellings of pipeline options
_OPTION_ALIASES = {
    "force": "force",
    "skip_backup": "skip_backup",
    "skipBackup": "skip_backup",
    "skip_health": "skip_health",
    "skipHealth": "skip_health",
    "restore_files": "restore_files",
    "restoreFiles": "restore_files",
}


def _normalize_options(options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    normalized = {"force": False, "skip_backup": False, "skip_health": False, "restore_files": False}
    for key, value in (options or {}).items():
        normalized[_OPTION_ALIASES.get(key, key)] = value
    return normalized


class MasterControl:
    """Executes named ops actions and returns JSON-shaped results."""

    def __init__(
        self,
        config: Dict[str, Any],
        store: Optional[DataStore] = None,
        verbose: bool = False,
        backup_manager: Optional[BackupManager] = None,
        recovery_engine: Optional[RecoveryEngine] = None,
        health_checker: Optional[HealthChecker] = None,
        orchestrator: Optional[DeploymentOrchestrator] = None,
    ):
        """
        Initialize master control, wiring default components from config.

        Args:
            config: Resolved saanify-ops configuration
            store: Primary data store (defaults to database.url)
            verbose: Enable verbose output
            backup_manager: Backup manager override
            recovery_engine: Recovery engine override
            health_checker: Health checker override
            orchestrator: Deployment orchestrator override
        """
        self.config = config
        self.verbose = verbose
        self.store = store or create_datastore(config)
        self.backup_manager = backup_manager or BackupManager(config, self.store, verbose=verbose)
        self.recovery_engine = recovery_engine or RecoveryEngine(config, self.store, self.backup_manager, verbose=verbose)
        self.health_checker = health_checker or HealthChecker(config, self.store, verbose=verbose)
        self.orchestrator = orchestrator or DeploymentOrchestrator(
            config,
            self.store,
            self.backup_manager,
            self.recovery_engine,
            self.health_checker,
            verbose=verbose,
        )

        self._handlers: Dict[str, Callable[[Optional[str], Dict[str, Any], Optional[CancellationToken]], Dict[str, Any]]] = {
            "create-backup": self._create_backup,
            "list-backups": self._list_backups,
            "verify-backup": self._verify_backup,
            "restore": self._restore,
            "rollback": self._rollback,
            "auto-recover": self._auto_recover,
            "full-auto-deploy": self._full_auto_deploy,
            "health-check": self._health_check,
            "emergency-rollback": self._emergency_rollback,
            "system-status": self._system_status,
        }

    def execute(
        self,
        action: str,
        token: Optional[str],
        backup_id: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        """
        Execute a named action.

        A token mismatch returns an Unauthorized result before anything runs.
        Errors never escape: they become results carrying ``error.kind``.

        Args:
            action: One of ACTIONS
            token: Shared secret presented by the caller
            backup_id: Target backup (restore)
            options: force, skip_backup/skipBackup, skip_health/skipHealth,
                restore_files/restoreFiles, kind, description
            cancel_token: Cancellation for long-running actions

        Returns:
            Dict[str, Any]: ``{success, status, message, ..., durationMs, timestamp}``
        """
        started = time.monotonic()

        if not tokens_match(token, self.config["security"].get("token")):
            logger.warning("Rejected %s: invalid access token", action)
            error = UnauthorizedError(
                "Unauthorized: invalid access token",
                suggestions=create_error_suggestions("unauthorized"),
            )
            result = {"success": False, "status": "unauthorized", "message": error.message, "error": error.to_dict()}
            return self._finalize(action, result, started)

        handler = self._handlers.get(action)
        if handler is None:
            error = NotFoundError(f"Unknown action: {action}", details=f"Available actions: {', '.join(ACTIONS)}")
            result = {"success": False, "status": "error", "message": error.message, "error": error.to_dict()}
            return self._finalize(action, result, started)

        try:
            result = handler(backup_id, _normalize_options(options), cancel_token)
        except SaanifyOpsError as e:
            logger.error("Action %s failed: %s", action, e.message)
            result = {
                "success": False,
                "status": "error",
                "message": e.message,
                "error": e.to_dict(),
                "suggestions": list(e.suggestions),
            }
        except Exception as e:
            logger.exception("Action %s raised unexpectedly", action)
            result = {
                "success": False,
                "status": "error",
                "message": f"{type(e).__name__}: {e}",
                "error": {"kind": type(e).__name__, "message": str(e)},
            }

        if not result["success"]:
            result.setdefault("backupPath", self._latest_backup_path())

        return self._finalize(action, result, started)

    def _finalize(self, action: str, result: Dict[str, Any], started: float) -> Dict[str, Any]:
        """Stamp action, duration and timestamp onto a result."""
        result["action"] = action
        result["durationMs"] = int((time.monotonic() - started) * 1000)
        result["timestamp"] = datetime.now(timezone.utc).isoformat()
        return result

    def _latest_backup_path(self) -> Optional[str]:
        latest = self.backup_manager.latest()
        return latest.path if latest else None

    def _create_backup(self, backup_id, options, cancel_token) -> Dict[str, Any]:
        kind = options.get("kind") or self.config["backup"].get("default_kind", "full")
        point = self.backup_manager.create(kind, description=options.get("description") or "Manual backup")
        return {
            "success": True,
            "status": "completed",
            "message": f"Backup {point.id} created",
            "backup": point.to_dict(),
            "backupPath": point.path,
        }

    def _list_backups(self, backup_id, options, cancel_token) -> Dict[str, Any]:
        backups = self.backup_manager.list()
        return {
            "success": True,
            "status": "completed",
            "message": f"{len(backups)} backup(s) available",
            "backups": backups,
        }

    def _verify_backup(self, backup_id, options, cancel_token) -> Dict[str, Any]:
        if not backup_id:
            raise ConfigurationError("A backup id is required to verify", suggestions=create_error_suggestions("backup_missing"))

        verification = self.backup_manager.verify(backup_id)
        result = {
            "success": verification["valid"],
            "status": "valid" if verification["valid"] else "invalid",
            "message": f"Backup {backup_id} is " + ("intact" if verification["valid"] else "corrupted"),
            "backupPath": self.backup_manager.storage.unit_path(backup_id),
        }
        if not verification["valid"]:
            result["error"] = verification["error"]
            result["suggestions"] = create_error_suggestions("backup_corrupted")
        return result

    def _restore(self, backup_id, options, cancel_token) -> Dict[str, Any]:
        if not backup_id:
            raise ConfigurationError("A backup id is required to restore", suggestions=create_error_suggestions("backup_missing"))

        action = self.recovery_engine.restore(backup_id, restore_files=bool(options["restore_files"]))
        return {
            "success": True,
            "status": action.status.value,
            "message": f"Restored backup {backup_id}",
            "recoveryAction": action.to_dict(),
            "backupPath": self.backup_manager.storage.unit_path(backup_id),
        }

    def _rollback(self, backup_id, options, cancel_token) -> Dict[str, Any]:
        action = self.recovery_engine.rollback()
        restored_id = action.result.get("backup_id")
        return {
            "success": True,
            "status": action.status.value,
            "message": f"Rolled back to backup {restored_id}",
            "recoveryAction": action.to_dict(),
            "backupPath": self.backup_manager.storage.unit_path(restored_id),
        }

    def _auto_recover(self, backup_id, options, cancel_token) -> Dict[str, Any]:
        report = self.recovery_engine.auto_recover()
        messages = {
            "healthy": "No issues detected",
            "recovered": "System recovered",
            "failed": "Auto-recovery could not resolve every issue",
        }
        result = {
            "success": report["status"] != "failed",
            "status": report["status"],
            "message": messages[report["status"]],
            "issues": report["issues"],
            "fixes": report["fixes"],
            "rollback": report["rollback"],
            "remainingIssues": report["remaining_issues"],
            "checks": report["checks"],
            "recoveryActionId": report["action_id"],
        }
        if not result["success"]:
            result["error"] = {"kind": "RecoveryFailed", "message": ", ".join(report["remaining_issues"])}
        return result

    def _full_auto_deploy(self, backup_id, options, cancel_token) -> Dict[str, Any]:
        run = self.orchestrator.run(
            force=bool(options["force"]),
            skip_backup=bool(options["skip_backup"]),
            skip_health=bool(options["skip_health"]),
            cancel_token=cancel_token,
        )

        if run.success:
            message = "Deployment completed" if run.step("trigger").status.value == "completed" else (
                f"Nothing to deploy ({run.classification})"
            )
        else:
            message = f"Deployment failed at {run.failed_step or 'cancellation'}"

        result = {
            "success": run.success,
            "status": run.outcome,
            "message": message,
            "deploymentId": run.id,
            "steps": [step.to_dict() for step in run.steps],
            "classification": run.classification,
            "warnings": list(run.warnings),
            "rollback": run.rollback,
        }
        if run.backup:
            result["backupPath"] = run.backup["path"]
        if run.error:
            result["error"] = run.error
        return result

    def _health_check(self, backup_id, options, cancel_token) -> Dict[str, Any]:
        report = self.health_checker.run(cancel_token=cancel_token)
        result = {
            "success": report.status != "critical",
            "status": report.status,
            "message": f"System {report.status} (score {report.score})",
            "score": report.score,
            "checks": [check.to_dict() for check in report.checks],
            "reportId": report.id,
        }
        if not result["success"]:
            result["error"] = {"kind": "HealthCritical", "message": result["message"]}
        return result

    def _emergency_rollback(self, backup_id, options, cancel_token) -> Dict[str, Any]:
        action = self.recovery_engine.rollback()
        report = self.health_checker.run(cancel_token=cancel_token)
        restored_id = action.result.get("backup_id")
        return {
            "success": True,
            "status": action.status.value,
            "message": f"Emergency rollback to {restored_id} completed; system {report.status} (score {report.score})",
            "recoveryAction": action.to_dict(),
            "score": report.score,
            "health": report.status,
            "checks": [check.to_dict() for check in report.checks],
            "backupPath": self.backup_manager.storage.unit_path(restored_id),
        }

    def _system_status(self, backup_id, options, cancel_token) -> Dict[str, Any]:
        from .. import __version__

        try:
            database = {
                "reachable": self.store.ping(),
                "users": self.store.count("users"),
                "societies": self.store.count("society_accounts"),
                "superAdmins": self.store.count("users", role=SUPER_ADMIN_ROLE),
            }
        except SaanifyOpsError as e:
            database = {"reachable": False, "error": e.to_dict()}

        backups = self.backup_manager.list()
        last_run = self.orchestrator.last_run()

        return {
            "success": True,
            "status": "completed",
            "message": "System status collected",
            "version": __version__,
            "database": database,
            "backups": {"count": len(backups), "latest": backups[0] if backups else None},
            "lastDeployment": {
                "id": last_run["id"],
                "outcome": last_run["outcome"],
                "failedStep": last_run["failed_step"],
                "finishedAt": last_run["finished_at"],
            }
            if last_run
            else None,
            "recentRecoveryActions": self.recovery_engine.history(limit=5),
        }
