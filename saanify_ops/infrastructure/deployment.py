"""Deployment pipeline orchestration with fail-fast rollback."""

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..backup.manager import BackupManager
from ..backup.recovery import RecoveryEngine
from ..datastore.base import DataStore
from ..utils.cancellation import CancellationToken, Deadline
from ..utils.errors import BusyError, CancelledError, FatalPipelineError, SaanifyOpsError
from ..utils.files import FileManager
from ..validation.health import HealthChecker, HealthReport
from .changes import ChangeAnalyzer
from .environment import EnvironmentSync
from .migrations import MigrationRunner
from .trigger import DeployTrigger

logger = logging.getLogger(__name__)

STEP_NAMES = (
    "environment_sync",
    "backup",
    "change_analysis",
    "migrate",
    "health_check",
    "trigger",
    "verify",
)


class StepStatus(Enum):
    """Pipeline step states; completed, failed and skipped are terminal."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STEP_STATUSES = {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class PipelineStep:
    """One named unit of work within a deployment run."""

    name: str
    status: StepStatus = StepStatus.PENDING
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    output: Any = None
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "output": self.output,
            "error": self.error,
        }


@dataclass
class DeploymentRun:
    """State of one pipeline invocation; steps finish strictly in declaration order."""

    id: str
    started_at: str
    options: Dict[str, Any]
    steps: List[PipelineStep] = field(default_factory=lambda: [PipelineStep(name) for name in STEP_NAMES])
    finished_at: Optional[str] = None
    duration_ms: Optional[int] = None
    outcome: Optional[str] = None
    failed_step: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    classification: Optional[str] = None
    change_set: Optional[Dict[str, Any]] = None
    backup: Optional[Dict[str, Any]] = None
    rollback: Optional[Dict[str, Any]] = None
    warnings: List[str] = field(default_factory=list)

    def step(self, name: str) -> PipelineStep:
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(f"Unknown pipeline step: {name}")

    def start_step(self, name: str) -> PipelineStep:
        """
        Mark a step running.

        Raises:
            ValueError: If the step is not pending or a predecessor is not terminal
        """
        step = self.step(name)
        if step.status is not StepStatus.PENDING:
            raise ValueError(f"Step {name} cannot start from {step.status.value}")

        for previous in self.steps[: self.steps.index(step)]:
            if previous.status not in TERMINAL_STEP_STATUSES:
                raise ValueError(f"Step {name} cannot start while {previous.name} is {previous.status.value}")

        step.status = StepStatus.RUNNING
        step.started_at = _now()
        return step

    def complete_step(self, name: str, output: Any = None) -> None:
        self._finish(name, StepStatus.COMPLETED, output=output)

    def fail_step(self, name: str, error: Dict[str, Any]) -> None:
        self._finish(name, StepStatus.FAILED, error=error)

    def skip_step(self, name: str, reason: str) -> None:
        step = self.step(name)
        if step.status is not StepStatus.PENDING:
            raise ValueError(f"Step {name} cannot be skipped from {step.status.value}")
        step.status = StepStatus.SKIPPED
        step.output = reason
        step.finished_at = _now()

    def cancel_step(self, name: str, reason: str) -> None:
        """Mark a running step skipped after it was interrupted."""
        self._finish(name, StepStatus.SKIPPED, output=reason)

    def skip_remaining(self, reason: str) -> None:
        """Mark every still-pending step skipped."""
        for step in self.steps:
            if step.status is StepStatus.PENDING:
                self.skip_step(step.name, reason)

    def _finish(self, name: str, status: StepStatus, output: Any = None, error: Optional[Dict[str, Any]] = None) -> None:
        """Move a running step to a terminal status."""
        step = self.step(name)
        if step.status is not StepStatus.RUNNING:
            raise ValueError(f"Step {name} cannot finish from {step.status.value}")
        step.status = status
        step.output = output
        step.error = error
        step.finished_at = _now()

    @property
    def success(self) -> bool:
        return self.outcome == "success"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms,
            "outcome": self.outcome,
            "failed_step": self.failed_step,
            "error": self.error,
            "classification": self.classification,
            "change_set": self.change_set,
            "backup": self.backup,
            "rollback": self.rollback,
            "warnings": list(self.warnings),
            "options": dict(self.options),
            "steps": [step.to_dict() for step in self.steps],
        }


class DeploymentOrchestrator:
    """
    Runs the release pipeline: sync, backup, analyze, migrate, gate, trigger, verify.

    The first failing step stops the run and triggers a best-effort
    rollback to the latest backup. An orchestrator runs one pipeline at a
    time.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        store: DataStore,
        backup_manager: BackupManager,
        recovery_engine: RecoveryEngine,
        health_checker: HealthChecker,
        verbose: bool = False,
        environment_sync: Optional[EnvironmentSync] = None,
        change_analyzer: Optional[ChangeAnalyzer] = None,
        migration_runner: Optional[MigrationRunner] = None,
        deploy_trigger: Optional[DeployTrigger] = None,
    ):
        """
        Initialize deployment orchestrator.

        Args:
            config: Resolved saanify-ops configuration
            store: Primary data store
            backup_manager: Creates the pre-deploy backup
            recovery_engine: Rolls back on failure
            health_checker: Gates the deploy and verifies it
            verbose: Enable verbose output
            environment_sync: Environment step collaborator
            change_analyzer: Change analysis step collaborator
            migration_runner: Migrate step collaborator
            deploy_trigger: Trigger step collaborator
        """
        self.config = config
        self.verbose = verbose
        self.backup_manager = backup_manager
        self.recovery_engine = recovery_engine
        self.health_checker = health_checker
        self.environment_sync = environment_sync or EnvironmentSync(config, verbose=verbose)
        self.change_analyzer = change_analyzer or ChangeAnalyzer(config, verbose=verbose)
        self.migration_runner = migration_runner or MigrationRunner(config, store, verbose=verbose)
        self.deploy_trigger = deploy_trigger or DeployTrigger(config, verbose=verbose)

        self.file_manager = FileManager(verbose=verbose)
        self.runs_dir = os.path.join(config["paths"]["logs_dir"], "deployments")
        self.step_timeout = config["deploy"].get("step_timeout")
        self._lock = threading.Lock()

    def run(
        self,
        force: bool = False,
        skip_backup: bool = False,
        skip_health: bool = False,
        cancel_token: Optional[CancellationToken] = None,
    ) -> DeploymentRun:
        """
        Run the full pipeline.

        Args:
            force: Deploy and migrate even without schema/api/ui changes
            skip_backup: Skip the pre-deploy backup
            skip_health: Skip the health gate
            cancel_token: Checked between steps

        Returns:
            DeploymentRun: Completed run record (outcome success or failure)

        Raises:
            BusyError: If a pipeline is already running on this orchestrator
        """
        if not self._lock.acquire(blocking=False):
            raise BusyError("A deployment is already in progress", suggestions=["Wait for it to finish"])

        try:
            return self._execute(
                {"force": force, "skip_backup": skip_backup, "skip_health": skip_health},
                cancel_token,
            )
        finally:
            self._lock.release()

    def last_run(self) -> Optional[Dict[str, Any]]:
        """Most recent persisted run record."""
        if not os.path.isdir(self.runs_dir):
            return None

        names = sorted(name for name in os.listdir(self.runs_dir) if name.endswith(".json"))
        if not names:
            return None
        return self.file_manager.read_json(os.path.join(self.runs_dir, names[-1]))

    def _execute(self, options: Dict[str, Any], cancel_token: Optional[CancellationToken]) -> DeploymentRun:
        """Drive every step of one run."""
        started = time.monotonic()
        moment = datetime.now(timezone.utc)
        run = DeploymentRun(
            id=f"deploy-{moment.strftime('%Y%m%d-%H%M%S-%f')}",
            started_at=moment.isoformat(),
            options=options,
        )

        handlers: Dict[str, Callable[[DeploymentRun, Deadline, Optional[CancellationToken]], Any]] = {
            "environment_sync": self._step_environment_sync,
            "backup": self._step_backup,
            "change_analysis": self._step_change_analysis,
            "migrate": self._step_migrate,
            "health_check": self._step_health_check,
            "trigger": self._step_trigger,
            "verify": self._step_verify,
        }

        if self.verbose:
            print(f"Starting deployment {run.id}")

        for name in STEP_NAMES:
            step = run.step(name)
            if step.status is not StepStatus.PENDING:
                continue

            if cancel_token is not None and cancel_token.cancelled:
                self._cancel(run, CancelledError(f"Deployment cancelled before {name}: {cancel_token.reason}"))
                break

            skip_reason = self._skip_reason(name, run)
            if skip_reason:
                run.skip_step(name, skip_reason)
                if self.verbose:
                    print(f"  - {name}: skipped ({skip_reason})")
                continue

            run.start_step(name)
            if self.verbose:
                print(f"  > {name}")

            try:
                output = handlers[name](run, Deadline(self.step_timeout), cancel_token)
            except CancelledError as e:
                if run.step("trigger").status is StepStatus.COMPLETED:
                    run.cancel_step(name, "cancelled")
                else:
                    run.fail_step(name, e.to_dict())
                self._cancel(run, e)
                break
            except Exception as e:
                self._fail(run, name, e)
                break

            run.complete_step(name, output)

            if name == "change_analysis" and not run.options["force"] and not run.change_set["should_deploy"]:
                run.skip_remaining(f"nothing to deploy ({run.classification})")

        if run.outcome is None:
            run.outcome = "success"

        run.finished_at = _now()
        run.duration_ms = int((time.monotonic() - started) * 1000)
        self._persist(run)

        if self.verbose:
            print(f"Deployment {run.id}: {run.outcome} in {run.duration_ms}ms")

        return run

    def _skip_reason(self, name: str, run: DeploymentRun) -> Optional[str]:
        """Reason a step should not run, or None."""
        options = run.options

        if name == "backup" and options["skip_backup"]:
            return "skipped by request"
        if name == "migrate" and not options["force"]:
            if not (run.change_set or {}).get("needs_migration"):
                return "no schema or api changes"
        if name == "health_check" and options["skip_health"]:
            return "skipped by request"
        return None

    def _fail(self, run: DeploymentRun, name: str, error: Exception) -> None:
        """Record a step failure, skip the rest and attempt rollback."""
        cause = error.to_dict() if isinstance(error, SaanifyOpsError) else {"kind": type(error).__name__, "message": str(error)}
        run.fail_step(name, cause)
        run.skip_remaining(f"skipped after {name} failed")

        if isinstance(error, FatalPipelineError):
            fatal = error
        else:
            fatal = FatalPipelineError(f"Step {name} failed: {cause['message']}", step=name)

        run.outcome = "failure"
        run.failed_step = name
        run.error = {**fatal.to_dict(), "step": name, "cause": cause}

        logger.error("Deployment %s failed at %s: %s", run.id, name, cause["message"])
        run.rollback = self._attempt_rollback()

    def _cancel(self, run: DeploymentRun, error: CancelledError) -> None:
        """Record a cancellation; nothing failed, so nothing is rolled back."""
        run.skip_remaining("cancelled")
        if run.step("trigger").status is StepStatus.COMPLETED:
            # The external deploy has fired; only verification was lost
            run.warnings.append(f"Final verification skipped: {error.message}")
            logger.warning("Deployment %s cancelled after trigger; verification skipped", run.id)
            return

        run.outcome = "failure"
        run.error = error.to_dict()
        run.rollback = {"attempted": False, "reason": "cancelled"}
        logger.warning("Deployment %s cancelled", run.id)

    def _attempt_rollback(self) -> Dict[str, Any]:
        """Best-effort rollback; its failure is reported, never raised."""
        if self.verbose:
            print("Attempting rollback to the latest backup...")

        try:
            action = self.recovery_engine.rollback()
        except SaanifyOpsError as e:
            logger.error("Rollback after failed deployment did not succeed: %s", e.message)
            return {"attempted": True, "success": False, "error": e.to_dict()}
        except Exception as e:
            logger.exception("Rollback after failed deployment raised")
            return {"attempted": True, "success": False, "error": {"kind": type(e).__name__, "message": str(e)}}

        return {"attempted": True, "success": True, "action": action.to_dict()}

    def _persist(self, run: DeploymentRun) -> None:
        """Write the run record; a write failure is logged, not raised."""
        try:
            os.makedirs(self.runs_dir, exist_ok=True)
            self.file_manager.write_json(os.path.join(self.runs_dir, f"{run.id}.json"), run.to_dict())
        except OSError as e:
            logger.error("Could not persist deployment record %s: %s", run.id, e)

    def _step_environment_sync(self, run: DeploymentRun, deadline: Deadline, cancel_token: Optional[CancellationToken]) -> Any:
        return self.environment_sync.sync()

    def _step_backup(self, run: DeploymentRun, deadline: Deadline, cancel_token: Optional[CancellationToken]) -> Any:
        point = self.backup_manager.create("full", description=f"Pre-deployment backup for {run.id}")
        run.backup = {"id": point.id, "path": point.path}
        return point.to_dict()

    def _step_change_analysis(self, run: DeploymentRun, deadline: Deadline, cancel_token: Optional[CancellationToken]) -> Any:
        change_set = self.change_analyzer.analyze()
        run.change_set = change_set.to_dict()
        run.classification = change_set.classification

        return run.change_set

    def _step_migrate(self, run: DeploymentRun, deadline: Deadline, cancel_token: Optional[CancellationToken]) -> Any:
        return self.migration_runner.migrate()

    def _step_health_check(self, run: DeploymentRun, deadline: Deadline, cancel_token: Optional[CancellationToken]) -> Any:
        report = self.health_checker.run(deadline=deadline, cancel_token=cancel_token)
        summary = self._summarize(report)

        if report.status == "critical":
            raise FatalPipelineError(
                f"System health is critical (score {report.score})",
                details=f"Failed checks: {', '.join(summary['failed_checks'])}",
            )
        if report.status == "degraded":
            run.warnings.append(f"Health degraded (score {report.score}); failed checks: {', '.join(summary['failed_checks'])}")

        return summary

    def _step_trigger(self, run: DeploymentRun, deadline: Deadline, cancel_token: Optional[CancellationToken]) -> Any:
        return self.deploy_trigger.trigger(run.change_set, cancel_token=cancel_token, deadline=deadline)

    def _step_verify(self, run: DeploymentRun, deadline: Deadline, cancel_token: Optional[CancellationToken]) -> Any:
        try:
            report = self.health_checker.reachability(deadline=deadline, cancel_token=cancel_token)
        except CancelledError:
            raise
        except Exception as e:
            # The deploy is already triggered; verification problems are warnings
            run.warnings.append(f"Final verification could not complete: {e}")
            return {"error": str(e)}

        summary = self._summarize(report)
        if summary["failed_checks"]:
            run.warnings.append(f"Final verification failed checks: {', '.join(summary['failed_checks'])}")
        return summary

    def _summarize(self, report: HealthReport) -> Dict[str, Any]:
        """Compact health summary for step output."""
        return {
            "score": report.score,
            "status": report.status,
            "passed": report.passed,
            "total": report.total,
            "failed_checks": [check.name for check in report.checks if not check.passed],
        }
