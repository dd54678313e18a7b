"""Tests for the deployment pipeline."""

from unittest.mock import MagicMock

import pytest

from saanify_ops.backup.manager import BackupManager
from saanify_ops.backup.recovery import RecoveryEngine
from saanify_ops.infrastructure.changes import ChangeAnalyzer
from saanify_ops.infrastructure.deployment import STEP_NAMES, DeploymentOrchestrator, DeploymentRun, StepStatus
from saanify_ops.infrastructure.environment import EnvironmentSync
from saanify_ops.infrastructure.migrations import MigrationRunner
from saanify_ops.utils.cancellation import CancellationToken
from saanify_ops.utils.errors import BusyError, CancelledError, DataStoreError, TriggerError
from saanify_ops.validation.health import HealthCheck, HealthChecker, HealthReport


def statuses(run):
    return {step.name: step.status for step in run.steps}


class TestDeploymentPipeline:
    """Test orchestration of the release pipeline."""

    @pytest.fixture(autouse=True)
    def setup_pipeline(self, ops_config, seeded_store, mock_http_session):
        """Wire an orchestrator with real recovery and mocked network collaborators."""
        self.config = ops_config
        self.store = seeded_store
        self.backup_manager = BackupManager(ops_config, seeded_store)
        self.recovery_engine = RecoveryEngine(ops_config, seeded_store, self.backup_manager)
        self.health_checker = HealthChecker(ops_config, seeded_store, session=mock_http_session)
        self.analyzer = ChangeAnalyzer(ops_config)
        self.change_analyzer = MagicMock()
        self.change_analyzer.analyze.return_value = self.analyzer.classify(["prisma/schema.prisma", "src/app/api/users/route.ts"])
        self.migration_runner = MigrationRunner(ops_config, seeded_store)
        self.deploy_trigger = MagicMock()
        self.deploy_trigger.trigger.return_value = {"status_code": 200, "attempts": 1, "job_id": "job-42"}

        self.orchestrator = DeploymentOrchestrator(
            ops_config,
            seeded_store,
            self.backup_manager,
            self.recovery_engine,
            self.health_checker,
            environment_sync=EnvironmentSync(ops_config),
            change_analyzer=self.change_analyzer,
            migration_runner=self.migration_runner,
            deploy_trigger=self.deploy_trigger,
        )

    def test_successful_run_completes_steps_in_order(self):
        """Test every step completes, each finishing before the next starts."""
        run = self.orchestrator.run()

        assert run.success
        assert [step.name for step in run.steps] == list(STEP_NAMES)
        assert all(step.status is StepStatus.COMPLETED for step in run.steps)
        for previous, current in zip(run.steps, run.steps[1:]):
            assert previous.finished_at <= current.started_at

        assert run.classification == "schema"
        assert run.backup["id"].startswith("backup-")
        assert run.step("trigger").output["job_id"] == "job-42"
        assert [entry["id"] for entry in run.step("migrate").output["applied"]] == [
            "001_initial_schema",
            "002_seed_super_admin",
            "003_verify_required_data",
        ]
        self.deploy_trigger.trigger.assert_called_once()

    def test_migrate_failure_is_contained(self):
        """Test a failed migration skips later steps and rolls back."""
        self.orchestrator.migration_runner = MagicMock()
        self.orchestrator.migration_runner.migrate.side_effect = DataStoreError("column missing")

        run = self.orchestrator.run()

        assert not run.success
        assert run.failed_step == "migrate"
        result = statuses(run)
        assert result["environment_sync"] is StepStatus.COMPLETED
        assert result["backup"] is StepStatus.COMPLETED
        assert result["change_analysis"] is StepStatus.COMPLETED
        assert result["migrate"] is StepStatus.FAILED
        for name in ("health_check", "trigger", "verify"):
            assert result[name] is StepStatus.SKIPPED

        assert run.error["kind"] == "FatalPipelineError"
        assert run.error["step"] == "migrate"
        assert run.error["cause"] == {"kind": "DataStoreError", "message": "column missing"}
        assert run.rollback["attempted"] is True
        assert run.rollback["success"] is True
        assert run.rollback["action"]["result"]["backup_id"] == run.backup["id"]
        self.deploy_trigger.trigger.assert_not_called()

    def test_rollback_failure_is_reported_not_raised(self):
        """Test a failed rollback is attached to the run without replacing the error."""
        self.orchestrator.migration_runner = MagicMock()
        self.orchestrator.migration_runner.migrate.side_effect = DataStoreError("column missing")

        run = self.orchestrator.run(skip_backup=True)

        assert run.step("backup").status is StepStatus.SKIPPED
        assert run.error["kind"] == "FatalPipelineError"
        assert run.rollback["attempted"] is True
        assert run.rollback["success"] is False
        assert run.rollback["error"]["kind"] == "NotFoundError"

    def test_docs_only_changes_skip_deploy(self):
        """Test documentation-only changes end the run successfully without deploying."""
        self.change_analyzer.analyze.return_value = self.analyzer.classify(["README.md", "docs/setup.md"])

        run = self.orchestrator.run()

        assert run.success
        assert run.classification == "docs-only"
        result = statuses(run)
        assert result["change_analysis"] is StepStatus.COMPLETED
        for name in ("migrate", "health_check", "trigger", "verify"):
            assert result[name] is StepStatus.SKIPPED
            assert run.step(name).output == "nothing to deploy (docs-only)"
        self.deploy_trigger.trigger.assert_not_called()

    def test_force_deploys_docs_only_changes(self):
        """Test force runs every step for documentation-only changes."""
        self.change_analyzer.analyze.return_value = self.analyzer.classify(["README.md"])

        run = self.orchestrator.run(force=True)

        assert run.success
        assert all(step.status is StepStatus.COMPLETED for step in run.steps)
        self.deploy_trigger.trigger.assert_called_once()

    def test_ui_changes_skip_migration(self):
        """Test ui-only changes deploy without migrating."""
        self.change_analyzer.analyze.return_value = self.analyzer.classify(["src/components/Button.tsx"])

        run = self.orchestrator.run()

        assert run.success
        assert run.step("migrate").status is StepStatus.SKIPPED
        assert run.step("migrate").output == "no schema or api changes"
        assert run.step("trigger").status is StepStatus.COMPLETED

    def test_skip_flags(self):
        """Test skip_backup and skip_health skip their steps."""
        run = self.orchestrator.run(skip_backup=True, skip_health=True)

        assert run.success
        assert run.step("backup").status is StepStatus.SKIPPED
        assert run.step("health_check").status is StepStatus.SKIPPED
        assert run.backup is None
        assert self.backup_manager.list() == []

    def test_critical_health_blocks_trigger(self):
        """Test a critical health report fails the run before triggering."""
        checks = [HealthCheck(name=name, passed=name in ("schema", "database")) for name in
                  ("environment", "filesystem", "schema", "database", "api", "ui")]
        self.orchestrator.health_checker = MagicMock()
        self.orchestrator.health_checker.run.return_value = HealthReport.from_checks(checks)

        run = self.orchestrator.run()

        assert run.failed_step == "health_check"
        assert "critical" in run.error["message"]
        assert run.step("trigger").status is StepStatus.SKIPPED
        assert run.rollback["success"] is True
        self.deploy_trigger.trigger.assert_not_called()

    def test_degraded_health_warns(self):
        """Test a degraded report lets the deploy continue with a warning."""
        checks = [HealthCheck(name=name, passed=name not in ("api", "ui")) for name in
                  ("environment", "filesystem", "schema", "database", "api", "ui")]
        self.orchestrator.health_checker = MagicMock()
        self.orchestrator.health_checker.run.return_value = HealthReport.from_checks(checks)
        self.orchestrator.health_checker.reachability.return_value = HealthReport.from_checks(checks[4:])

        run = self.orchestrator.run()

        assert run.success
        assert any(warning.startswith("Health degraded (score 67)") for warning in run.warnings)
        assert any("Final verification failed checks: api, ui" in warning for warning in run.warnings)

    def test_trigger_failure(self):
        """Test an exhausted deploy trigger fails the run and rolls back."""
        self.deploy_trigger.trigger.side_effect = TriggerError("Deploy trigger failed after 3 attempt(s)")

        run = self.orchestrator.run()

        assert run.failed_step == "trigger"
        assert run.error["cause"]["kind"] == "TriggerError"
        assert run.step("verify").status is StepStatus.SKIPPED
        assert run.rollback["attempted"] is True

    def test_verify_errors_become_warnings(self):
        """Test final verification problems never fail a triggered deploy."""
        self.orchestrator.health_checker = MagicMock(wraps=self.health_checker)
        self.orchestrator.health_checker.reachability.side_effect = RuntimeError("checker crashed")

        run = self.orchestrator.run()

        assert run.success
        assert run.step("verify").status is StepStatus.COMPLETED
        assert "Final verification could not complete: checker crashed" in run.warnings

    def test_cancel_before_start(self):
        """Test a cancelled token skips every step without rolling back."""
        token = CancellationToken()
        token.cancel("operator abort")

        run = self.orchestrator.run(cancel_token=token)

        assert not run.success
        assert all(step.status is StepStatus.SKIPPED for step in run.steps)
        assert all(step.output == "cancelled" for step in run.steps)
        assert run.error["kind"] == "Cancelled"
        assert run.rollback == {"attempted": False, "reason": "cancelled"}

    def test_cancel_between_steps(self):
        """Test cancellation takes effect at the next step boundary."""
        token = CancellationToken()
        sync = MagicMock()

        def cancel_during_sync():
            token.cancel("operator abort")
            return {"required": {}}

        sync.sync.side_effect = cancel_during_sync
        self.orchestrator.environment_sync = sync

        run = self.orchestrator.run(cancel_token=token)

        assert run.step("environment_sync").status is StepStatus.COMPLETED
        assert all(step.status is StepStatus.SKIPPED for step in run.steps[1:])
        assert self.backup_manager.list() == []

    def test_cancel_inside_step(self):
        """Test a step that observes cancellation fails without a rollback."""
        self.deploy_trigger.trigger.side_effect = CancelledError("Operation cancelled: shutdown")

        run = self.orchestrator.run()

        assert run.step("trigger").status is StepStatus.FAILED
        assert run.step("verify").status is StepStatus.SKIPPED
        assert run.step("verify").output == "cancelled"
        assert run.rollback["attempted"] is False

    def test_cancel_after_trigger_keeps_success(self):
        """Test cancelling once the deploy has fired only skips verification."""
        token = CancellationToken()

        def trigger_then_cancel(*args, **kwargs):
            token.cancel("operator abort")
            return {"status_code": 200, "attempts": 1}

        self.deploy_trigger.trigger.side_effect = trigger_then_cancel

        run = self.orchestrator.run(cancel_token=token)

        assert run.success
        assert run.error is None
        assert run.rollback is None
        assert run.step("trigger").status is StepStatus.COMPLETED
        assert run.step("verify").status is StepStatus.SKIPPED
        assert run.step("verify").output == "cancelled"
        assert any(warning.startswith("Final verification skipped") for warning in run.warnings)

    def test_cancel_during_verify_keeps_success(self):
        """Test verification interrupted by cancellation is skipped, not failed."""
        self.orchestrator.health_checker = MagicMock(wraps=self.health_checker)
        self.orchestrator.health_checker.reachability.side_effect = CancelledError("Operation cancelled: shutdown")

        run = self.orchestrator.run()

        assert run.success
        assert run.step("verify").status is StepStatus.SKIPPED
        assert run.step("verify").output == "cancelled"

    def test_missing_environment_fails_first_step(self):
        """Test a missing required variable fails environment_sync."""
        self.config["environment"]["required"] = ["DATABASE_URL", "RESEND_API_KEY"]

        run = self.orchestrator.run()

        assert run.failed_step == "environment_sync"
        assert run.error["cause"]["kind"] == "ConfigurationError"
        assert "RESEND_API_KEY" in run.error["cause"]["message"]

    def test_concurrent_run_rejected(self):
        """Test a second pipeline on the same orchestrator is Busy."""
        self.orchestrator._lock.acquire()
        try:
            with pytest.raises(BusyError):
                self.orchestrator.run()
        finally:
            self.orchestrator._lock.release()

    def test_run_persisted(self):
        """Test the run record is written and returned by last_run."""
        run = self.orchestrator.run()

        last = self.orchestrator.last_run()

        assert last["id"] == run.id
        assert last["outcome"] == "success"
        assert [step["name"] for step in last["steps"]] == list(STEP_NAMES)


class TestDeploymentRun:
    """Test step state rules."""

    def test_step_cannot_start_before_predecessor_finishes(self):
        """Test steps cannot overlap."""
        run = DeploymentRun(id="deploy-1", started_at="2024-01-01T00:00:00+00:00", options={})
        run.start_step("environment_sync")

        with pytest.raises(ValueError):
            run.start_step("backup")

    def test_finished_step_cannot_restart(self):
        """Test terminal steps stay terminal."""
        run = DeploymentRun(id="deploy-2", started_at="2024-01-01T00:00:00+00:00", options={})
        run.start_step("environment_sync")
        run.complete_step("environment_sync", {})

        with pytest.raises(ValueError):
            run.start_step("environment_sync")
        with pytest.raises(ValueError):
            run.skip_step("environment_sync", "late")
