"""Tests for the master control command surface."""

import os
from unittest.mock import MagicMock

import pytest

from saanify_ops.infrastructure.changes import ChangeAnalyzer
from saanify_ops.infrastructure.control import ACTIONS, MasterControl
from saanify_ops.validation.health import HealthChecker


class TestMasterControl:
    """Test action dispatch, gating and result shapes."""

    @pytest.fixture(autouse=True)
    def setup_control(self, ops_config, seeded_store, mock_http_session, ops_token):
        """Master control over the seeded store with mocked network access."""
        self.config = ops_config
        self.store = seeded_store
        self.token = ops_token
        self.session = mock_http_session
        self.control = MasterControl(
            ops_config,
            store=seeded_store,
            health_checker=HealthChecker(ops_config, seeded_store, session=mock_http_session),
        )
        self.control.orchestrator.deploy_trigger.session = mock_http_session
        self.control.orchestrator.change_analyzer = MagicMock()
        self.control.orchestrator.change_analyzer.analyze.return_value = ChangeAnalyzer(ops_config).classify(
            ["src/lib/auth.ts"]
        )

    def test_wrong_token_is_unauthorized(self):
        """Test a bad token is rejected before anything runs."""
        result = self.control.execute("create-backup", "not-the-token")

        assert result["success"] is False
        assert result["status"] == "unauthorized"
        assert result["error"]["kind"] == "Unauthorized"
        assert "backupPath" not in result
        assert not os.path.exists(self.config["paths"]["backups_dir"])

    def test_missing_token_is_unauthorized(self):
        """Test an absent token is rejected."""
        result = self.control.execute("system-status", None)

        assert result["error"]["kind"] == "Unauthorized"

    def test_unset_secret_never_authorizes(self):
        """Test an empty configured secret rejects every token."""
        self.config["security"]["token"] = ""

        result = self.control.execute("system-status", "")

        assert result["status"] == "unauthorized"

    def test_unknown_action(self):
        """Test an unknown action reports NotFoundError."""
        result = self.control.execute("drop-database", self.token)

        assert result["success"] is False
        assert result["error"]["kind"] == "NotFoundError"

    def test_result_envelope(self):
        """Test every result carries action, duration and timestamp."""
        result = self.control.execute("list-backups", self.token)

        assert result["success"] is True
        assert result["action"] == "list-backups"
        assert isinstance(result["durationMs"], int)
        assert "timestamp" in result
        assert result["backups"] == []

    def test_create_and_verify_backup(self):
        """Test creating a backup reports its path and verifies."""
        created = self.control.execute("create-backup", self.token, options={"description": "manual"})
        backup_id = created["backup"]["id"]

        verified = self.control.execute("verify-backup", self.token, backup_id=backup_id)

        assert created["success"] is True
        assert os.path.isdir(created["backupPath"])
        assert created["backup"]["counts"] == {"society_accounts": 2, "users": 3}
        assert verified["success"] is True
        assert verified["status"] == "valid"

    def test_restore_requires_backup_id(self):
        """Test restore without an id is a configuration error."""
        result = self.control.execute("restore", self.token)

        assert result["success"] is False
        assert result["error"]["kind"] == "ConfigurationError"

    def test_restore_missing_backup(self):
        """Test restoring an unknown backup reports NotFoundError with suggestions."""
        result = self.control.execute("restore", self.token, backup_id="backup-20000101-000000-000000")

        assert result["error"]["kind"] == "NotFoundError"
        assert result["suggestions"]
        assert result["backupPath"] is None

    def test_restore_and_rollback(self):
        """Test restore and rollback report the recovery action."""
        created = self.control.execute("create-backup", self.token)
        self.store.create("society_accounts", {"id": "soc-009", "name": "Extra"})

        restored = self.control.execute("restore", self.token, backup_id=created["backup"]["id"])
        rolled_back = self.control.execute("rollback", self.token)

        assert restored["success"] is True
        assert restored["recoveryAction"]["result"]["restored"] == {"society_accounts": 2, "users": 3}
        assert rolled_back["recoveryAction"]["kind"] == "rollback"
        assert rolled_back["backupPath"] == created["backupPath"]
        assert self.store.count("society_accounts") == 2

    def test_restore_files_option(self):
        """Test restoreFiles writes the project files back with the data."""
        created = self.control.execute("create-backup", self.token)
        package_json = os.path.join(self.config["project"]["root"], "package.json")
        with open(package_json, "w", encoding="utf-8") as f:
            f.write("{}\n")

        plain = self.control.execute("restore", self.token, backup_id=created["backup"]["id"])
        with open(package_json, encoding="utf-8") as f:
            assert f.read() == "{}\n"

        restored = self.control.execute(
            "restore", self.token, backup_id=created["backup"]["id"], options={"restoreFiles": True}
        )

        assert "files" not in plain["recoveryAction"]["result"]
        assert "package.json" in restored["recoveryAction"]["result"]["files"]["written"]
        with open(package_json, encoding="utf-8") as f:
            assert f.read().startswith('{"name": "saanify"')

    def test_failure_reports_latest_backup_path(self):
        """Test failed results point at the backup for manual recovery."""
        created = self.control.execute("create-backup", self.token)

        result = self.control.execute("restore", self.token, backup_id="backup-20000101-000000-000000")

        assert result["backupPath"] == created["backupPath"]

    def test_full_auto_deploy(self):
        """Test a deploy returns its steps and backup path."""
        result = self.control.execute("full-auto-deploy", self.token, options={"skipHealth": True})

        assert result["success"] is True
        assert result["message"] == "Deployment completed"
        assert [step["name"] for step in result["steps"]][0] == "environment_sync"
        assert result["steps"][5]["status"] == "completed"
        assert next(step for step in result["steps"] if step["name"] == "health_check")["status"] == "skipped"
        assert os.path.isdir(result["backupPath"])
        self.session.post.assert_called_once()

    def test_full_auto_deploy_failure(self):
        """Test a failed deploy reports error kind and rollback."""
        self.control.orchestrator.migration_runner = MagicMock()
        self.control.orchestrator.migration_runner.migrate.side_effect = RuntimeError("boom")

        result = self.control.execute("full-auto-deploy", self.token)

        assert result["success"] is False
        assert result["message"] == "Deployment failed at migrate"
        assert result["error"]["kind"] == "FatalPipelineError"
        assert result["rollback"]["success"] is True
        assert os.path.isdir(result["backupPath"])

    def test_health_check(self):
        """Test health-check returns checks and score."""
        result = self.control.execute("health-check", self.token)

        assert result["success"] is True
        assert result["score"] == 100
        assert result["status"] == "healthy"
        assert len(result["checks"]) == 6

    def test_health_check_critical_fails(self):
        """Test a critical score is a failed result."""
        self.session.get.return_value.status_code = 503
        self.config["environment"]["values"] = {}
        self.config["paths"]["env_file"] = ""

        result = self.control.execute("health-check", self.token)

        assert result["success"] is False
        assert result["status"] == "critical"
        assert result["error"]["kind"] == "HealthCritical"

    def test_auto_recover_healthy(self):
        """Test auto-recover on a healthy store."""
        result = self.control.execute("auto-recover", self.token)

        assert result["success"] is True
        assert result["status"] == "healthy"
        assert result["issues"] == []

    def test_emergency_rollback(self):
        """Test emergency rollback restores and re-checks health."""
        self.control.execute("create-backup", self.token)

        result = self.control.execute("emergency-rollback", self.token)

        assert result["success"] is True
        assert result["health"] == "healthy"
        assert result["recoveryAction"]["status"] == "completed"

    def test_emergency_rollback_without_backup(self):
        """Test emergency rollback with no backups fails with NotFoundError."""
        result = self.control.execute("emergency-rollback", self.token)

        assert result["success"] is False
        assert result["error"]["kind"] == "NotFoundError"

    def test_system_status(self):
        """Test system status summarizes store, backups and history."""
        self.control.execute("create-backup", self.token)
        self.control.execute("full-auto-deploy", self.token, options={"skip_health": True})

        result = self.control.execute("system-status", self.token)

        assert result["database"] == {"reachable": True, "users": 3, "societies": 2, "superAdmins": 1}
        assert result["backups"]["count"] == 2
        assert result["lastDeployment"]["outcome"] == "success"
        assert result["recentRecoveryActions"] == []

    def test_every_action_is_dispatchable(self):
        """Test the declared actions all have handlers."""
        assert set(ACTIONS) == set(self.control._handlers)
