"""Tests for change analysis."""

import os
import shutil
import time
from unittest.mock import patch

import git
import pytest
from git.exc import InvalidGitRepositoryError

from saanify_ops.infrastructure.changes import ChangeAnalyzer, ChangeSet

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git executable not available")


def write(root, rel_path, content):
    path = os.path.join(root, rel_path)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
    return path


def commit_all(repo, message):
    actor = git.Actor("Saanify Dev", "dev@saanify.example")
    repo.git.add(A=True)
    repo.index.commit(message, author=actor, committer=actor)


class TestClassification:
    """Test path classification."""

    def setup_method(self):
        """Setup test environment."""
        self.config = {
            "project": {"root": "/srv/saanify"},
            "paths": {"backups_dir": "/srv/saanify/backups", "logs_dir": "/srv/saanify/logs"},
            "changes": {
                "base_ref": "HEAD~1",
                "window_minutes": 60,
                "watch_dirs": ["prisma", "src", "docs"],
                "patterns": {
                    "schema": ["prisma/schema.prisma", "prisma/migrations/*"],
                    "api": ["src/app/api/*", "src/lib/*"],
                    "ui": ["src/app/*", "src/components/*", "public/*"],
                    "docs": ["*.md", "docs/*"],
                },
            },
        }
        self.analyzer = ChangeAnalyzer(self.config)

    def test_schema_wins(self):
        """Test the most significant category is reported."""
        change_set = self.analyzer.classify(["README.md", "src/components/Nav.tsx", "prisma/schema.prisma"])

        assert change_set.classification == "schema"
        assert change_set.schema and change_set.ui and change_set.docs
        assert change_set.should_deploy
        assert change_set.needs_migration

    def test_api_route_is_api_not_ui(self):
        """Test the first matching category wins."""
        change_set = self.analyzer.classify(["src/app/api/societies/route.ts"])

        assert change_set.categories["api"] == ["src/app/api/societies/route.ts"]
        assert change_set.categories["ui"] == []

    def test_docs_only(self):
        """Test documentation changes alone do not deploy."""
        change_set = self.analyzer.classify(["README.md", "docs/backup.md"])

        assert change_set.classification == "docs-only"
        assert not change_set.should_deploy

    def test_unmatched_paths_count_as_api(self):
        """Test unknown paths are treated as deployable code."""
        change_set = self.analyzer.classify(["package.json"])

        assert change_set.classification == "api"

    def test_ops_directories_excluded(self):
        """Test backups and logs never count as changes."""
        change_set = self.analyzer.classify(["backups/backup-1/manifest.json", "logs/deployments/d.json"])

        assert change_set.files == []
        assert change_set.classification == "none"
        assert not change_set.should_deploy

    def test_to_dict(self):
        """Test the serialized change set."""
        result = self.analyzer.classify(["src/lib/auth.ts"]).to_dict()

        assert result["classification"] == "api"
        assert result["should_deploy"] is True
        assert result["needs_migration"] is True
        assert result["categories"]["api"] == ["src/lib/auth.ts"]

    def test_empty_change_set(self):
        """Test an empty change set."""
        assert ChangeSet().classification == "none"


class TestGitChanges:
    """Test change detection in a git repository."""

    @requires_git
    def test_uncommitted_and_untracked_changes(self, ops_config):
        """Test working tree edits and new files are detected."""
        root = ops_config["project"]["root"]
        repo = git.Repo.init(root)
        commit_all(repo, "initial")

        write(root, "prisma/schema.prisma", "model User {\n  id String @id\n  email String\n}\n")
        write(root, "docs/recovery.md", "# Recovery\n")

        change_set = ChangeAnalyzer(ops_config).analyze()

        assert change_set.source == "git"
        assert "prisma/schema.prisma" in change_set.files
        assert "docs/recovery.md" in change_set.files
        assert change_set.classification == "schema"

    @requires_git
    def test_committed_changes_since_base_ref(self, ops_config):
        """Test changes in the last commit are detected."""
        root = ops_config["project"]["root"]
        repo = git.Repo.init(root)
        commit_all(repo, "initial")
        write(root, "src/lib/auth.ts", "export const auth = {}\n")
        commit_all(repo, "add auth")

        change_set = ChangeAnalyzer(ops_config).analyze()

        assert change_set.files == ["src/lib/auth.ts"]
        assert change_set.classification == "api"

    @requires_git
    def test_clean_single_commit_repository(self, ops_config):
        """Test a missing base ref yields no committed changes."""
        root = ops_config["project"]["root"]
        repo = git.Repo.init(root)
        commit_all(repo, "initial")

        change_set = ChangeAnalyzer(ops_config).analyze()

        assert change_set.files == []
        assert change_set.classification == "none"


class TestMtimeChanges:
    """Test the modification-time fallback outside git."""

    def test_recent_files_detected(self, ops_config):
        """Test recently modified watched files are reported."""
        root = ops_config["project"]["root"]
        old = time.time() - 3 * 3600
        for rel_path in ("prisma/schema.prisma", "src/app/page.tsx", "package.json"):
            os.utime(os.path.join(root, rel_path), (old, old))
        write(root, "src/lib/auth.ts", "export const auth = {}\n")
        write(root, "CHANGELOG.md", "# Changes\n")

        with patch("saanify_ops.infrastructure.changes.git.Repo", side_effect=InvalidGitRepositoryError(root)):
            change_set = ChangeAnalyzer(ops_config).analyze()

        assert change_set.source == "mtime"
        assert change_set.files == ["CHANGELOG.md", "src/lib/auth.ts"]
        assert change_set.classification == "api"

    def test_window_uses_clock(self, ops_config):
        """Test nothing is reported once the window has passed."""
        later = time.time() + 2 * 3600

        with patch("saanify_ops.infrastructure.changes.git.Repo", side_effect=InvalidGitRepositoryError("x")):
            change_set = ChangeAnalyzer(ops_config, clock=lambda: later).analyze()

        assert change_set.files == []
