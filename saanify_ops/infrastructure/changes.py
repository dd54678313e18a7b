"""Change analysis: classify pending changes as schema, api, ui or docs."""

import fnmatch
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import git
from git.exc import BadName, BadObject, GitCommandError, InvalidGitRepositoryError, NoSuchPathError

logger = logging.getLogger(__name__)

CATEGORIES = ("schema", "api", "ui", "docs")
SKIP_DIRS = {".git", "node_modules", ".next", "__pycache__"}


@dataclass
class ChangeSet:
    """Classified set of changed paths."""

    files: List[str] = field(default_factory=list)
    categories: Dict[str, List[str]] = field(default_factory=lambda: {name: [] for name in CATEGORIES})
    source: str = "none"

    @property
    def schema(self) -> bool:
        return bool(self.categories["schema"])

    @property
    def api(self) -> bool:
        return bool(self.categories["api"])

    @property
    def ui(self) -> bool:
        return bool(self.categories["ui"])

    @property
    def docs(self) -> bool:
        return bool(self.categories["docs"])

    @property
    def should_deploy(self) -> bool:
        return self.schema or self.api or self.ui

    @property
    def needs_migration(self) -> bool:
        return self.schema or self.api

    @property
    def classification(self) -> str:
        """Most significant category: schema, api, ui, docs-only or none."""
        for name in ("schema", "api", "ui"):
            if self.categories[name]:
                return name
        return "docs-only" if self.docs else "none"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "classification": self.classification,
            "should_deploy": self.should_deploy,
            "needs_migration": self.needs_migration,
            "source": self.source,
            "files": list(self.files),
            "categories": {name: list(paths) for name, paths in self.categories.items()},
        }


class ChangeAnalyzer:
    """Finds changed project files with git, or by modification time outside a repository."""

    def __init__(self, config: Dict[str, Any], verbose: bool = False, clock: Callable[[], float] = time.time):
        """
        Initialize change analyzer.

        Args:
            config: Resolved saanify-ops configuration
            verbose: Enable verbose output
            clock: Returns the current epoch time (mtime fallback)
        """
        self.config = config
        self.changes_config = config["changes"]
        self.root = config["project"]["root"]
        self.verbose = verbose
        self.clock = clock

        self._excluded = [
            os.path.relpath(config["paths"][key], self.root).replace(os.sep, "/").rstrip("/") + "/"
            for key in ("backups_dir", "logs_dir")
        ]

    def analyze(self) -> ChangeSet:
        """
        Collect and classify pending changes.

        Returns:
            ChangeSet: Classified changes
        """
        paths = self._git_changes()
        source = "git"
        if paths is None:
            paths = self._mtime_changes()
            source = "mtime"

        change_set = self.classify(paths)
        change_set.source = source

        if self.verbose:
            print(f"Changes ({source}): {change_set.classification}, {len(change_set.files)} files")

        return change_set

    def classify(self, paths: Iterable[str]) -> ChangeSet:
        """
        Classify paths by the configured glob patterns.

        The first matching category wins; paths matching no pattern count
        as api changes.
        """
        patterns = self.changes_config["patterns"]
        change_set = ChangeSet()

        for path in sorted(set(paths)):
            normalized = path.replace(os.sep, "/")
            if any(normalized.startswith(prefix) for prefix in self._excluded):
                continue

            change_set.files.append(normalized)
            for category in CATEGORIES:
                if any(fnmatch.fnmatch(normalized, pattern) for pattern in patterns.get(category, [])):
                    change_set.categories[category].append(normalized)
                    break
            else:
                change_set.categories["api"].append(normalized)

        return change_set

    def _git_changes(self) -> Optional[List[str]]:
        """Committed changes since base_ref plus uncommitted and untracked files, or None outside git."""
        try:
            repo = git.Repo(self.root, search_parent_directories=True)
        except (InvalidGitRepositoryError, NoSuchPathError):
            return None

        working_dir = repo.working_tree_dir
        changed = set()

        if repo.head.is_valid():
            base_ref = self.changes_config["base_ref"]
            try:
                for diff in repo.commit(base_ref).diff(repo.head.commit):
                    changed.update(path for path in (diff.a_path, diff.b_path) if path)
            except (BadName, BadObject, GitCommandError, IndexError, ValueError) as e:
                logger.debug("Cannot diff against %s: %s", base_ref, e)

            # Staged changes
            changed.update(diff.a_path for diff in repo.index.diff("HEAD"))

        # Unstaged changes and untracked files
        changed.update(diff.a_path for diff in repo.index.diff(None))
        changed.update(repo.untracked_files)

        root = os.path.realpath(self.root)
        relative = []
        for path in changed:
            rel_path = os.path.relpath(os.path.realpath(os.path.join(working_dir, path)), root)
            if not rel_path.startswith(".."):
                relative.append(rel_path)

        return relative

    def _mtime_changes(self) -> List[str]:
        """Files under the watched directories modified within the window, plus top-level docs."""
        cutoff = self.clock() - self.changes_config["window_minutes"] * 60
        changed = []

        for watch_dir in self.changes_config["watch_dirs"]:
            base = os.path.join(self.root, watch_dir)
            if not os.path.isdir(base):
                continue

            for dirpath, dirnames, filenames in os.walk(base):
                dirnames[:] = [name for name in dirnames if name not in SKIP_DIRS]
                for filename in filenames:
                    full_path = os.path.join(dirpath, filename)
                    if os.path.getmtime(full_path) >= cutoff:
                        changed.append(os.path.relpath(full_path, self.root))

        for filename in os.listdir(self.root) if os.path.isdir(self.root) else []:
            full_path = os.path.join(self.root, filename)
            if filename.endswith(".md") and os.path.isfile(full_path) and os.path.getmtime(full_path) >= cutoff:
                changed.append(filename)

        return changed
