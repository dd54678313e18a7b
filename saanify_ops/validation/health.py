"""Health checking for the society-management deployment."""

import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from ..datastore.accounts import verify_password
from ..datastore.base import COLLECTIONS, SUPER_ADMIN_ROLE, DataStore
from ..utils.cancellation import CancellationToken, Deadline
from ..utils.errors import CancelledError
from ..utils.files import FileManager
from ..utils.retry import execute_with_retry

logger = logging.getLogger(__name__)

# Single source of truth for score -> status, highest threshold first
STATUS_THRESHOLDS: Tuple[Tuple[int, str], ...] = (
    (80, "healthy"),
    (60, "degraded"),
    (0, "critical"),
)

CHECK_NAMES = ("environment", "filesystem", "schema", "database", "api", "ui")
REACHABILITY_CHECKS = ("api", "ui")


def compute_score(passed: int, total: int) -> int:
    """100 * passed / total, rounded half up."""
    if total <= 0:
        return 0
    return (200 * passed + total) // (2 * total)


def status_for_score(score: int) -> str:
    for threshold, status in STATUS_THRESHOLDS:
        if score >= threshold:
            return status
    return STATUS_THRESHOLDS[-1][1]


@dataclass(frozen=True)
class HealthCheck:
    """Outcome of one independent check."""

    name: str
    passed: bool
    details: Dict[str, Any] = field(default_factory=dict)
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "passed": self.passed, "details": self.details, "duration_ms": self.duration_ms}


@dataclass(frozen=True)
class HealthReport:
    """Immutable aggregate of a health-check run."""

    id: str
    timestamp: str
    checks: Tuple[HealthCheck, ...]
    score: int
    status: str

    @classmethod
    def from_checks(cls, checks: List[HealthCheck], moment: Optional[datetime] = None) -> "HealthReport":
        moment = moment or datetime.now(timezone.utc)
        passed = sum(1 for check in checks if check.passed)
        score = compute_score(passed, len(checks))
        return cls(
            id=f"health-{moment.strftime('%Y%m%d-%H%M%S-%f')}",
            timestamp=moment.isoformat(),
            checks=tuple(checks),
            score=score,
            status=status_for_score(score),
        )

    @property
    def passed(self) -> int:
        return sum(1 for check in self.checks if check.passed)

    @property
    def total(self) -> int:
        return len(self.checks)

    def check(self, name: str) -> Optional[HealthCheck]:
        for check in self.checks:
            if check.name == name:
                return check
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "score": self.score,
            "status": self.status,
            "passed": self.passed,
            "total": self.total,
            "checks": [check.to_dict() for check in self.checks],
        }


class HealthChecker:
    """Runs the fixed battery of health checks and aggregates a score."""

    def __init__(
        self,
        config: Dict[str, Any],
        store: DataStore,
        verbose: bool = False,
        session: Optional[requests.Session] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """
        Initialize health checker.

        Args:
            config: Resolved saanify-ops configuration
            store: Primary data store
            verbose: Enable verbose output
            session: HTTP session used for HTTP checks
            sleep: Sleep function used between HTTP retries
        """
        self.config = config
        self.health_config = config["health"]
        self.store = store
        self.verbose = verbose
        self.session = session or requests.Session()
        self.sleep = sleep
        self.file_manager = FileManager(verbose=verbose)

    def run(
        self,
        deadline: Optional[Deadline] = None,
        cancel_token: Optional[CancellationToken] = None,
        persist: Optional[bool] = None,
    ) -> HealthReport:
        """
        Run all six checks.

        Args:
            deadline: Bounds request timeouts and retry waits
            cancel_token: Checked before each check and between retries
            persist: Write the report to the logs directory (defaults to health.persist_reports)

        Returns:
            HealthReport: Aggregated report
        """
        if self.verbose:
            print("Running health checks...")

        report = self._run_checks(CHECK_NAMES, deadline, cancel_token)

        if persist is None:
            persist = self.health_config.get("persist_reports", False)
        if persist:
            self.persist(report)

        if self.verbose:
            print(f"Health: {report.status} (score {report.score}, {report.passed}/{report.total} checks passed)")

        return report

    def reachability(
        self,
        deadline: Optional[Deadline] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> HealthReport:
        """Run only the HTTP surface checks (api and ui)."""
        return self._run_checks(REACHABILITY_CHECKS, deadline, cancel_token)

    def persist(self, report: HealthReport) -> str:
        """
        Write a report as a timestamped artifact.

        Returns:
            str: Path of the report file
        """
        reports_dir = os.path.join(self.config["paths"]["logs_dir"], "health")
        os.makedirs(reports_dir, exist_ok=True)
        path = os.path.join(reports_dir, f"health-report-{report.id[len('health-'):]}.json")
        return self.file_manager.write_json(path, report.to_dict())

    def _run_checks(
        self,
        names: Tuple[str, ...],
        deadline: Optional[Deadline],
        cancel_token: Optional[CancellationToken],
    ) -> HealthReport:
        """Run the named checks in order and build a report."""
        runners = {
            "environment": lambda: self._check_environment(),
            "filesystem": lambda: self._check_filesystem(),
            "schema": lambda: self._check_schema(),
            "database": lambda: self._check_database(),
            "api": lambda: self._check_paths(self.health_config["api_paths"], deadline, cancel_token),
            "ui": lambda: self._check_paths(self.health_config["ui_paths"], deadline, cancel_token),
        }

        checks = []
        for name in names:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            checks.append(self._safe_check(name, runners[name]))

        return HealthReport.from_checks(checks)

    def _safe_check(self, name: str, runner: Callable[[], Tuple[bool, Dict[str, Any]]]) -> HealthCheck:
        """Run one check; an exception becomes a failed check."""
        start_time = time.monotonic()
        try:
            passed, details = runner()
        except CancelledError:
            raise
        except Exception as e:
            logger.warning("Health check %s could not complete: %s", name, e)
            passed, details = False, {"error": f"{type(e).__name__}: {e}"}

        duration_ms = int((time.monotonic() - start_time) * 1000)

        if self.verbose:
            mark = "✓" if passed else "✗"
            print(f"  {mark} {name}")

        return HealthCheck(name=name, passed=passed, details=details, duration_ms=duration_ms)

    def _check_environment(self) -> Tuple[bool, Dict[str, Any]]:
        """Check required configuration keys are present."""
        values: Dict[str, str] = {}
        env_file = self.config["paths"].get("env_file")
        if env_file:
            values.update(self.file_manager.read_env_file(env_file))
        values.update(self.config["environment"].get("values", {}))

        required = list(self.config["environment"]["required"])
        missing = [key for key in required if not values.get(key)]

        return not missing, {"required": required, "missing": missing, "present": len(required) - len(missing)}

    def _check_filesystem(self) -> Tuple[bool, Dict[str, Any]]:
        """Check required project files and directories exist."""
        root = self.config["project"]["root"]
        missing_files = [
            path for path in self.health_config["required_files"] if not os.path.isfile(os.path.join(root, path))
        ]
        missing_dirs = [
            path for path in self.health_config["required_dirs"] if not os.path.isdir(os.path.join(root, path))
        ]

        return not (missing_files or missing_dirs), {
            "root": root,
            "missing_files": missing_files,
            "missing_dirs": missing_dirs,
        }

    def _check_schema(self) -> Tuple[bool, Dict[str, Any]]:
        """Check every tracked collection exists in the store."""
        missing = [collection for collection in COLLECTIONS if not self.store.has_collection(collection)]
        return not missing, {"collections": list(COLLECTIONS), "missing": missing}

    def _check_database(self) -> Tuple[bool, Dict[str, Any]]:
        """Check the store is reachable, report basic counts and whether the super admin can log in."""
        self.store.ping()
        details = {
            "users": self.store.count("users"),
            "societies": self.store.count("society_accounts"),
            "super_admins": self.store.count("users", role=SUPER_ADMIN_ROLE),
            "super_admin_login": None,
        }

        # Only checked when a bootstrap password is configured
        password = self.config.get("bootstrap", {}).get("admin_password")
        super_admin = self.store.find_super_admin() if password else None
        if super_admin is not None:
            details["super_admin_login"] = verify_password(password, super_admin.get("password"))
            if not details["super_admin_login"]:
                logger.warning("Configured admin password does not match %s", super_admin["email"])
        return True, details

    def _check_paths(
        self,
        paths: List[str],
        deadline: Optional[Deadline],
        cancel_token: Optional[CancellationToken],
    ) -> Tuple[bool, Dict[str, Any]]:
        """Request HTTP paths; passes when at least one returns 2xx."""
        base_url = self.health_config["base_url"].rstrip("/")
        retry = self.health_config.get("retry", {})
        results = []

        for path in paths:
            url = f"{base_url}{path}"
            start_time = time.monotonic()
            try:
                response = execute_with_retry(
                    lambda: self._get(url, deadline),
                    max_attempts=retry.get("max_attempts", 1),
                    initial_delay=retry.get("initial_delay", 1.0),
                    max_delay=retry.get("max_delay", 5.0),
                    retry_on=(requests.RequestException,),
                    cancel_token=cancel_token,
                    deadline=deadline,
                    sleep=self.sleep,
                    description=f"GET {url}",
                )
                results.append(
                    {
                        "path": path,
                        "ok": True,
                        "status_code": response.status_code,
                        "response_time_ms": int((time.monotonic() - start_time) * 1000),
                    }
                )
            except requests.RequestException as e:
                status_code = e.response.status_code if e.response is not None else None
                results.append({"path": path, "ok": False, "status_code": status_code, "error": str(e)})

        ok_count = sum(1 for result in results if result["ok"])
        success_rate = compute_score(ok_count, len(results))

        return ok_count > 0, {"base_url": base_url, "paths": results, "success_rate": success_rate}

    def _get(self, url: str, deadline: Optional[Deadline]) -> requests.Response:
        """GET a URL, treating anything outside 2xx as an error."""
        timeout = self.health_config.get("timeout", 10)
        if deadline is not None:
            timeout = deadline.timeout(timeout)

        response = self.session.get(url, timeout=timeout)
        if not 200 <= response.status_code < 300:
            raise requests.HTTPError(f"HTTP {response.status_code} from {url}", response=response)
        return response
