"""External deploy trigger (hosting provider deploy hook)."""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import requests

from ..utils.cancellation import CancellationToken, Deadline
from ..utils.errors import ConfigurationError, TriggerError
from ..utils.retry import execute_with_retry

logger = logging.getLogger(__name__)


class DeployTrigger:
    """POSTs to the configured deploy hook; retried with backoff."""

    def __init__(
        self,
        config: Dict[str, Any],
        verbose: bool = False,
        session: Optional[requests.Session] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """
        Initialize deploy trigger.

        Args:
            config: Resolved saanify-ops configuration
            verbose: Enable verbose output
            session: HTTP session used for the hook call
            sleep: Sleep function used between retries
        """
        self.deploy_config = config["deploy"]
        self.project_name = config["project"]["name"]
        self.verbose = verbose
        self.session = session or requests.Session()
        self.sleep = sleep

    def trigger(
        self,
        change_set: Optional[Dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
        deadline: Optional[Deadline] = None,
    ) -> Dict[str, Any]:
        """
        Fire the deploy hook.

        Args:
            change_set: Classified changes sent with the request
            cancel_token: Checked before each attempt and while waiting
            deadline: Bounds request timeouts and retry waits

        Returns:
            Dict[str, Any]: Status code, attempts and any job id the hook returned

        Raises:
            ConfigurationError: If no hook URL is configured
            TriggerError: If every attempt fails
        """
        hook_url = self.deploy_config.get("hook_url")
        if not hook_url:
            raise ConfigurationError(
                "No deploy hook configured",
                suggestions=["Set deploy.hook_url or SAANIFY_DEPLOY_HOOK_URL"],
            )

        body = {
            "source": "saanify-ops",
            "project": self.project_name,
            "triggered_at": datetime.now(timezone.utc).isoformat(),
            "changes": change_set or {},
        }
        attempts = {"count": 0}

        def post() -> requests.Response:
            attempts["count"] += 1
            timeout = self.deploy_config.get("timeout", 30)
            if deadline is not None:
                timeout = deadline.timeout(timeout)
            response = self.session.post(hook_url, json=body, timeout=timeout)
            if not 200 <= response.status_code < 300:
                raise requests.HTTPError(f"Deploy hook returned HTTP {response.status_code}", response=response)
            return response

        retry = self.deploy_config.get("retry", {})
        retry_kwargs = {"sleep": self.sleep} if self.sleep else {}

        if self.verbose:
            print("Triggering deployment...")

        try:
            response = execute_with_retry(
                post,
                max_attempts=retry.get("max_attempts", 3),
                initial_delay=retry.get("initial_delay", 2.0),
                max_delay=retry.get("max_delay", 30.0),
                retry_on=(requests.RequestException,),
                cancel_token=cancel_token,
                deadline=deadline,
                description="Deploy hook",
                **retry_kwargs,
            )
        except requests.RequestException as e:
            raise TriggerError(
                f"Deploy trigger failed after {attempts['count']} attempt(s)",
                details=str(e),
                suggestions=["Check the deploy hook URL and the hosting provider status"],
            ) from e

        result = {"status_code": response.status_code, "attempts": attempts["count"]}
        try:
            payload = response.json()
        except ValueError:
            payload = None

        if isinstance(payload, dict):
            job = payload.get("job") if isinstance(payload.get("job"), dict) else payload
            for key in ("id", "state", "createdAt"):
                if key in job:
                    result[f"job_{key}"] = job[key]

        logger.info("Deploy hook accepted (HTTP %s, %d attempt(s))", response.status_code, attempts["count"])
        return result
