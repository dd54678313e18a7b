"""Configuration validation for saanify-ops."""

import os
from typing import Any, Dict, List

import jsonschema

from ..utils.errors import ConfigurationError, create_error_suggestions, format_validation_errors
from .schemas import OPS_CONFIG_SCHEMA


class ConfigValidationError(ConfigurationError):
    """Raised when configuration validation fails."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__(
            "Configuration validation failed",
            details=format_validation_errors(errors),
            suggestions=create_error_suggestions("configuration_invalid"),
        )


class ConfigValidator:
    """Validates saanify-ops configuration files."""

    def validate_config(self, config: Dict[str, Any]) -> List[str]:
        """
        Validate an ops configuration document.

        Args:
            config: Configuration dictionary to validate

        Returns:
            List[str]: List of validation errors (empty if valid)
        """
        if not isinstance(config, dict):
            return ["Configuration must be a mapping"]

        errors = []

        validator = jsonschema.Draft7Validator(OPS_CONFIG_SCHEMA)
        for error in sorted(validator.iter_errors(config), key=lambda e: list(e.path)):
            location = ".".join(str(part) for part in error.path)
            if location:
                errors.append(f"{location}: {error.message}")
            else:
                errors.append(f"Schema validation failed: {error.message}")

        # Semantic checks the schema cannot express
        deploy = config.get("deploy", {})
        if isinstance(deploy, dict):
            hook_url = deploy.get("hook_url")
            if isinstance(hook_url, str) and hook_url:
                errors.extend(self._validate_url(hook_url, "deploy.hook_url"))

        paths = config.get("paths", {})
        if isinstance(paths, dict):
            backups_dir = paths.get("backups_dir")
            if backups_dir and backups_dir == paths.get("logs_dir"):
                errors.append("paths.backups_dir and paths.logs_dir must be different directories")

        backup = config.get("backup", {})
        if isinstance(backup, dict):
            for rel_path in backup.get("critical_files", []) or []:
                if isinstance(rel_path, str) and os.path.isabs(rel_path):
                    errors.append(f"backup.critical_files entries must be relative: {rel_path}")

        health = config.get("health", {})
        if isinstance(health, dict):
            for key in ("api_paths", "ui_paths"):
                for path in health.get(key, []) or []:
                    if isinstance(path, str) and not path.startswith("/"):
                        errors.append(f"health.{key} entries must start with /: {path}")

        return errors

    def _validate_url(self, url: str, field: str) -> List[str]:
        """Validate http(s) URL format."""
        if not url.startswith(("http://", "https://")):
            return [f"{field} must be an http(s) URL: {url}"]
        return []
