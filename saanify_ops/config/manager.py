"""Configuration management for saanify-ops."""

import copy
import os
from typing import Any, Dict, Mapping, Optional

import yaml
from jinja2 import Environment, FileSystemLoader

from ..utils.errors import ConfigurationError
from .schemas import CONFIG_FILENAME, DEFAULT_CONFIG, ENV_OVERRIDES
from .validator import ConfigValidationError, ConfigValidator


def deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def normalize_database_url(url: str, root: str) -> str:
    """
    Translate application-style database URLs into SQLAlchemy URLs.

    The web app writes SQLite locations as ``file:./dev.db``; relative
    SQLite paths are anchored at the project root.
    """
    if url.startswith("file:"):
        path = url[len("file:"):]
        if not os.path.isabs(path):
            path = os.path.normpath(os.path.join(root, path))
        return f"sqlite:///{path}"

    if url.startswith("sqlite:///") and not url.startswith("sqlite:////"):
        path = url[len("sqlite:///"):]
        if path and path != ":memory:":
            return f"sqlite:///{os.path.normpath(os.path.join(root, path))}"

    return url


class ConfigManager:
    """Manages saanify-ops configuration files."""

    def __init__(self, path: Optional[str] = None):
        """
        Initialize configuration manager.

        Args:
            path: Optional project directory (defaults to current directory)
        """
        self.path = path or os.getcwd()
        self.validator = ConfigValidator()

        # Setup Jinja2 for template rendering
        templates_dir = os.path.join(os.path.dirname(__file__), "..", "templates")
        self.jinja_env = Environment(loader=FileSystemLoader(templates_dir), trim_blocks=True, lstrip_blocks=True)

    def get_config_path(self, config_path: Optional[str] = None) -> Optional[str]:
        """Get path to the configuration file, or None if there is none."""
        if config_path:
            return config_path

        candidate = os.path.join(self.path, CONFIG_FILENAME)
        if os.path.exists(candidate):
            return candidate

        return None

    def load_config(
        self,
        config_path: Optional[str] = None,
        validate: bool = True,
        environ: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Load configuration, merged over defaults and environment overrides.

        Args:
            config_path: Explicit configuration file (defaults to saanify-ops.yml in path)
            validate: Whether to validate the file contents
            environ: Environment mapping for overrides (defaults to os.environ)

        Returns:
            Dict[str, Any]: Resolved configuration with absolute directories

        Raises:
            ConfigValidationError: If validation fails
            ConfigurationError: If the file is missing or not valid YAML
        """
        environ = os.environ if environ is None else environ
        resolved_path = self.get_config_path(config_path)

        file_config: Dict[str, Any] = {}
        base_dir = self.path

        if resolved_path:
            if not os.path.exists(resolved_path):
                raise ConfigurationError(f"Configuration file not found: {resolved_path}")

            try:
                with open(resolved_path, encoding="utf-8") as f:
                    file_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Error parsing YAML file {resolved_path}", details=str(e)) from e

            base_dir = os.path.dirname(os.path.abspath(resolved_path))

        if validate:
            errors = self.validator.validate_config(file_config)
            if errors:
                raise ConfigValidationError(errors)

        config = deep_merge(DEFAULT_CONFIG, file_config)
        self._apply_env_overrides(config, environ)
        self._resolve_paths(config, base_dir)

        return config

    def _apply_env_overrides(self, config: Dict[str, Any], environ: Mapping[str, str]) -> None:
        """Apply the fixed set of environment overrides and capture tracked keys."""
        for env_key, (section, key) in ENV_OVERRIDES.items():
            value = environ.get(env_key)
            if value:
                config[section][key] = value

        # The app's session secret doubles as the ops token when none is set
        if not config["security"]["token"] and environ.get("NEXTAUTH_SECRET"):
            config["security"]["token"] = environ["NEXTAUTH_SECRET"]

        env_config = config["environment"]
        values = dict(env_config.get("values") or {})
        for key in list(env_config["required"]) + list(env_config["optional"]):
            if key in environ and key not in values:
                values[key] = environ[key]
        env_config["values"] = values

    def _resolve_paths(self, config: Dict[str, Any], base_dir: str) -> None:
        """Anchor the project root and working directories."""
        root = config["project"]["root"]
        if not os.path.isabs(root):
            root = os.path.normpath(os.path.join(base_dir, root))
        config["project"]["root"] = root

        for key in ("backups_dir", "logs_dir", "env_file", "backup_key_file"):
            value = config["paths"][key]
            if value and not os.path.isabs(value):
                config["paths"][key] = os.path.join(root, value)

        config["database"]["url"] = normalize_database_url(config["database"]["url"], root)

    def render_default_config(self, template_vars: Optional[Dict[str, Any]] = None) -> str:
        """
        Render the default configuration file from its template.

        Args:
            template_vars: Variables for template rendering

        Returns:
            str: Rendered YAML document
        """
        variables = {
            "project_name": DEFAULT_CONFIG["project"]["name"],
            "database_url": DEFAULT_CONFIG["database"]["url"],
            "base_url": DEFAULT_CONFIG["health"]["base_url"],
            "admin_email": DEFAULT_CONFIG["bootstrap"]["admin_email"],
            "critical_files": DEFAULT_CONFIG["backup"]["critical_files"],
            "required_env": DEFAULT_CONFIG["environment"]["required"],
        }
        variables.update(template_vars or {})

        template = self.jinja_env.get_template("saanify-ops.yml.j2")
        return template.render(**variables)

    def initialize_config(self, force: bool = False, **template_vars) -> str:
        """
        Write a default saanify-ops.yml into the project directory.

        Args:
            force: Overwrite an existing configuration file
            **template_vars: Template variables (project_name, database_url, base_url, ...)

        Returns:
            str: Path to created configuration file

        Raises:
            ConfigurationError: If the file exists and force is not set
        """
        config_path = os.path.join(self.path, CONFIG_FILENAME)
        if os.path.exists(config_path) and not force:
            raise ConfigurationError(
                f"Configuration file already exists: {config_path}",
                suggestions=["Use --force to overwrite it"],
            )

        content = self.render_default_config(template_vars)

        errors = self.validator.validate_config(yaml.safe_load(content) or {})
        if errors:
            raise ConfigValidationError(errors)

        with open(config_path, "w", encoding="utf-8") as f:
            f.write(content)

        return config_path

    def save_config(self, config: Dict[str, Any], config_path: Optional[str] = None) -> str:
        """
        Save configuration to file.

        Args:
            config: Configuration to save
            config_path: Optional custom path (defaults to saanify-ops.yml in path)

        Returns:
            str: Path written
        """
        errors = self.validator.validate_config(config)
        if errors:
            raise ConfigValidationError(errors)

        config_path = config_path or os.path.join(self.path, CONFIG_FILENAME)
        with open(config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(config, f, default_flow_style=False, sort_keys=False)

        return config_path
