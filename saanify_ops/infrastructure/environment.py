"""Environment synchronization: validate the deployment's configuration keys."""

from typing import Any, Dict

from ..utils.errors import ConfigurationError
from ..utils.files import FileManager, mask_secrets


class EnvironmentSync:
    """Merges the env file with configured values and checks required keys."""

    def __init__(self, config: Dict[str, Any], verbose: bool = False):
        """
        Initialize environment sync.

        Args:
            config: Resolved saanify-ops configuration
            verbose: Enable verbose output
        """
        self.config = config
        self.verbose = verbose
        self.file_manager = FileManager(verbose=verbose)

    def sync(self) -> Dict[str, Any]:
        """
        Collect environment values and report which keys are set.

        Returns:
            Dict[str, Any]: Per-key status for required and optional keys

        Raises:
            ConfigurationError: If a required key is missing or empty
        """
        env_config = self.config["environment"]
        env_file = self.config["paths"].get("env_file")

        values: Dict[str, str] = {}
        if env_file:
            values.update(self.file_manager.read_env_file(env_file))
        values.update(env_config.get("values", {}))

        required = {key: bool(values.get(key)) for key in env_config["required"]}
        optional = {key: bool(values.get(key)) for key in env_config["optional"]}
        missing = [key for key, present in required.items() if not present]

        if self.verbose:
            for key, present in {**required, **optional}.items():
                print(f"  {'✓' if present else '✗'} {key}")

        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}",
                details=f"Checked {env_file or 'no env file'} and the process environment",
                suggestions=[f"Set {key} in {env_file or '.env'} or export it" for key in missing],
            )

        return {
            "env_file": env_file,
            "required": required,
            "optional": optional,
            "values": mask_secrets({key: values[key] for key in sorted(values) if key in required or key in optional}),
        }
