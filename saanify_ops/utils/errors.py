"""Error handling utilities for saanify-ops."""

import sys
import traceback
from typing import Optional, Tuple

import click


class SaanifyOpsError(Exception):
    """Base exception for saanify-ops errors."""

    kind = "Error"

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        suggestions: Optional[list] = None,
    ):
        self.message = message
        self.details = details
        self.suggestions = suggestions or []
        super().__init__(message)

    def to_dict(self) -> dict:
        """Machine-checkable representation used in command results."""
        error = {"kind": self.kind, "message": self.message}
        if self.details:
            error["details"] = self.details
        return error


class ConfigurationError(SaanifyOpsError):
    """Raised when configuration is invalid or missing."""

    kind = "ConfigurationError"


class BackupCreationError(SaanifyOpsError):
    """Raised when a backup unit cannot be written completely."""

    kind = "BackupCreationError"


class IntegrityError(SaanifyOpsError):
    """Raised when a backup fails checksum or consistency verification."""

    kind = "IntegrityError"


class NotFoundError(SaanifyOpsError):
    """Raised when a backup or recovery target does not exist."""

    kind = "NotFoundError"


class PartialFailureError(SaanifyOpsError):
    """Raised when a restore applied only part of the target state."""

    kind = "PartialFailureError"

    def __init__(
        self,
        message: str,
        applied: int = 0,
        pending: int = 0,
        rolled_back: bool = False,
        details: Optional[str] = None,
        suggestions: Optional[list] = None,
    ):
        super().__init__(message, details=details, suggestions=suggestions)
        self.applied = applied
        self.pending = pending
        self.rolled_back = rolled_back

    def to_dict(self) -> dict:
        error = super().to_dict()
        error.update({"applied": self.applied, "pending": self.pending, "rolled_back": self.rolled_back})
        return error


class BusyError(SaanifyOpsError):
    """Raised when an exclusive operation is already running."""

    kind = "Busy"


class FatalPipelineError(SaanifyOpsError):
    """Raised when a pipeline step fails and aborts the run."""

    kind = "FatalPipelineError"

    def __init__(self, message: str, step: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.step = step


class UnauthorizedError(SaanifyOpsError):
    """Raised when the access token does not match configuration."""

    kind = "Unauthorized"


class CancelledError(SaanifyOpsError):
    """Raised when an operation is cancelled between steps."""

    kind = "Cancelled"


class TriggerError(SaanifyOpsError):
    """Raised when the external deploy trigger rejects or cannot be reached."""

    kind = "TriggerError"


class DataStoreError(SaanifyOpsError):
    """Raised when the primary data store cannot complete an operation."""

    kind = "DataStoreError"


class ReferentialIntegrityError(DataStoreError):
    """Raised when a write would break a foreign-key relationship."""

    kind = "ReferentialIntegrityError"


# Builtin exceptions that reach the CLI unwrapped, mapped to a message prefix and hints.
GENERIC_ERRORS = (
    (
        FileNotFoundError,
        "File not found",
        [
            "Check the paths section of saanify-ops.yml",
            "Run 'saanify-ops init' if the project has no configuration yet",
        ],
    ),
    (
        PermissionError,
        "Permission denied",
        [
            "The backups and logs directories must be writable by the ops user",
            "Backup units hold private files readable by their owner only",
        ],
    ),
    (
        ConnectionError,
        "Connection failed",
        [
            "Check that health.base_url points at the running application",
            "Verify the deploy hook URL is reachable from this host",
        ],
    ),
    (
        TimeoutError,
        "Timed out",
        ["Raise health.timeout or deploy.timeout in saanify-ops.yml"],
    ),
)


class ErrorHandler:
    """Handles and formats errors for user-friendly display."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def handle_error(self, error: Exception, context: Optional[str] = None) -> None:
        """
        Print an error, its context and recovery hints to stderr.

        Args:
            error: Exception to handle
            context: Command or step that was running
        """
        message, details, suggestions = self.describe(error)

        click.echo(f"✗ {message}", err=True)
        if context:
            click.echo(f"Context: {context}", err=True)
        if details:
            click.echo(f"Details: {details}", err=True)
        if suggestions:
            click.echo("\nSuggestions:", err=True)
            for suggestion in suggestions:
                click.echo(f"  • {suggestion}", err=True)

        if self.verbose:
            click.echo("\nFull traceback:", err=True)
            traceback.print_exc()

    @staticmethod
    def describe(error: Exception) -> Tuple[str, Optional[str], list]:
        """Message, details and suggestions for any exception."""
        if isinstance(error, SaanifyOpsError):
            return error.message, error.details, error.suggestions

        for error_class, prefix, suggestions in GENERIC_ERRORS:
            if isinstance(error, error_class):
                return f"{prefix}: {error}", None, list(suggestions)

        return f"{type(error).__name__}: {error}", None, []

    def exit_with_error(self, error: Exception, context: Optional[str] = None, exit_code: int = 1) -> None:
        self.handle_error(error, context)
        sys.exit(exit_code)


def create_error_suggestions(error_type: str, backup_dir: str = "backups", lock_file: Optional[str] = None) -> list:
    """Recovery hints for a known failure; unknown types get none."""
    lock_file = lock_file or f"{backup_dir}/.recovery.lock"

    suggestions = {
        "backup_corrupted": [
            f"Inspect the backup unit under {backup_dir} for manual edits",
            "Restore from an older backup with 'saanify-ops restore <id>'",
            "List valid backups with 'saanify-ops list-backups'",
        ],
        "backup_missing": [
            "List valid backups with 'saanify-ops list-backups'",
            "Create a backup with 'saanify-ops create-backup'",
        ],
        "recovery_busy": [
            "Wait for the running recovery operation to finish",
            f"If no recovery is running, remove the stale lock file {lock_file}",
        ],
        "partial_restore": [
            "Quiesce application traffic before retrying the restore",
            f"The pre-restore state is described in the recovery audit log; backups remain in {backup_dir}",
        ],
        "configuration_invalid": [
            "Check YAML syntax in saanify-ops.yml",
            "Verify all required fields are present",
            "Run 'saanify-ops init' to generate a default configuration",
        ],
        "unauthorized": [
            "Pass the shared secret with --token or SAANIFY_OPS_TOKEN",
        ],
    }

    return suggestions.get(error_type, [])


def format_validation_errors(errors: list) -> str:
    """Render schema and semantic config errors as one numbered block."""
    if not errors:
        return "No validation errors"
    if len(errors) == 1:
        return f"Validation error: {errors[0]}"
    lines = [f"  {number}. {error}" for number, error in enumerate(errors, 1)]
    return "\n".join(["Validation errors:"] + lines)
