"""Main CLI entry point for saanify-ops.

This module provides the command-line interface over master control:
backups, restores, rollbacks, auto-recovery, the automated deployment
pipeline and health checks for a Saanify installation.

Every command prints a human summary (or the raw JSON result with --json),
exits non-zero on failure and, when something failed, prints the backup
path relevant to manual recovery.
"""

import json
import signal
from typing import Any, Dict, Optional

import click

from saanify_ops import __version__
from saanify_ops.backup.models import BACKUP_KINDS
from saanify_ops.config import ConfigManager
from saanify_ops.infrastructure.control import MasterControl
from saanify_ops.utils.cancellation import CancellationToken
from saanify_ops.utils.errors import ErrorHandler
from saanify_ops.utils.logging import setup_logging


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__)
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Path to saanify-ops.yml")
@click.option("--token", envvar="SAANIFY_OPS_TOKEN", help="Ops access token (or SAANIFY_OPS_TOKEN)")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--log-file", help="Log to file in addition to console")
@click.option("--json", "as_json", is_flag=True, help="Print the raw JSON result")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Optional[str],
    token: Optional[str],
    verbose: bool,
    log_file: Optional[str],
    as_json: bool,
) -> None:
    """Saanify ops - deployment, backup and recovery automation.

    Args:
        ctx: Click context object containing shared state
        config_path: Explicit configuration file
        token: Shared secret checked against security.token
        verbose: Enable verbose output for detailed logging
        log_file: Optional path to log file for additional logging
        as_json: Print results as JSON instead of a summary
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["token"] = token
    ctx.obj["verbose"] = verbose
    ctx.obj["log_file"] = log_file
    ctx.obj["json"] = as_json
    ctx.obj["error_handler"] = ErrorHandler(verbose=verbose)

    # Setup logging
    setup_logging(verbose=verbose, log_file=log_file)


def _get_control(ctx: click.Context) -> MasterControl:
    """Build master control from the resolved configuration (cached per invocation)."""
    if "control" not in ctx.obj:
        config = ConfigManager().load_config(ctx.obj["config_path"])
        ctx.obj["control"] = MasterControl(config, verbose=ctx.obj["verbose"])
    return ctx.obj["control"]


def _execute(
    ctx: click.Context,
    action: str,
    context: str,
    backup_id: Optional[str] = None,
    options: Optional[Dict[str, Any]] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> Dict[str, Any]:
    """Run an action, reporting setup errors (bad config, unreachable store) through the error handler."""
    try:
        control = _get_control(ctx)
    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, context)

    return control.execute(action, ctx.obj["token"], backup_id=backup_id, options=options, cancel_token=cancel_token)


def _finish(ctx: click.Context, result: Dict[str, Any]) -> None:
    """Print the failure summary (or JSON) and exit non-zero on failure."""
    if ctx.obj["json"]:
        click.echo(json.dumps(result, indent=2, default=str))
    elif not result["success"]:
        click.echo(f"✗ {result['message']}", err=True)
        error = result.get("error") or {}
        if error.get("kind"):
            click.echo(f"Error kind: {error['kind']}", err=True)
        if error.get("details"):
            click.echo(f"Details: {error['details']}", err=True)
        if result.get("suggestions"):
            click.echo("\nSuggestions:", err=True)
            for suggestion in result["suggestions"]:
                click.echo(f"  • {suggestion}", err=True)

    if not result["success"]:
        if not ctx.obj["json"]:
            if result.get("backupPath"):
                click.echo(f"\nBackup for manual recovery: {result['backupPath']}", err=True)
            else:
                click.echo("\nNo backup available for manual recovery", err=True)
        ctx.exit(1)


def _human(ctx: click.Context, result: Dict[str, Any]) -> bool:
    """Whether a successful human-readable summary should be printed."""
    return result["success"] and not ctx.obj["json"]


@cli.command()
@click.option("--force", is_flag=True, help="Overwrite an existing saanify-ops.yml")
@click.option("--project-name", default="saanify", help="Project name")
@click.option("--database-url", default="sqlite:///saanify.db", help="Primary data store URL")
@click.option("--base-url", default="http://localhost:3000", help="Base URL requested by health checks")
@click.option("--hook-url", default="", help="Deploy hook URL")
@click.pass_context
def init(
    ctx: click.Context,
    force: bool,
    project_name: str,
    database_url: str,
    base_url: str,
    hook_url: str,
) -> None:
    """Write a default saanify-ops.yml in the current directory."""
    try:
        config_manager = ConfigManager()
        config_path = config_manager.initialize_config(
            force=force,
            project_name=project_name,
            database_url=database_url,
            base_url=base_url,
            hook_url=hook_url,
        )

        click.echo(f"✓ Created {config_path}")
        click.echo("\nNext steps:")
        click.echo("  1. Set SAANIFY_OPS_TOKEN (or NEXTAUTH_SECRET) for command access")
        click.echo("  2. Review environment.required and backup.critical_files")
        click.echo("  3. Create a first backup: saanify-ops create-backup")

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Configuration initialization")


@cli.command("create-backup")
@click.option(
    "--kind",
    type=click.Choice(list(BACKUP_KINDS)),
    default=None,
    help="Backup kind (defaults to backup.default_kind)",
)
@click.option("--description", "-d", default="", help="Description stored in the manifest")
@click.pass_context
def create_backup(ctx: click.Context, kind: Optional[str], description: str) -> None:
    """Snapshot the data store, environment and critical files."""
    result = _execute(ctx, "create-backup", "Backup creation", options={"kind": kind, "description": description})

    if _human(ctx, result):
        backup = result["backup"]
        click.echo(f"✓ Backup {backup['id']} created")
        click.echo(f"  Kind: {backup['kind']}")
        click.echo(f"  Checksum: {backup['checksum']}")
        for collection, count in sorted(backup["counts"].items()):
            click.echo(f"  {collection}: {count}")
        click.echo(f"  Path: {result['backupPath']}")

    _finish(ctx, result)


@cli.command("list-backups")
@click.pass_context
def list_backups(ctx: click.Context) -> None:
    """List valid backups, newest first."""
    result = _execute(ctx, "list-backups", "Listing backups")

    if _human(ctx, result):
        backups = result["backups"]
        if not backups:
            click.echo("No backups found")
        for backup in backups:
            size_kb = backup["size_bytes"] / 1024
            description = f"  {backup['description']}" if backup["description"] else ""
            click.echo(f"  {backup['id']}  {backup['kind']:<11} {size_kb:8.1f} KB{description}")

    _finish(ctx, result)


@cli.command("verify-backup")
@click.argument("backup_id")
@click.pass_context
def verify_backup(ctx: click.Context, backup_id: str) -> None:
    """Check a backup's checksums without restoring it."""
    result = _execute(ctx, "verify-backup", "Backup verification", backup_id=backup_id)

    if _human(ctx, result):
        click.echo(f"✓ {result['message']}")

    _finish(ctx, result)


def _echo_recovery(result: Dict[str, Any]) -> None:
    action = result["recoveryAction"]
    click.echo(f"✓ {result['message']}")
    click.echo(f"  Recovery action: {action['id']}")
    for collection, count in sorted(action["result"]["restored"].items()):
        click.echo(f"  {collection}: {count} restored")
    files = action["result"].get("files")
    if files:
        click.echo(f"  Project files written: {len(files['written'])}, not in backup: {len(files['skipped'])}")
        if files["env_file_restored"]:
            click.echo("  Env file restored")


@cli.command()
@click.argument("backup_id")
@click.option("--restore-files", is_flag=True, help="Also restore critical project files and the env file")
@click.confirmation_option(prompt="This replaces the live data. Continue?")
@click.pass_context
def restore(ctx: click.Context, backup_id: str, restore_files: bool) -> None:
    """Restore the data store from BACKUP_ID."""
    result = _execute(ctx, "restore", "Restore", backup_id=backup_id, options={"restore_files": restore_files})

    if _human(ctx, result):
        _echo_recovery(result)

    _finish(ctx, result)


@cli.command()
@click.confirmation_option(prompt="This replaces the live data with the latest backup. Continue?")
@click.pass_context
def rollback(ctx: click.Context) -> None:
    """Restore the most recent valid backup."""
    result = _execute(ctx, "rollback", "Rollback")

    if _human(ctx, result):
        _echo_recovery(result)

    _finish(ctx, result)


@cli.command("auto-recover")
@click.pass_context
def auto_recover(ctx: click.Context) -> None:
    """Diagnose common faults and repair them."""
    result = _execute(ctx, "auto-recover", "Auto-recovery")

    if _human(ctx, result):
        click.echo(f"✓ {result['message']}")
        for issue in result["issues"]:
            click.echo(f"  Issue: {issue}")
        for fix in result["fixes"]:
            marker = "✓" if fix["success"] else "✗"
            click.echo(f"  {marker} {fix['name']}")
        checks = result["checks"]
        click.echo(f"  Super admins: {checks['super_admins']}, users: {checks['users']}, societies: {checks['societies']}")

    _finish(ctx, result)


@cli.command("full-auto-deploy")
@click.option("--force", is_flag=True, help="Deploy even when only documentation changed")
@click.option("--skip-backup", is_flag=True, help="Skip the pre-deploy backup")
@click.option("--skip-health", is_flag=True, help="Skip the health check before the trigger")
@click.pass_context
def full_auto_deploy(ctx: click.Context, force: bool, skip_backup: bool, skip_health: bool) -> None:
    """Run the deployment pipeline: sync, backup, analyze, migrate, health, trigger, verify.

    Ctrl-C cancels the run between steps; remaining steps are skipped.
    """
    cancel_token = CancellationToken()

    def handle_interrupt(signum, frame):
        click.echo("\nCancelling after the current step...", err=True)
        cancel_token.cancel("Interrupted by user")

    previous_handler = signal.signal(signal.SIGINT, handle_interrupt)
    try:
        result = _execute(
            ctx,
            "full-auto-deploy",
            "Deployment",
            options={"force": force, "skip_backup": skip_backup, "skip_health": skip_health},
            cancel_token=cancel_token,
        )
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    if not ctx.obj["json"] and "steps" in result:
        click.echo(f"Deployment {result['deploymentId']}")
        for step in result["steps"]:
            marker = {"completed": "✓", "failed": "✗", "skipped": "-"}.get(step["status"], " ")
            output = f"  {step['output']}" if isinstance(step.get("output"), str) else ""
            click.echo(f"  {marker} {step['name']:<18} {step['status']}{output}")
        for warning in result["warnings"]:
            click.echo(f"  ⚠ {warning}")
        if (result.get("rollback") or {}).get("attempted"):
            rollback_result = result["rollback"]
            marker = "✓" if rollback_result.get("success") else "✗"
            target = (rollback_result.get("action") or {}).get("result", {}).get("backup_id", "latest backup")
            click.echo(f"  {marker} Rollback to {target}")

    if _human(ctx, result):
        click.echo(f"✓ {result['message']}")

    _finish(ctx, result)


def _describe_check(check: Dict[str, Any]) -> str:
    details = check["details"]
    if "error" in details:
        return details["error"]
    if "success_rate" in details:
        return f"{details['success_rate']}% of paths reachable"
    missing = [item for key in ("missing", "missing_files", "missing_dirs") for item in details.get(key, [])]
    if missing:
        return "missing: " + ", ".join(missing)
    if "users" in details:
        return f"{details['users']} user(s), {details['societies']} society account(s)"
    return ""


@cli.command("health-check")
@click.pass_context
def health_check(ctx: click.Context) -> None:
    """Score the system against environment, files, database and HTTP checks."""
    result = _execute(ctx, "health-check", "Health check")

    if not ctx.obj["json"] and "checks" in result:
        for check in result["checks"]:
            marker = "✓" if check["passed"] else "✗"
            click.echo(f"  {marker} {check['name']:<12} {_describe_check(check)}")

    if _human(ctx, result):
        click.echo(f"✓ {result['message']}")

    _finish(ctx, result)


@cli.command("emergency-rollback")
@click.confirmation_option(prompt="Roll back to the latest backup now?")
@click.pass_context
def emergency_rollback(ctx: click.Context) -> None:
    """Roll back to the latest backup and re-check health."""
    result = _execute(ctx, "emergency-rollback", "Emergency rollback")

    if _human(ctx, result):
        _echo_recovery(result)

    _finish(ctx, result)


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show data store counts, backups, the last deployment and recent recoveries."""
    result = _execute(ctx, "system-status", "System status")

    if _human(ctx, result):
        database = result["database"]
        click.echo(f"saanify-ops {result['version']}")
        if database.get("reachable"):
            click.echo(
                f"✓ Database: {database['users']} user(s), {database['societies']} society account(s), "
                f"{database['superAdmins']} super admin(s)"
            )
        else:
            click.echo("✗ Database unreachable")

        backups = result["backups"]
        latest = backups["latest"]
        click.echo(f"  Backups: {backups['count']}" + (f" (latest {latest['id']})" if latest else ""))

        last_deployment = result["lastDeployment"]
        if last_deployment:
            click.echo(f"  Last deployment: {last_deployment['id']} {last_deployment['outcome']}")

        for action in result["recentRecoveryActions"]:
            click.echo(f"  Recovery {action['kind']} {action['target']}: {action['status']}")

    _finish(ctx, result)


if __name__ == "__main__":
    cli()
