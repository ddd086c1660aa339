"""
CLI interface for automationlab.

Provisions a small AWS lab (security group, key pair, EC2 instance, S3
bucket) per workspace and tears it down again, keeping a state document
so every command is safe to re-run.

Exit codes:
    0  success
    1  invalid input, configuration, credentials, lock or state problem
    2  provisioning failure (apply stopped, or destroy left resources behind)
    3  confirmation declined
"""

from contextlib import contextmanager
from pathlib import Path

import click
from rich.table import Table

from automationlab import __version__
from automationlab.errors import AutomationLabError
from automationlab.utils import (
    console,
    format_duration,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
)


EXIT_OK = 0
EXIT_PREREQUISITE = 1
EXIT_PROVISIONING = 2
EXIT_DECLINED = 3


def build_runtime(config, dry_run: bool = False):
    from automationlab.runtime import build_runtime as _build

    return _build(config, dry_run=dry_run)


@click.group()
@click.version_option(version=__version__, prog_name="automationlab")
@click.option("--workspace", "-w", help="Workspace name (default: $WORKSPACE or 'default')")
@click.option("--auto-approve", is_flag=True, help="Skip confirmation prompts")
@click.option("--dry-run", is_flag=True, help="Show what would happen without changing anything")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx, workspace, auto_approve, dry_run, verbose):
    """
    automationlab - AWS lab provisioning with resumable state.

    Creates a security group, key pair, EC2 instance and S3 bucket, and
    destroys them again, tracking everything in a per-workspace state file.
    """
    from automationlab.config import load_config

    ctx.ensure_object(dict)
    ctx.obj["dry_run"] = dry_run
    overrides = {"workspace": workspace, "auto_approve": True if auto_approve else None}
    if verbose:
        overrides["log_level"] = "DEBUG"

    try:
        config = load_config(overrides=overrides)
        ctx.obj["config"] = config
        setup_logging(
            config.log_level,
            config.log_format,
            Path(config.log_file).expanduser() if config.log_file else None,
        )
    except AutomationLabError as e:
        # init still works without a valid config; other commands check config_error
        ctx.obj["config_error"] = str(e)
        setup_logging("DEBUG" if verbose else "INFO")


# =============================================================================
# Helpers
# =============================================================================

def _config(ctx):
    if "config" not in ctx.obj:
        print_error(f"Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}")
        click.echo("Run 'automationlab init' to create a configuration file.", err=True)
        raise SystemExit(EXIT_PREREQUISITE)
    return ctx.obj["config"]


@contextmanager
def _prerequisites():
    """Turn prerequisite failures (validation, lock, state, credentials) into exit 1."""
    try:
        yield
    except AutomationLabError as e:
        print_error(str(e))
        raise SystemExit(EXIT_PREREQUISITE)


def _runtime(ctx, validate: bool = True):
    config = _config(ctx)
    with _prerequisites():
        if validate:
            config.validate()
        return build_runtime(config, dry_run=ctx.obj.get("dry_run", False))


def _confirm(ctx, message: str) -> None:
    config = ctx.obj["config"]
    if config.auto_approve or ctx.obj.get("dry_run"):
        return
    try:
        approved = click.confirm(message, default=False)
    except click.Abort:
        approved = False
    if not approved:
        print_warning("Aborted by user")
        raise SystemExit(EXIT_DECLINED)


def _actions_table(title: str, actions) -> Table:
    table = Table(title=title)
    table.add_column("Resource")
    table.add_column("Action")
    table.add_column("Identifier")
    table.add_column("Reason")
    for action in actions:
        table.add_row(action.kind.value, action.action, action.identifier or "-", action.reason)
    return table


def _document_table(document) -> Table:
    table = Table(title=f"Workspace {document.metadata.workspace}")
    table.add_column("Resource")
    table.add_column("Status")
    table.add_column("Identifier")
    for kind, record in document.resources.items():
        if record is None:
            table.add_row(kind.value, "absent", "-")
        else:
            table.add_row(kind.value, record.status.value, record.identifier)
    return table


# =============================================================================
# Config
# =============================================================================

@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize automationlab configuration."""
    import yaml

    from automationlab.config import AutomationLabConfig, get_automationlab_home

    home = get_automationlab_home()
    home.mkdir(parents=True, exist_ok=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(EXIT_PREREQUISITE)

    defaults = AutomationLabConfig()
    default_cfg = {
        "workspace": defaults.workspace,
        "region": defaults.region,
        "profile": defaults.profile,
        "state_dir": defaults.state_dir,
        "state_backend": defaults.state_backend,
        "state_s3_bucket": defaults.state_s3_bucket,
        "project_tag": defaults.project_tag,
        "name_prefix": defaults.name_prefix,
        "instance_type": defaults.instance_type,
        "ingress_cidr": defaults.ingress_cidr,
        "ingress_ports": defaults.ingress_ports,
        "env_file": str(home / ".env"),
        "retry": {
            "lock_timeout": defaults.retry.lock_timeout,
            "lock_stale_after": defaults.retry.lock_stale_after,
        },
    }
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text("# AWS_PROFILE=...\n# AWS_REGION=...\n# STATE_BACKEND=s3\n")

    click.echo(f"Initialized automationlab config at {cfg_path}")


# =============================================================================
# Apply / destroy
# =============================================================================

@main.command("apply")
@click.pass_context
def apply(ctx):
    """Create the security group, key pair, instance and bucket."""
    import time

    runtime = _runtime(ctx)
    config = runtime.config
    dry_run = ctx.obj.get("dry_run", False)

    print_banner(f"Apply: workspace {config.workspace} ({config.region})" + (" [DRY RUN]" if dry_run else ""))
    _confirm(ctx, f"Create resources in workspace '{config.workspace}' ({config.region})?")

    started = time.monotonic()
    with _prerequisites():
        result = runtime.orchestrator.apply()

    if dry_run:
        console.print(_actions_table("Planned changes", result.planned))
        print_info("Dry run: nothing was changed")
        return

    if not result.success:
        print_error(f"Apply failed at step {result.failed_step.value}")
        click.echo(result.failure_report(), err=True)
        raise SystemExit(EXIT_PROVISIONING)

    console.print(_document_table(result.document))
    instance = result.document.get("ec2_instance")
    if instance is not None:
        print_info(f"Public address: {instance.public_address}")
    print_success(
        f"Apply complete in {format_duration(time.monotonic() - started)} "
        f"({len(result.created)} created, {len(result.skipped)} already present)"
    )


@main.command("destroy")
@click.option("--also-destroy-backend", is_flag=True, help="Also delete the remote state bucket")
@click.option("--force", is_flag=True, help="Proceed despite an account/region mismatch")
@click.pass_context
def destroy(ctx, also_destroy_backend: bool, force: bool):
    """Delete every resource this workspace created."""
    runtime = _runtime(ctx, validate=False)
    config = runtime.config
    dry_run = ctx.obj.get("dry_run", False)

    print_banner(f"Destroy: workspace {config.workspace} ({config.region})" + (" [DRY RUN]" if dry_run else ""))
    _confirm(ctx, f"Destroy all resources in workspace '{config.workspace}'?")

    with _prerequisites():
        result = runtime.orchestrator.destroy(force=force)

    if dry_run:
        console.print(_actions_table(f"Planned deletions ({result.strategy.value})", result.planned))
        print_info("Dry run: nothing was changed")
        return

    for kind, identifier in result.destroyed:
        print_success(f"Deleted {kind.value} {identifier}")
    for failure in result.failures:
        print_error(f"Could not delete {failure.kind.value} {failure.identifier}: {failure.error}")

    if result.failures:
        print_error(f"Destroy finished with {len(result.failures)} failure(s); re-run destroy to retry")
        raise SystemExit(EXIT_PROVISIONING)

    if not result.destroyed:
        print_info("Nothing to destroy")

    if also_destroy_backend:
        if not runtime.remote.enabled:
            print_warning("Remote state backend is not enabled; nothing to remove")
        else:
            with _prerequisites():
                runtime.remote.destroy_backend()
            print_success(f"Deleted state bucket {runtime.remote.bucket}")

    print_success("Destroy complete")


# =============================================================================
# Read-only commands
# =============================================================================

@main.command("plan")
@click.pass_context
def plan(ctx):
    """Show what apply (or, if resources exist, destroy) would do."""
    runtime = _runtime(ctx)
    with _prerequisites():
        result = runtime.orchestrator.plan()
    console.print(_actions_table(f"{result.mode.capitalize()} plan", result.actions))
    if not result.changes:
        print_info("No changes")


@main.command("status")
@click.pass_context
def status(ctx):
    """Show recorded resources and whether they still exist."""
    runtime = _runtime(ctx, validate=False)
    with _prerequisites():
        rows = runtime.orchestrator.status()
        document = runtime.store.read()

    meta = document.metadata
    print_info(f"Workspace {meta.workspace}: account {meta.aws_account_id}, region {meta.aws_region}")
    table = Table(title="Resources")
    table.add_column("Resource")
    table.add_column("State")
    table.add_column("Identifier")
    table.add_column("Live")
    for row in rows:
        table.add_row(row.kind.value, row.status, row.identifier or "-", row.live or "-")
    console.print(table)


@main.command("verify")
@click.pass_context
def verify(ctx):
    """Check the provisioned resources are running and configured."""
    runtime = _runtime(ctx, validate=False)
    with _prerequisites():
        report = runtime.orchestrator.verify()

    for check in report.checks:
        if check.ok:
            print_success(f"{check.name}: {check.detail}")
        else:
            print_error(f"{check.name}: {check.detail}")

    if not report.ok:
        raise SystemExit(EXIT_PREREQUISITE)
    print_success("All checks passed")


# =============================================================================
# State management
# =============================================================================

@main.group("state")
def state_group():
    """Manage the state document and its remote backend."""
    pass


@state_group.command("init")
@click.pass_context
def state_init(ctx):
    """Create the state document (and the remote bucket when enabled)."""
    runtime = _runtime(ctx)
    with _prerequisites():
        if runtime.remote.backend_init():
            print_success(f"Remote state bucket {runtime.remote.bucket} ready")
        with runtime.remote.session():
            runtime.store.init()
    print_success(f"State initialized at {runtime.store.location}")


@state_group.command("pull")
@click.pass_context
def state_pull(ctx):
    """Copy the remote state document over the local one."""
    runtime = _require_remote(ctx)
    with _prerequisites():
        pulled = runtime.remote.refresh()
    if pulled:
        print_success(f"Pulled state into {runtime.store.location}")
    else:
        print_info("No remote state to pull")


@state_group.command("push")
@click.pass_context
def state_push(ctx):
    """Copy the local state document to the remote store."""
    runtime = _require_remote(ctx)
    with _prerequisites():
        with runtime.remote.lock.held(runtime.remote.lock_timeout):
            pushed = runtime.remote.push()
    if pushed:
        print_success(f"Pushed state to {runtime.remote.remote.location}")
    else:
        print_info("No local state to push")


def _require_remote(ctx):
    runtime = _runtime(ctx, validate=False)
    if not runtime.remote.enabled:
        print_error("Remote state backend is not enabled (set STATE_BACKEND=s3)")
        raise SystemExit(EXIT_PREREQUISITE)
    return runtime


@state_group.command("unlock")
@click.pass_context
def state_unlock(ctx):
    """Remove local and remote locks left behind by a crashed run."""
    runtime = _runtime(ctx, validate=False)
    _confirm(ctx, "Force-release the workspace locks? Only do this if no other run is active.")
    with _prerequisites():
        released_local = runtime.local_lock.force_release()
        released_remote = runtime.remote.enabled and runtime.remote.lock.force_release()
    if not (released_local or released_remote):
        print_info("No locks held")
        return
    if released_local:
        print_success(f"Released {runtime.local_lock.location}")
    if released_remote:
        print_success(f"Released {runtime.remote.lock.location}")


@state_group.command("status")
@click.pass_context
def state_status(ctx):
    """Show where state lives and who holds the locks."""
    runtime = _runtime(ctx, validate=False)
    with _prerequisites():
        info = runtime.remote.status()
        local_holder = runtime.local_lock.holder()
        rows = runtime.store.summary() if runtime.store.exists() else []

    click.echo(f"Backend: {info['backend']}")
    click.echo(f"Local state: {info['local']} ({'present' if info['local_exists'] else 'absent'})")
    click.echo(f"Local lock: {local_holder or 'free'}")
    if info["backend"] == "s3":
        click.echo(f"Remote state: {info['remote']} ({'present' if info['remote_exists'] else 'absent'})")
        click.echo(f"Remote lock: {info['lock_holder'] or 'free'}")
    for row in rows:
        click.echo(f"  {row['kind']}: {row['status']} {row['identifier']}".rstrip())


@state_group.command("show")
@click.pass_context
def state_show(ctx):
    """Print the state document as JSON."""
    import json

    runtime = _runtime(ctx, validate=False)
    with _prerequisites():
        document = runtime.store.read(required=True)
    click.echo(json.dumps(document.to_dict(), indent=2))


if __name__ == "__main__":
    main()
