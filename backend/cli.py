#!/usr/bin/env python3
"""n8nctl - deploy, back up and restore a containerized n8n instance."""

import asyncio
import inspect
import json
import logging
import os
import sys

import click
from dotenv import load_dotenv

from engines.lifecycle import create_orchestrator
from errors import LifecycleError
from models.deployment import DeploymentAttempt, ResultStatus
from models.snapshot import Snapshot
from settings import LifecycleSettings

EXIT_CODES = {
    ResultStatus.SUCCESS: 0,
    ResultStatus.RECOVERED: 2,
    ResultStatus.UNRECOVERABLE: 1,
}

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _configure_logging(settings: LifecycleSettings) -> None:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    try:
        handlers.append(logging.FileHandler(settings.deploy_log_path, encoding="utf-8"))
    except OSError as e:
        click.echo(f"Warning: cannot write {settings.deploy_log_path}: {e}", err=True)
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)


def _run(ctx: click.Context, call):
    """Run one orchestrator call, with the audit log when enabled."""
    settings: LifecycleSettings = ctx.obj["settings"]

    async def main():
        sink = None
        if ctx.obj["record"]:
            from audit import session_sink
            from database import async_session, close_db, init_db

            await init_db(settings)
            sink = session_sink(async_session)
        try:
            result = call(create_orchestrator(settings, attempt_sink=sink))
            if inspect.isawaitable(result):
                result = await result
            return result
        finally:
            if ctx.obj["record"]:
                await close_db()

    return asyncio.run(main())


def _report(ctx: click.Context, attempt: DeploymentAttempt) -> None:
    """Print the outcome and exit with its status code."""
    if ctx.obj["json"]:
        click.echo(json.dumps({**attempt.model_dump(mode="json"), "status": attempt.status.value}, indent=2))
    else:
        click.echo(attempt.summary())
        for label, report in (
            ("Verification", attempt.verification),
            ("Rollback verification", attempt.rollback_verification),
        ):
            if report is not None:
                click.echo(f"\n{label}:")
                click.echo(report.render())
        if attempt.needs_intervention:
            click.echo("\nManual intervention required.", err=True)
    sys.exit(EXIT_CODES[attempt.status])


def _describe(snapshot: Snapshot) -> str:
    size_mb = snapshot.size_bytes / (1024 * 1024)
    parts = [f"{snapshot.id}", f"{snapshot.created_at:%Y-%m-%d %H:%M:%S}", f"{size_mb:.1f} MB"]
    if snapshot.missing:
        parts.append(f"missing: {', '.join(snapshot.missing)}")
    return "  ".join(parts)


def _print_snapshots(ctx: click.Context, snapshots: list[Snapshot]) -> None:
    if ctx.obj["json"]:
        click.echo(json.dumps([s.model_dump(mode="json") for s in snapshots], indent=2))
        return
    if not snapshots:
        click.echo("No backups found")
        return
    click.echo("Available backups:")
    for i, snap in enumerate(snapshots, 1):
        click.echo(f"  {i}. {_describe(snap)}")


@click.group()
@click.option(
    "--project-root",
    type=click.Path(file_okay=False, exists=True),
    default=None,
    help="Directory holding docker-compose.yml and .env (default: current directory)",
)
@click.option("--json", "as_json", is_flag=True, help="Machine-readable output")
@click.option("--record/--no-record", default=True, help="Write attempts to the audit database")
@click.pass_context
def cli(ctx, project_root, as_json, record):
    """n8nctl - lifecycle orchestrator for a containerized n8n instance."""
    load_dotenv(".n8nctl.env")
    settings = LifecycleSettings.from_env()
    if project_root:
        settings = settings.model_copy(update={"project_root": project_root})
    _configure_logging(settings)
    ctx.obj = {"settings": settings, "json": as_json, "record": record}


@cli.command()
@click.pass_context
def deploy(ctx):
    """Deploy or update n8n, rolling back automatically on failure."""
    attempt = _run(ctx, lambda o: o.deploy())
    _report(ctx, attempt)


@cli.command()
@click.argument("snapshot_ref", required=False)
@click.pass_context
def rollback(ctx, snapshot_ref):
    """Roll back to SNAPSHOT_REF (default: the most recent snapshot)."""
    attempt = _run(ctx, lambda o: o.rollback(snapshot_ref))
    _report(ctx, attempt)


@cli.command()
@click.argument("snapshot_ref", required=False)
@click.option("--latest", is_flag=True, help="Restore the most recent backup")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def restore(ctx, snapshot_ref, latest, yes):
    """Restore n8n from a backup id or path.

    Without arguments, lists the available backups and asks which to use.
    """
    if latest:
        snapshot_ref = "latest"
    elif snapshot_ref is None:
        snapshots = _run(ctx, lambda o: o.list_snapshots())
        _print_snapshots(ctx, snapshots)
        if not snapshots:
            sys.exit(1)
        choice = click.prompt(
            f"Select backup to restore (1-{len(snapshots)}) or 'q' to quit", default="q"
        )
        if choice == "q":
            click.echo("Restore cancelled")
            sys.exit(0)
        if not choice.isdigit() or not 1 <= int(choice) <= len(snapshots):
            click.echo("Invalid selection", err=True)
            sys.exit(1)
        snapshot_ref = snapshots[int(choice) - 1].id

    def confirm(snapshot: Snapshot) -> bool:
        click.echo(f"Restoring from: {snapshot.path}")
        click.echo("This will stop the current n8n instance and restore from backup.")
        return click.confirm("Current data will be replaced. Continue?", default=False)

    attempt = _run(
        ctx,
        lambda o: o.restore(snapshot_ref, interactive=not yes, confirm=confirm),
    )
    if attempt is None:
        click.echo("Restore cancelled")
        sys.exit(0)
    _report(ctx, attempt)


@cli.group()
def snapshots():
    """Inspect snapshots."""


@snapshots.command("list")
@click.pass_context
def snapshots_list(ctx):
    """List snapshots, newest first."""
    _print_snapshots(ctx, _run(ctx, lambda o: o.list_snapshots()))


@cli.group(invoke_without_command=True)
@click.pass_context
def backup(ctx):
    """Create, list or clean up backups (default: create)."""
    if ctx.invoked_subcommand is None:
        ctx.invoke(backup_create)


@backup.command("create")
@click.pass_context
def backup_create(ctx):
    """Take a backup of the config files and data volume."""
    try:
        snapshot = _run(ctx, lambda o: o.backup())
    except LifecycleError as e:
        click.echo(f"Backup failed: [{e.kind.value}] {e.message}", err=True)
        sys.exit(1)
    if ctx.obj["json"]:
        click.echo(snapshot.model_dump_json(indent=2))
    else:
        click.echo(f"Backup created: {_describe(snapshot)}")


@backup.command("list")
@click.pass_context
def backup_list(ctx):
    """List available backups."""
    _print_snapshots(ctx, _run(ctx, lambda o: o.list_snapshots()))


@backup.command("cleanup")
@click.option("--days", type=int, default=None, help="Delete backups older than this many days")
@click.pass_context
def backup_cleanup(ctx, days):
    """Delete backups past the retention window."""
    try:
        deleted = _run(ctx, lambda o: o.cleanup(days))
    except LifecycleError as e:
        click.echo(f"Cleanup failed: [{e.kind.value}] {e.message}", err=True)
        sys.exit(1)
    click.echo(f"Deleted {deleted} backup(s)")


@cli.command()
@click.pass_context
def probe(ctx):
    """Run the post-deployment checks once against the running instance."""
    try:
        report = _run(ctx, lambda o: o.run_probes())
    except LifecycleError as e:
        click.echo(f"[{e.kind.value}] {e.message}", err=True)
        sys.exit(1)
    if ctx.obj["json"]:
        click.echo(report.model_dump_json(indent=2))
    else:
        click.echo(report.render())
    sys.exit(0 if report.all_passed else 1)


if __name__ == "__main__":
    cli()
