"""deployguard command line.

Usage:
    deployguard deploy staging          # Run the full pipeline
    deployguard status staging          # Show file lock and engine lock
    deployguard recover staging         # Clear both locks after a failed run
    deployguard reconcile staging --fix # Check drift and apply safe fixes
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from pathlib import Path
from typing import Any

import click

from .config import Config, ConfigurationError
from .locks import LockState
from .main import build_pipeline, load, setup_logging
from .models import ProjectConfig
from .pipeline import DeploymentPipeline, DeploymentResult
from .project_loader import ProjectLoadError
from .reconciler import FixStatus, Severity

CLI_VERSION = "0.1.0"


def _load_pipeline(ctx: click.Context, *, stream_output: bool = False) -> DeploymentPipeline:
    """Load configuration and project, converting errors to click errors."""
    root: str | None = ctx.obj.get("project_root")
    try:
        config = Config.from_env()
        if root:
            config = dataclasses.replace(config, project_root=Path(root))
        if ctx.obj.get("dry_run"):
            config = dataclasses.replace(config, dry_run=True)
        config, project = load(config)
    except (ConfigurationError, ProjectLoadError) as e:
        raise click.ClickException(str(e)) from e
    ctx.obj["project"] = project
    return build_pipeline(config, project, stream_output=stream_output)


def _require_environment(project: ProjectConfig, environment: str) -> None:
    try:
        project.environment(environment)
    except KeyError as e:
        raise click.ClickException(str(e.args[0])) from e


def _emit_json(data: dict[str, Any]) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.version_option(version=CLI_VERSION, prog_name="deployguard")
@click.option(
    "--project-root",
    type=click.Path(exists=True, file_okay=False),
    envvar="DEPLOYGUARD_PROJECT_ROOT",
    help="Project directory (default: current directory)",
)
@click.option("--dry-run", is_flag=True, help="Report fixes without applying them")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx: click.Context, project_root: str | None, dry_run: bool, verbose: bool) -> None:
    """deployguard: safe deployments and drift reconciliation.

    \b
    Quick Start:
        deployguard deploy staging
        deployguard reconcile staging --fix
    """
    setup_logging(logging.DEBUG if verbose else logging.INFO)
    ctx.ensure_object(dict)
    ctx.obj["project_root"] = project_root
    ctx.obj["dry_run"] = dry_run


@cli.command()
@click.argument("environment")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_context
def deploy(ctx: click.Context, environment: str, as_json: bool) -> None:
    """Deploy an environment through the full pipeline."""
    pipeline = _load_pipeline(ctx, stream_output=not as_json)
    _require_environment(ctx.obj["project"], environment)

    result = asyncio.run(pipeline.run(environment))

    if as_json:
        _emit_json(result.to_dict())
    else:
        _print_result(result)
    ctx.exit(result.exit_code)


def _print_result(result: DeploymentResult) -> None:
    click.echo("")
    for timing in result.stage_timings:
        click.echo(f"  {timing.name:<16} {timing.duration_ms / 1000:>8.1f}s")
    for issue in result.issues:
        color = "yellow" if issue.severity == Severity.WARNING else "cyan"
        click.secho(f"  [{issue.severity.value}] {issue.description}", fg=color)
    for check in result.health_checks:
        mark, color = ("✓", "green") if check.passed else ("✗", "red")
        click.secho(f"  {mark} {check.name}: {check.message}", fg=color)

    if result.success:
        click.secho(f"✓ {result.message} ({result.duration_seconds:.1f}s)", fg="green")
    else:
        click.secho(f"✗ {result.message}", fg="red", err=True)


@cli.command()
@click.argument("environment")
@click.option("--json", "as_json", is_flag=True, help="Print the status as JSON")
@click.pass_context
def status(ctx: click.Context, environment: str, as_json: bool) -> None:
    """Show the deployment lock and engine lock of an environment."""
    pipeline = _load_pipeline(ctx)
    _require_environment(ctx.obj["project"], environment)

    env_status = asyncio.run(pipeline.status(environment))

    if as_json:
        _emit_json(env_status.to_dict())
        return

    lock = env_status.lock
    if lock.state == LockState.ACTIVE:
        click.secho(
            f"🔒 Locked: deployment in progress ({lock.remaining_minutes} min remaining)",
            fg="yellow",
        )
    elif lock.state == LockState.STALE:
        click.echo("🔓 Stale lock file (will be replaced on next deploy)")
    else:
        click.secho("🔓 Unlocked", fg="green")

    if env_status.engine_locked:
        click.secho(
            f"⚠ Engine state is locked. Run: deployguard recover {environment}", fg="yellow"
        )


@cli.command()
@click.argument("environment")
@click.pass_context
def recover(ctx: click.Context, environment: str) -> None:
    """Clear the deployment lock and the engine state lock."""
    pipeline = _load_pipeline(ctx)
    _require_environment(ctx.obj["project"], environment)

    result = asyncio.run(pipeline.recover(environment))

    if result.file_lock_cleared:
        click.echo("Deployment lock cleared")
    if result.engine_lock_cleared:
        click.echo("Engine state lock cleared")
    if not (result.file_lock_cleared or result.engine_lock_cleared):
        click.echo("No locks to clear")
    click.secho(f"✓ {environment} ready to deploy", fg="green")


@cli.command()
@click.argument("environment")
@click.option("--fix", is_flag=True, help="Apply auto-fixable corrections")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
@click.pass_context
def reconcile(ctx: click.Context, environment: str, fix: bool, as_json: bool) -> None:
    """Compare declared intent with live cloud state."""
    pipeline = _load_pipeline(ctx)
    _require_environment(ctx.obj["project"], environment)

    report, fixes = asyncio.run(pipeline.reconcile(environment, fix=fix))

    if as_json:
        _emit_json({**report.to_dict(), "fixes": [f.to_dict() for f in fixes]})
    else:
        click.echo(report.summary)
        for issue in report.issues:
            color = "yellow" if issue.severity == Severity.WARNING else "cyan"
            click.secho(f"  [{issue.severity.value}] {issue.description}", fg=color)
            click.echo(f"      {issue.details}")
            click.echo(f"      → {issue.guidance}")
        for result in fixes:
            color = {"applied": "green", "failed": "red"}.get(result.status.value)
            click.secho(f"  fix {result.status.value}: {result.message}", fg=color)

    fixed = {f.issue for f in fixes if f.status == FixStatus.APPLIED}
    unresolved = [w for w in report.warnings if w not in fixed]
    ctx.exit(1 if unresolved else 0)
