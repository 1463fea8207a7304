# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Main CLI entry point for Conveyor.

Dumb trigger: loads config, compiles the pipeline, executes, renders the report.
No stage logic here - all of it lives in pipeline definitions and actions.

Exit codes: 0 run succeeded, 1 a stage failed or timed out, 2 the
definition or config is invalid (no stage ran).
"""

import json
import subprocess
from typing import Any, Dict, List, Optional

import typer

from conveyor import __version__
from conveyor.actions import ActionRegistry
from conveyor.compiler import compile_pipeline, load_pipeline_yaml
from conveyor.config import load_config, run_settings
from conveyor.errors import ValidationError
from conveyor.event_client import EventClient
from conveyor.executor import Executor
from conveyor.history import RunHistory
from conveyor.log import configure_logging
from conveyor.notifier import Notifier, build_channel
from conveyor.report import render_report
from conveyor.runner import CommandRunner, expand_path


EXIT_FAILED = 1
EXIT_INVALID = 2
FORMATS = ("table", "json")

app = typer.Typer(
    name="conveyor",
    help="CI/CD pipeline executor: gated stages, retries, notifications",
    no_args_is_help=True,
)


def _parse_kv_args(args: Optional[List[str]]) -> Dict[str, Any]:
    """Parse key=value arguments into a dict.

    Supports:
    - Booleans: true, false
    - Nulls: null, none
    - Numbers: integers and floats
    - JSON: values starting with { or [ are parsed as JSON
    - Strings: everything else
    """
    if not args:
        return {}
    result: Dict[str, Any] = {}
    for arg in args:
        if "=" not in arg:
            raise typer.BadParameter(f"Expected key=value, got: {arg}")
        key, value = arg.split("=", 1)
        if value.lower() == "true":
            result[key] = True
        elif value.lower() == "false":
            result[key] = False
        elif value.lower() in ("null", "none"):
            result[key] = None
        elif value.startswith("{") or value.startswith("["):
            try:
                result[key] = json.loads(value)
            except json.JSONDecodeError:
                result[key] = value
        else:
            try:
                result[key] = int(value)
            except ValueError:
                try:
                    result[key] = float(value)
                except ValueError:
                    result[key] = value
    return result


def _detect_commit_sha(source_ref: str) -> Optional[str]:
    """Best-effort HEAD commit of the source tree."""
    runner = CommandRunner()
    try:
        result = runner.run(f"git -C '{source_ref}' rev-parse HEAD", check=False, timeout=10)
    except (OSError, subprocess.SubprocessError):
        return None
    if result is None or result.returncode != 0:
        return None
    return result.stdout.strip() or None


def _check_format(format_type: str) -> None:
    if format_type not in FORMATS:
        raise typer.BadParameter(f"format must be one of: {', '.join(FORMATS)}")


def _load_config_or_exit(config_path: Optional[str]) -> Dict[str, Any]:
    try:
        return load_config(config_path)
    except FileNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(EXIT_INVALID)
    except ValidationError as e:
        typer.echo(f"Config error: {e}", err=True)
        raise typer.Exit(EXIT_INVALID)


@app.command()
def run(
    pipeline_path: str = typer.Argument(..., help="Path to the pipeline definition YAML"),
    args: Optional[List[str]] = typer.Argument(None, help="key=value variables (override defaults:)"),
    commit_sha: Optional[str] = typer.Option(None, "--commit-sha", envvar="GITHUB_SHA", help="Commit being shipped"),
    actor: Optional[str] = typer.Option(None, "--actor", envvar="GITHUB_ACTOR", help="Who triggered the run"),
    source_ref: str = typer.Option(".", "--source-ref", help="Checked-out source tree"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-k", help="Max stages running at once"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Global run timeout in seconds"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Walk the graph without calling collaborators"),
    no_notify: bool = typer.Option(False, "--no-notify", help="Skip the run notification"),
    no_history: bool = typer.Option(False, "--no-history", help="Do not archive the run"),
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json"),
):
    """Run a pipeline definition."""
    _check_format(format)
    config = _load_config_or_exit(config_path)
    configure_logging(config.get("log_level", "INFO"))

    variables = _parse_kv_args(args)
    source = str(expand_path(source_ref))
    if not commit_sha and not dry_run:
        commit_sha = _detect_commit_sha(source)
    ctx: Dict[str, Any] = {
        "commit_sha": commit_sha,
        "actor": actor,
        "source_ref": source,
        "dry_run": dry_run,
    }

    registry = ActionRegistry.default()
    try:
        pipeline_def = load_pipeline_yaml(pipeline_path)
        instance = compile_pipeline(
            pipeline_def, ctx=ctx, variables=variables, registry=registry, stage_defaults=config,
        )
        graph = instance.graph()
        settings = run_settings(config, instance.settings)
        settings = run_settings(settings, {"concurrency": concurrency, "run_timeout_s": timeout})
        notifier = None if no_notify else Notifier(build_channel(config.get("notify")))
    except ValidationError as e:
        typer.echo(f"Validation error: {e}", err=True)
        raise typer.Exit(EXIT_INVALID)

    events = EventClient(expand_path(config["events_log"]))
    executor = Executor.from_settings(settings, registry=registry, notifier=notifier, events=events)
    state = executor.execute(graph, instance.pipeline_id, ctx)

    if not no_history and not dry_run:
        try:
            RunHistory(config["history_dir"]).append(state)
        except OSError as e:
            state.warnings.append(f"Could not archive run: {e}")

    typer.echo(render_report(state.to_dict(), format_type=format))
    raise typer.Exit(0 if state.succeeded else EXIT_FAILED)


@app.command()
def validate(
    pipeline_path: str = typer.Argument(..., help="Path to the pipeline definition YAML"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Compile a pipeline definition and show its stage order."""
    config = _load_config_or_exit(config_path)
    try:
        pipeline_def = load_pipeline_yaml(pipeline_path)
        instance = compile_pipeline(
            pipeline_def,
            ctx={"dry_run": True},
            registry=ActionRegistry.default(),
            stage_defaults=config,
            env=_PermissiveEnv(),
        )
        graph = instance.graph()
        run_settings(config, instance.settings)
    except ValidationError as e:
        typer.echo(f"Validation error: {e}", err=True)
        raise typer.Exit(EXIT_INVALID)

    typer.echo(f"Pipeline {instance.pipeline_id} (version {instance.version}) is valid")
    for i, stage in enumerate(graph.topological_order(), 1):
        needs = ", ".join(stage.needs) or "-"
        typer.echo(f"  {i}. {stage.stage_id} [{stage.op}] needs: {needs} gate: {stage.gate}")


class _PermissiveEnv(dict):
    """Environment stand-in for validate: @env.* refs resolve to a placeholder."""

    def __contains__(self, key):
        return True

    def __getitem__(self, key):
        return f"<env:{key}>"


@app.command()
def history(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of runs to show"),
    pipeline: Optional[str] = typer.Option(None, "--pipeline", "-p", help="Only this pipeline id"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """List archived runs, newest first."""
    config = _load_config_or_exit(config_path)
    runs = RunHistory(config["history_dir"]).list(limit=limit, pipeline_id=pipeline)
    if not runs:
        typer.echo("No archived runs.")
        return
    for record in runs:
        sha = (record.get("commit_sha") or "-")[:7]
        typer.echo(
            f"{record['run_id']}  {record['status']:<9}  {record['pipeline_id']}  "
            f"{sha}  {record.get('started_at') or ''}"
        )


@app.command()
def show(
    run_id: str = typer.Argument(..., help="Run id (or unique prefix)"),
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Show the report of an archived run."""
    _check_format(format)
    config = _load_config_or_exit(config_path)
    record = RunHistory(config["history_dir"]).get(run_id)
    if record is None:
        typer.echo(f"Run not found: {run_id}", err=True)
        raise typer.Exit(EXIT_FAILED)
    typer.echo(render_report(record, format_type=format))


@app.command()
def version():
    """Show version information."""
    typer.echo(f"conveyor version {__version__}")


from conveyor.commands import config as config_command

app.add_typer(config_command.app, name="config")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
