"""
Command-line interface for shipyard.

Usage:
    shipyard --help
    shipyard --version
    shipyard run pipeline.yaml --env IMAGE=registry/app:42
    shipyard status latest
    shipyard runs
    shipyard validate pipeline.yaml
    shipyard init pipeline.yaml
    shipyard tools
"""

import json
import logging
import sys
import threading
from pathlib import Path

import click
import yaml
from pydantic import ValidationError

from . import __version__
from .config import Settings, get_settings
from .errors import ConfigurationError, RunNotFoundError
from .pipeline.engine import (
    PipelineEngine,
    PipelineEvent,
    PipelineRun,
    RunStartedEvent,
    RunStatus,
    StageCompletedEvent,
    StageStartedEvent,
    StepCompletedEvent,
)
from .pipeline.loader import create_default_pipeline, load_pipeline, pipeline_to_dict
from .pipeline.planner import plan_stages
from .pipeline.tools import default_registry
from .report import build_report, format_duration, render_summary
from .runs import RunStore

logger = logging.getLogger(__name__)

EXIT_SUCCEEDED = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_ABORTED = 130

_EXIT_CODES = {
    RunStatus.SUCCEEDED: EXIT_SUCCEEDED,
    RunStatus.FAILED: EXIT_FAILED,
    RunStatus.ABORTED: EXIT_ABORTED,
}


def configure_logging(level: str) -> None:
    """Configure root logging for the CLI; no-op if handlers already exist."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def parse_env(ctx: click.Context, param: click.Parameter, values: tuple[str, ...]) -> dict[str, str]:
    """Parse repeated KEY=VALUE options."""
    env: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got '{item}'")
        env[key.strip()] = value
    return env


def exit_code_for(run: PipelineRun) -> int:
    return _EXIT_CODES.get(run.status, EXIT_FAILED)


def print_event(event: PipelineEvent) -> None:
    """Progress line for an engine event."""
    if isinstance(event, RunStartedEvent):
        click.echo(f"▶ Run {event.run_id}: {event.pipeline} ({len(event.stages)} stages)")
    elif isinstance(event, StageStartedEvent):
        click.echo(f"→ {event.stage}")
    elif isinstance(event, StepCompletedEvent):
        result = event.result
        status = result.status.value
        if result.tolerated:
            status += " (tolerated)"
        attempts = f", {result.attempt_count} attempts" if result.attempt_count > 1 else ""
        click.echo(f"    {event.stage}/{result.step_name}: {status} ({format_duration(result.duration)}{attempts})")
    elif isinstance(event, StageCompletedEvent):
        if event.result.executed:
            click.echo(f"← {event.stage}: {event.result.status.value}")
        else:
            click.echo(f"- {event.stage}: {event.result.status.value} ({event.result.error})")


def run_until_done(engine: PipelineEngine, definition) -> PipelineRun:
    """Run the engine on a worker thread; Ctrl-C cancels the run.

    The main thread keeps receiving KeyboardInterrupt, so the first Ctrl-C
    cancels the run and the engine still returns a complete record.
    """
    outcome: dict = {}

    def target() -> None:
        try:
            outcome["run"] = engine.run(definition)
        except Exception as e:
            outcome["error"] = e

    worker = threading.Thread(target=target, name="shipyard-run", daemon=True)
    worker.start()
    while worker.is_alive():
        try:
            worker.join(0.2)
        except KeyboardInterrupt:
            click.echo("\nCancelling run...", err=True)
            engine.cancel()

    if "error" in outcome:
        raise outcome["error"]
    return outcome["run"]


@click.group()
@click.version_option(__version__, "--version", "-V", prog_name="shipyard")
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for run records and retained artifacts (default: .shipyard)",
)
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, state_dir: Path | None, debug: bool) -> None:
    """Shipyard - run declarative build/scan/deploy pipelines.

    \b
    EXAMPLES:
      shipyard init pipeline.yaml
      shipyard validate pipeline.yaml
      shipyard run pipeline.yaml --env IMAGE=registry/app:42
      shipyard status latest
    """
    try:
        settings = get_settings(state_dir=state_dir, log_level="DEBUG" if debug else None)
    except ValidationError as e:
        click.echo(f"Invalid settings: {e}", err=True)
        sys.exit(EXIT_CONFIG)
    configure_logging(settings.log_level)
    ctx.obj = settings


@cli.command()
@click.argument("dag_file", type=click.Path(path_type=Path))
@click.option(
    "--env", "-e", "env",
    multiple=True,
    callback=parse_env,
    metavar="KEY=VALUE",
    help="Pipeline variable (repeatable); overrides the file's env",
)
@click.option(
    "--workdir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Working directory for steps (default: current directory)",
)
@click.option("--max-workers", type=click.IntRange(min=1), default=None, help="Stages run at once")
@click.option("--timeout", type=click.FloatRange(min=0, min_open=True), default=None,
              help="Timeout in seconds for steps that declare none")
@click.option("--report", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Write the JSON run report to this file")
@click.option("--quiet", "-q", is_flag=True, help="Only print the final summary")
@click.pass_obj
def run(
    settings: Settings,
    dag_file: Path,
    env: dict[str, str],
    workdir: Path | None,
    max_workers: int | None,
    timeout: float | None,
    report: Path | None,
    quiet: bool,
) -> None:
    """Run the pipeline in DAG_FILE.

    Exits 0 when the run succeeds (even degraded), 1 when it fails, 130 when
    it is cancelled and 2 when the definition is invalid.
    """
    try:
        definition = load_pipeline(dag_file)
    except (FileNotFoundError, ConfigurationError) as e:
        click.echo(f"Error loading pipeline: {e}", err=True)
        sys.exit(EXIT_CONFIG)

    definition.env.update(env)

    kwargs: dict = {"workdir": workdir, "on_event": None if quiet else print_event}
    if max_workers is not None:
        kwargs["max_workers"] = max_workers
    if timeout is not None:
        kwargs["default_timeout"] = timeout
    engine = PipelineEngine.from_settings(settings, **kwargs)

    try:
        result = run_until_done(engine, definition)
    except ConfigurationError as e:
        click.echo(f"Invalid pipeline: {e}", err=True)
        sys.exit(EXIT_CONFIG)

    click.echo()
    click.echo(render_summary(result))

    if report is not None:
        report.parent.mkdir(parents=True, exist_ok=True)
        report.write_text(json.dumps(build_report(result), indent=2))
        click.echo(f"Report written to {report}")

    sys.exit(exit_code_for(result))


@cli.command()
@click.argument("run_id", default="latest")
@click.option("--json", "as_json", is_flag=True, help="Print the full run record as JSON")
@click.pass_obj
def status(settings: Settings, run_id: str, as_json: bool) -> None:
    """Show the last known state of RUN_ID (default: latest)."""
    try:
        result = RunStore(settings.state_dir).load(run_id)
    except RunNotFoundError as e:
        click.echo(str(e), err=True)
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(build_report(result), indent=2))
    else:
        click.echo(render_summary(result))


@cli.command("runs")
@click.option("--limit", "-n", type=click.IntRange(min=1), default=20, help="Maximum runs to list")
@click.pass_obj
def list_runs(settings: Settings, limit: int) -> None:
    """List recorded runs, newest first."""
    records = RunStore(settings.state_dir).list_runs()
    if not records:
        click.echo("No runs recorded", err=True)
        return

    click.echo(f"{'RUN ID':<24} {'PIPELINE':<20} {'STATUS':<10} {'DURATION':<10} {'STARTED'}")
    click.echo("-" * 90)
    for record in records[:limit]:
        status_str = record.status.value + ("*" if record.degraded else "")
        click.echo(
            f"{record.run_id:<24} {record.pipeline_name[:20]:<20} {status_str:<10} "
            f"{format_duration(record.duration):<10} {record.started_at or '-'}"
        )


@cli.command()
@click.argument("dag_file", type=click.Path(path_type=Path))
def validate(dag_file: Path) -> None:
    """Validate DAG_FILE without running anything and print the stage order."""
    try:
        definition = load_pipeline(dag_file)
    except (FileNotFoundError, ConfigurationError) as e:
        click.echo(f"Invalid: {e}", err=True)
        sys.exit(EXIT_CONFIG)

    plan = plan_stages(definition.stages)
    click.echo(f"Pipeline '{definition.name}' is valid ({len(plan.order)} stages)")
    for i, stage in enumerate(plan.order, 1):
        preds = plan.predecessors[stage.name]
        after = f" (after {', '.join(preds)})" if preds else ""
        policy = "" if stage.failure_policy.value == "abort_pipeline" else f" [{stage.failure_policy.value}]"
        click.echo(f"  {i}. {stage.name}{after}{policy}")


@cli.command()
@click.argument("path", type=click.Path(dir_okay=False, path_type=Path), default=Path("pipeline.yaml"))
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def init(path: Path, force: bool) -> None:
    """Write the default DevSecOps pipeline to PATH (default: pipeline.yaml)."""
    if path.exists() and not force:
        click.echo(f"{path} already exists (use --force to overwrite)", err=True)
        sys.exit(1)

    document = pipeline_to_dict(create_default_pipeline())
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(document, sort_keys=False))
    click.echo(f"Wrote {path}")


@cli.command()
def tools() -> None:
    """List the built-in tool adapters."""
    registry = default_registry()
    click.echo(f"{'TOOL':<18} {'AVAILABLE':<10} {'DESCRIPTION'}")
    click.echo("-" * 80)
    for name in registry.names():
        adapter = registry.get(name)
        available = "yes" if adapter.check_available() else "no"
        click.echo(f"{name:<18} {available:<10} {adapter.description}")


def main() -> None:
    """Main entry point for the shipyard CLI."""
    cli()


if __name__ == "__main__":
    main()
