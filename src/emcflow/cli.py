"""Command-line interface for emcflow."""

import asyncio
from pathlib import Path

import click

from emcflow import __version__
from emcflow.config import Config
from emcflow.logging import get_logger, setup_logging

log = get_logger("cli")


def _build_pipeline(config: Config):
    """Create the engine, ensure the ledger table exists, wire a Pipeline."""
    from emcflow.database import create_tables, get_engine
    from emcflow.ledger import StepLedger
    from emcflow.pipeline import Pipeline
    from emcflow.statements import EngineStatementExecutor

    engine = get_engine(config)
    create_tables(engine)
    ledger = StepLedger(engine)
    return Pipeline(ledger, EngineStatementExecutor(engine), config.emc)


@click.group()
@click.option(
    "-c",
    "--config-file",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to configuration file.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Set logging level (overrides config).",
)
@click.option(
    "--log-json/--no-log-json",
    default=None,
    help="Output logs as JSON or human-readable format (overrides config).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config_file: Path | None,
    log_level: str | None,
    log_json: bool | None,
) -> None:
    """emcflow - online schema migrations.

    Runs Expand/Migrate/Contract steps recorded in a ledger table.
    """
    ctx.ensure_object(dict)

    config = Config.load_or_default(config_file)
    ctx.obj["config"] = config
    ctx.obj["config_file"] = config_file

    effective_log_level = log_level or config.log_level
    effective_log_json = log_json if log_json is not None else config.log_json

    setup_logging(json_output=effective_log_json, level=effective_log_level)


@cli.command()
def version() -> None:
    """Print version information."""
    click.echo(f"emcflow {__version__}")


@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Run pending expand, migrate and contract steps.

    Creates the ledger table if absent. Stops at the first failing step and
    exits non-zero.
    """
    from emcflow.errors import DependencyGraphError, StepFailedError
    from emcflow.pipeline import render_summary

    pipeline = _build_pipeline(ctx.obj["config"])

    async def _run():
        await pipeline.execute()
        return await pipeline.check()

    try:
        report = asyncio.run(_run())
    except StepFailedError as e:
        click.echo(f"Step {e.step_id} failed: {e.message}", err=True)
        raise SystemExit(1)
    except DependencyGraphError as e:
        click.echo(f"Dependency error: {e}", err=True)
        raise SystemExit(1)

    click.echo(render_summary(report))
    click.echo("EMC migration completed")


@cli.command()
@click.pass_context
def check(ctx: click.Context) -> None:
    """Report ledger state without executing anything.

    Exits 0 when no step has failed, 1 otherwise.
    """
    from emcflow.pipeline import render_summary

    pipeline = _build_pipeline(ctx.obj["config"])
    report = asyncio.run(pipeline.check())

    click.echo(render_summary(report))
    if report.exit_code:
        click.echo("EMC check failed", err=True)
    else:
        click.echo("EMC check passed")
    raise SystemExit(report.exit_code)


@cli.group()
def steps() -> None:
    """Migration step management commands."""
    pass


@steps.command(name="add")
@click.argument("step_id")
@click.option(
    "--phase",
    type=click.Choice(["expand", "migrate", "contract"]),
    required=True,
    help="EMC phase of the step.",
)
@click.option("-d", "--description", required=True, help="What the step does.")
@click.option("--sql", "statement", default=None, help="SQL statement to execute.")
@click.option(
    "--sql-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Read the SQL statement from a file.",
)
@click.option(
    "--depends-on",
    multiple=True,
    help="Id of a step that must complete first (repeatable).",
)
@click.pass_context
def steps_add(
    ctx: click.Context,
    step_id: str,
    phase: str,
    description: str,
    statement: str | None,
    sql_file: Path | None,
    depends_on: tuple[str, ...],
) -> None:
    """Register a new pending step."""
    from emcflow.errors import DuplicateStepError

    if (statement is None) == (sql_file is None):
        click.echo("Error: provide exactly one of --sql or --sql-file", err=True)
        raise SystemExit(2)
    if sql_file is not None:
        statement = sql_file.read_text()

    pipeline = _build_pipeline(ctx.obj["config"])
    try:
        step = asyncio.run(
            pipeline.register(step_id, phase, description, statement, list(depends_on))
        )
    except DuplicateStepError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    except ValueError as e:
        click.echo(f"Invalid step: {e}", err=True)
        raise SystemExit(1)

    click.echo(f"Added {step.phase.value} step: {step.id}")


@steps.command(name="list")
@click.pass_context
def steps_list(ctx: click.Context) -> None:
    """List steps in load order."""
    pipeline = _build_pipeline(ctx.obj["config"])
    all_steps = asyncio.run(pipeline.ledger.load())

    if not all_steps:
        click.echo("No migration steps registered")
        return

    for step in all_steps:
        line = f"{step.id:<30} {step.phase.value:<9} {step.status.value:<12} {step.description}"
        if step.depends_on:
            line += f" (after: {', '.join(step.depends_on)})"
        click.echo(line)
        if step.error:
            click.echo(f"    error: {step.error}")


@steps.command(name="reset")
@click.argument("step_id")
@click.pass_context
def steps_reset(ctx: click.Context, step_id: str) -> None:
    """Return a failed or interrupted step to pending."""
    from emcflow.errors import InvalidTransitionError, StepNotFoundError

    pipeline = _build_pipeline(ctx.obj["config"])
    try:
        step = asyncio.run(pipeline.ledger.reset(step_id))
    except (StepNotFoundError, InvalidTransitionError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    click.echo(f"Step {step.id} reset to {step.status.value}")


@cli.group()
def db() -> None:
    """Database management commands."""
    pass


@db.command(name="init")
@click.pass_context
def db_init(ctx: click.Context) -> None:
    """Create the ledger table if it does not exist."""
    from emcflow.database import LEDGER_TABLE, create_tables, get_engine

    config = ctx.obj["config"]
    create_tables(get_engine(config))
    log.info("ledger_initialized", table=LEDGER_TABLE)
    click.echo(f"Ledger table ready: {LEDGER_TABLE}")


@cli.group()
def config() -> None:
    """Configuration management commands."""
    pass


@config.command(name="check")
@click.option(
    "-c",
    "--config-file",
    type=click.Path(exists=True, path_type=Path),
    default="emcflow.yaml",
    help="Path to configuration file.",
)
def config_check(config_file: Path) -> None:
    """Validate configuration file."""
    try:
        cfg = Config.load(config_file)
        click.echo(f"Configuration valid: {config_file}")
        click.echo(f"  Data directory: {cfg.data_dir}")
        click.echo(f"  Database: {cfg.database_url}")
        click.echo(f"  Log level: {cfg.log_level}")
        click.echo(f"  Chunk size: {cfg.emc.chunk_size}")
        click.echo(f"  Max retries: {cfg.emc.max_retries}")
        click.echo(f"  Retry delay: {cfg.emc.retry_delay_ms} ms")
        if cfg.emc.verification_window_days:
            click.echo(f"  Verification window: {cfg.emc.verification_window_days} days")

    except FileNotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    except Exception as e:
        click.echo(f"Configuration error: {e}", err=True)
        raise SystemExit(1)
