"""CLI entrypoint for the build relay."""

import logging
import os
import signal

import click
from dotenv import load_dotenv

from build_relay.checkpoint import CheckpointError
from build_relay.config import ConfigError, load_config
from build_relay.supervisor import SpawnError

# Load .env file on CLI startup
load_dotenv()

DEFAULT_CONFIG = "relay.yaml"


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _emit_finished(finished: bool) -> None:
    """Report the window's completion flag to the host."""
    value = "true" if finished else "false"
    output_file = os.environ.get("GITHUB_OUTPUT")
    if output_file:
        with open(output_file, "a", encoding="utf-8") as f:
            f.write(f"finished={value}\n")
    click.echo(f"finished={value}")


def _load_or_exit(config_path: str):
    try:
        return load_config(config_path)
    except ConfigError as e:
        click.echo(f"Configuration error:\n{e}", err=True)
        raise SystemExit(1)


def _keep_going(signum, frame):
    logging.getLogger(__name__).warning(
        "Interrupt received, continuing so the checkpoint can be saved"
    )


@click.group()
@click.version_option(package_name="build-relay")
def cli():
    """Build relay - resume a long build across time-limited windows."""
    pass


@cli.command()
@click.option(
    "--config",
    "config_path",
    default=DEFAULT_CONFIG,
    show_default=True,
    type=click.Path(),
    help="Path to the relay file.",
)
@click.option(
    "--finished",
    required=True,
    type=click.BOOL,
    help="Whether the previous window finished the build.",
)
@click.option(
    "--from-checkpoint",
    required=True,
    type=click.BOOL,
    help="Restore the checkpoint before doing anything else.",
)
@click.option("--graph/--no-graph", default=False, help="Run through the LangGraph trace harness.")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
def window(config_path: str, finished: bool, from_checkpoint: bool, graph: bool, verbose: bool):
    """Run one execution window and report whether the build finished."""
    _setup_logging(verbose)
    click.echo(f"finished: {str(finished).lower()}, from_checkpoint: {str(from_checkpoint).lower()}")

    if finished:
        _emit_finished(True)
        return

    config = _load_or_exit(config_path)

    if graph:
        from build_relay.window_graph import run_window_graph as runner
    else:
        from build_relay.window import run_window as runner

    previous_handler = signal.signal(signal.SIGINT, _keep_going)
    try:
        result = runner(config, finished=False, from_checkpoint=from_checkpoint)
    except CheckpointError as e:
        click.echo(f"Checkpoint error: {e}", err=True)
        click.echo("The build cannot resume. Inspect the checkpoint blob before re-running.", err=True)
        raise SystemExit(1)
    except SpawnError as e:
        _emit_finished(False)
        click.echo(f"Could not start build command: {e}", err=True)
        raise SystemExit(1)
    except Exception as e:
        _emit_finished(False)
        click.echo(f"Window stopped on an error: {type(e).__name__}: {e}", err=True)
        raise SystemExit(1)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    for run in result.runs:
        click.echo(f"  {run.phase}: {run.outcome}")
    if not result.finished and not result.checkpoint_saved:
        click.echo("WARNING: checkpoint was not saved; the next window cannot resume this one.", err=True)
    _emit_finished(result.finished)


@cli.command()
@click.option("--config", "config_path", default=DEFAULT_CONFIG, show_default=True, type=click.Path())
def status(config_path: str):
    """Show the window history of the build in workdir."""
    from build_relay.reports import print_summary

    config = _load_or_exit(config_path)
    print_summary(config.workdir)


@cli.command()
@click.option("--config", "config_path", default=DEFAULT_CONFIG, show_default=True, type=click.Path())
def check_config(config_path: str):
    """Validate the relay file and show the effective settings."""
    config = _load_or_exit(config_path)

    click.echo("Configuration loaded successfully!")
    click.echo(f"  workdir:     {config.workdir}")
    click.echo(f"  version:     {config.version or '[none]'}")
    for phase, command in config.phase_commands.items():
        bound = "unbounded" if phase in config.unbounded_phases else "bounded"
        click.echo(f"  {phase.value:<8}     {command or '[none]'} ({bound})")
    click.echo(
        f"  window:      cap {config.window_cap_minutes:.0f}m, floor {config.floor_minutes:.0f}m, "
        f"fallback {config.fallback_minutes:.0f}m, grace {config.grace_seconds:.0f}s"
    )
    click.echo(f"  retry:       {config.retry_attempts} x {config.retry_delay_seconds:.0f}s")
    click.echo(
        f"  blobs:       {config.checkpoint_name} ({config.checkpoint_retention_days}d), "
        f"{config.artifact_name} ({config.artifact_retention_days}d)"
    )
    if config.store_kind == "http":
        click.echo(f"  store:       http {config.store_url} (token {'[set]' if config.store_token else '[not set]'})")
    else:
        click.echo(f"  store:       local {config.store_path}")


if __name__ == "__main__":
    cli()
