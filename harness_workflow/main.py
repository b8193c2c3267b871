"""CLI entry point for the workflow harness."""

import sys
from pathlib import Path

import click
import structlog

from harness_workflow.cli.workflow import EXIT_ACTION_REFUSED, EXIT_NOT_INSTALLED, WORKFLOW_COMMANDS
from harness_workflow.config.settings import load_project_settings, write_default_config
from harness_workflow.exceptions import ConfigurationError, HarnessNotInstalledError
from harness_workflow.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)


@click.group()
@click.option(
    "--root",
    type=click.Path(file_okay=False, dir_okay=True, path_type=Path),
    default=".",
    help="Project root directory (default: current directory)",
)
@click.option("--log-level", default="WARNING", help="Logging level")
@click.option("--json", "json_output", is_flag=True, help="Emit machine-readable JSON")
@click.pass_context
def cli(ctx: click.Context, root: Path, log_level: str, json_output: bool) -> None:
    """harness: durable workflow orchestration for AI coding sessions."""
    configure_logging(log_level)
    ctx.obj = {"root": root, "json": json_output, "settings": None}

    # init creates the config, so it cannot require one
    if ctx.invoked_subcommand == "init":
        return

    try:
        ctx.obj["settings"] = load_project_settings(root)
    except HarnessNotInstalledError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(EXIT_NOT_INSTALLED)
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(EXIT_ACTION_REFUSED)
    except Exception as e:
        click.echo(f"Unexpected error loading configuration: {e}", err=True)
        log.error("config_error_unexpected", exc_info=True)
        sys.exit(EXIT_ACTION_REFUSED)


@cli.command("init")
@click.option("--force", is_flag=True, help="Overwrite an existing configuration")
@click.pass_context
def init_command(ctx: click.Context, force: bool) -> None:
    """Initialize the harness in the project root."""
    try:
        path = write_default_config(ctx.obj["root"], force=force)
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(EXIT_ACTION_REFUSED)

    log.info("harness_initialized", path=str(path))
    click.echo(f"Created {path}")


for command in WORKFLOW_COMMANDS:
    cli.add_command(command)


if __name__ == "__main__":
    cli()
