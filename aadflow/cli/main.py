"""aadflow CLI - Main entrypoint."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from aadflow import __version__
from aadflow.cli.commands import escalations_cmd, run_cmd, status_cmd
from aadflow.cli.utils import EXIT_INVALID
from aadflow.kernel import ConfigurationError, ValidationError, configure_logging, load_config

# Create the main Typer app
app = typer.Typer(
    name="aadflow",
    help="aadflow - orchestrate AI-assisted development sessions with escalations.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=False,
)

console = Console()

app.command("run")(run_cmd.run)
app.command("status")(status_cmd.status)
app.add_typer(escalations_cmd.app, name="escalations", help="Inspect and resolve escalations")


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"[bold blue]aadflow[/bold blue] version [green]{__version__}[/green]")
        raise typer.Exit()


@app.callback()
def callback(
    ctx: typer.Context,
    config_path: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Path to aadflow.toml or pyproject.toml"),
    ] = None,
    quiet: Annotated[bool, typer.Option("-q", "--quiet", help="Only log errors")] = False,
    verbose: Annotated[bool, typer.Option("-V", "--verbose", help="Enable debug logging")] = False,
    json_out: Annotated[bool, typer.Option("--json", help="Output machine-readable JSON")] = False,
    yaml_out: Annotated[bool, typer.Option("--yaml", help="Output machine-readable YAML")] = False,
    log_format: Annotated[
        str | None,
        typer.Option("--log-format", help="Log format: console|json|structured|rich"),
    ] = None,
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-v",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit",
        ),
    ] = False,
) -> None:
    """aadflow CLI.

    Global flags are parsed here and stored on `ctx.obj` for subcommands.
    """
    if ctx.obj is None:
        ctx.obj = {}

    try:
        config = load_config(config_path)
    except (ConfigurationError, ValidationError, FileNotFoundError) as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(EXIT_INVALID) from e

    output_format = "pretty"
    if json_out:
        output_format = "json"
    elif yaml_out:
        output_format = "yaml"

    level = config.logging.level
    if quiet:
        level = "ERROR"
    elif verbose:
        level = "DEBUG"

    fmt = log_format or config.logging.format
    if fmt not in ("console", "json", "structured", "rich"):
        console.print(f"[red]Unknown log format '{fmt}'[/red]")
        raise typer.Exit(EXIT_INVALID)

    configure_logging(
        level=level,
        format=fmt,  # type: ignore[arg-type]
        output_file=config.logging.output_file,
        use_color=config.logging.use_color,
        include_timestamp=config.logging.include_timestamp,
        backtrace=config.logging.backtrace,
        diagnose=config.logging.diagnose,
    )

    ctx.obj.update({
        "config": config,
        "config_path": config_path,
        "output_format": output_format,
        "log_level": level,
    })


def main() -> None:
    """Main CLI entrypoint."""
    app()


if __name__ == "__main__":
    main()
