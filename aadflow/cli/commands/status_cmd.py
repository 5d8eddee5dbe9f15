"""Status command for aadflow CLI."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from aadflow.cli.utils import (
    EXIT_CORRUPT_CHECKPOINT,
    EXIT_INCOMPLETE,
    console,
    get_config,
    print_output,
    summary_dict,
    summary_table,
    wants_machine_output,
)
from aadflow.kernel import CheckpointCorruptionError, CheckpointStore, RunSummary


def status(
    ctx: typer.Context,
    state_dir: Annotated[
        Path | None,
        typer.Option("--state-dir", help="Directory for checkpoints and escalations"),
    ] = None,
) -> None:
    """Summarize the last checkpoint."""
    store = CheckpointStore(state_dir or Path(get_config(ctx).state_dir))
    if not store.exists():
        console.print(f"[yellow]No checkpoint found in {store.path.parent}[/yellow]")
        raise typer.Exit(EXIT_INCOMPLETE)

    try:
        checkpoint = store.load()
    except CheckpointCorruptionError as e:
        console.print(f"[red]Checkpoint error: {e}[/red]")
        raise typer.Exit(EXIT_CORRUPT_CHECKPOINT) from e

    summary = RunSummary.from_state(checkpoint.state)
    if wants_machine_output(ctx):
        print_output(
            {**summary_dict(summary), "checkpointed_at": checkpoint.created_at.isoformat()},
            ctx,
        )
        return

    console.print(summary_table(summary))
    console.print(f"[dim]Checkpoint written {checkpoint.created_at:%Y-%m-%d %H:%M:%S} UTC[/dim]")
