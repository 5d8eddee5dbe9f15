"""Escalation commands for aadflow CLI.

Decisions are dropped into the escalation directory of the state dir, where a
running orchestrator (or the next ``run --resume``) picks them up.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.table import Table

from aadflow.adapters import FileEscalationSink
from aadflow.cli.utils import (
    EXIT_INVALID,
    console,
    get_config,
    print_output,
    wants_machine_output,
)
from aadflow.kernel import EscalationKind

app = typer.Typer()

StateDirOption = Annotated[
    Path | None,
    typer.Option("--state-dir", help="Directory for checkpoints and escalations"),
]


def _sink(ctx: typer.Context, state_dir: Path | None) -> FileEscalationSink:
    return FileEscalationSink((state_dir or Path(get_config(ctx).state_dir)) / "escalations")


@app.command("list")
def list_escalations(
    ctx: typer.Context,
    state_dir: StateDirOption = None,
    show_all: Annotated[
        bool,
        typer.Option("--all", "-a", help="Include resolved and rejected escalations"),
    ] = False,
) -> None:
    """List escalations awaiting a decision."""
    records = _sink(ctx, state_dir).list_records(pending_only=not show_all)

    if wants_machine_output(ctx):
        print_output([record.model_dump(mode="json") for record in records], ctx)
        return

    if not records:
        console.print("[green]No escalations awaiting a decision[/green]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Block ID", style="bold")
    table.add_column("Work item")
    table.add_column("Level")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Reason")
    for record in records:
        table.add_row(
            record.block_id,
            record.work_item_id,
            f"{record.level.emoji} {record.level.value}",
            record.kind.value,
            record.status.value,
            record.reason,
        )
    console.print(table)


@app.command("resolve")
def resolve_escalation(
    ctx: typer.Context,
    block_id: Annotated[str, typer.Argument(help="Escalation block id, e.g. A-esc-001")],
    answer: Annotated[
        str | None,
        typer.Option("--answer", help="Answer to a question escalation"),
    ] = None,
    payload: Annotated[
        str | None,
        typer.Option("--payload", help="Resolution payload as a JSON object"),
    ] = None,
    reject: Annotated[
        bool,
        typer.Option("--reject", help="Reject the request; the work item fails"),
    ] = False,
    state_dir: StateDirOption = None,
) -> None:
    """Submit a decision for a pending escalation."""
    sink = _sink(ctx, state_dir)
    record = sink.load_record(block_id)
    if record is None:
        console.print(f"[red]Error: unknown escalation '{block_id}'[/red]")
        raise typer.Exit(EXIT_INVALID)
    if not record.is_pending:
        console.print(f"[red]Error: escalation '{block_id}' is already {record.status}[/red]")
        raise typer.Exit(EXIT_INVALID)

    resolution_payload: dict[str, Any] = {}
    if payload is not None:
        try:
            resolution_payload = json.loads(payload)
        except json.JSONDecodeError as e:
            console.print(f"[red]Error: --payload is not valid JSON: {e}[/red]")
            raise typer.Exit(EXIT_INVALID) from e
        if not isinstance(resolution_payload, dict):
            console.print("[red]Error: --payload must be a JSON object[/red]")
            raise typer.Exit(EXIT_INVALID)
    if answer is not None:
        resolution_payload["answer"] = answer

    if not reject and record.kind == EscalationKind.QUESTION and not resolution_payload:
        console.print("[red]Error: a question needs --answer or --payload[/red]")
        raise typer.Exit(EXIT_INVALID)

    path = sink.submit_resolution(block_id, resolution_payload, approved=not reject)
    if wants_machine_output(ctx):
        print_output({"block_id": block_id, "approved": not reject, "file": str(path)}, ctx)
    else:
        verb = "Rejection" if reject else "Decision"
        console.print(f"[green]{verb} for {block_id} queued[/green] [dim]({path})[/dim]")
