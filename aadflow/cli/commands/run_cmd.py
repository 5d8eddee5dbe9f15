"""Run command for aadflow CLI."""

from __future__ import annotations

import asyncio
import dataclasses
import shlex
from pathlib import Path
from typing import Annotated

import typer
import yaml
from rich.table import Table

from aadflow.adapters import FileEscalationSink, ScriptedRunner, SubprocessRunner
from aadflow.cli.utils import (
    EXIT_CORRUPT_CHECKPOINT,
    EXIT_INCOMPLETE,
    EXIT_INVALID,
    console,
    get_config,
    load_plan,
    parse_item_args,
    print_output,
    summary_dict,
    summary_table,
    wants_machine_output,
)
from aadflow.kernel import (
    AadflowConfig,
    CheckpointCorruptionError,
    CheckpointStore,
    ConfigurationError,
    Orchestrator,
    OrchestratorError,
    OrchestratorConfig,
    Runner,
    ValidationError,
    WorkDeclaration,
)
from aadflow.kernel.orchestration.events import (
    Event,
    WorkItemBlocked,
    WorkItemCompleted,
    WorkItemFailed,
    WorkItemSkipped,
)


def run(
    ctx: typer.Context,
    items: Annotated[
        list[str] | None,
        typer.Argument(help="Work items as ID or ID:DEP1,DEP2"),
    ] = None,
    plan: Annotated[
        Path | None,
        typer.Option("--plan", "-p", help="YAML or JSON file listing work items"),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Print the wave plan without starting sessions"),
    ] = False,
    resume: Annotated[
        bool,
        typer.Option("--resume", help="Continue from the last checkpoint"),
    ] = False,
    max_parallel: Annotated[
        int | None,
        typer.Option("--max-parallel", "-j", min=1, help="Maximum concurrent sessions"),
    ] = None,
    runner_cmd: Annotated[
        str | None,
        typer.Option("--runner-cmd", help="Worker command line, run once per session"),
    ] = None,
    state_dir: Annotated[
        Path | None,
        typer.Option("--state-dir", help="Directory for checkpoints and escalations"),
    ] = None,
    script: Annotated[
        Path | None,
        typer.Option("--script", help="YAML file of scripted session outcomes (demo runner)"),
    ] = None,
    wait: Annotated[
        float | None,
        typer.Option(
            "--wait",
            min=0,
            help="Seconds to wait for escalation decisions once only blocked work remains",
        ),
    ] = None,
) -> None:
    """Run work items to completion, escalating where a session needs a decision."""
    config = get_config(ctx)
    state_path = state_dir or Path(config.state_dir)

    try:
        orchestrator_config = _orchestrator_config(config, max_parallel, wait)
        declarations = _declarations(items or [], plan)
        if not declarations and not resume:
            raise ValidationError("items", "no work items given", None)

        store = CheckpointStore(state_path, orchestrator_config.backup_count)
        sink = FileEscalationSink(state_path / "escalations")
        runner = _build_runner(config, runner_cmd, script, state_path, required=not dry_run)
        observers = [] if wants_machine_output(ctx) else [_print_event]

        if resume:
            orchestrator = Orchestrator.from_checkpoint(
                runner,
                store,
                config=orchestrator_config,
                escalation_sink=sink,
                observers=observers,
            )
        else:
            orchestrator = Orchestrator(
                runner,
                config=orchestrator_config,
                checkpoint_store=None if dry_run else store,
                escalation_sink=sink,
                observers=observers,
            )
        if declarations:
            orchestrator.register(declarations)
    except CheckpointCorruptionError as e:
        console.print(f"[red]Checkpoint error: {e}[/red]")
        raise typer.Exit(EXIT_CORRUPT_CHECKPOINT) from e
    except (ValidationError, ConfigurationError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(EXIT_INVALID) from e

    if dry_run:
        _print_plan(ctx, orchestrator)
        return

    try:
        summary = asyncio.run(orchestrator.arun())
    except OrchestratorError as e:
        console.print(f"[red]Run stopped: {e}[/red]")
        raise typer.Exit(EXIT_INCOMPLETE) from e

    if wants_machine_output(ctx):
        print_output(summary_dict(summary), ctx)
    else:
        console.print(summary_table(summary))
        for record in summary.unresolved:
            console.print(
                f"[yellow]{record.level.emoji} {record.block_id}[/yellow] "
                f"({record.kind.value}): {record.reason}"
            )
    raise typer.Exit(summary.exit_code)


def _orchestrator_config(
    config: AadflowConfig, max_parallel: int | None, wait: float | None
) -> OrchestratorConfig:
    changes: dict[str, object] = {}
    if max_parallel is not None:
        changes["max_concurrent"] = max_parallel
    if wait is not None:
        changes["blocked_grace_period"] = wait
    return dataclasses.replace(config.orchestrator, **changes)


def _declarations(items: list[str], plan: Path | None) -> list[WorkDeclaration]:
    declarations = parse_item_args(items)
    if plan is not None:
        declarations.extend(load_plan(plan))
    return declarations


def _build_runner(
    config: AadflowConfig,
    runner_cmd: str | None,
    script: Path | None,
    state_dir: Path,
    required: bool,
) -> Runner:
    if script is not None:
        try:
            data = yaml.safe_load(script.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError("runner", f"cannot load script {script}: {e}") from e
        return ScriptedRunner.from_mapping(data)

    command = shlex.split(runner_cmd) if runner_cmd else list(config.runner.command)
    if not command:
        if required:
            raise ConfigurationError(
                "runner", "no worker command; pass --runner-cmd or configure runner.command"
            )
        return ScriptedRunner()
    return SubprocessRunner(command, state_dir=state_dir, env=config.runner.env)


def _print_event(event: Event) -> None:
    match event:
        case WorkItemCompleted():
            console.print(f"[green]✓[/green] {event.log_message()}")
        case WorkItemFailed():
            console.print(f"[red]✗[/red] {event.log_message()}")
        case WorkItemSkipped():
            console.print(f"[magenta]-[/magenta] {event.log_message()}")
        case WorkItemBlocked(record=record):
            console.print(f"{record.level.emoji} {event.log_message()}")


def _print_plan(ctx: typer.Context, orchestrator: Orchestrator) -> None:
    waves = orchestrator.plan()
    graph = orchestrator.graph()

    if wants_machine_output(ctx):
        print_output(
            {
                "items": {item_id: sorted(graph.dependencies(item_id)) for item_id in graph},
                "waves": waves,
            },
            ctx,
        )
        return

    table = Table(title="Execution plan", show_header=True, header_style="bold magenta")
    table.add_column("Wave", justify="right")
    table.add_column("Work item", style="bold")
    table.add_column("Depends on", style="dim")
    for index, wave in enumerate(waves, start=1):
        for item_id in wave:
            table.add_row(str(index), item_id, ", ".join(sorted(graph.dependencies(item_id))))
    console.print(table)
    console.print(f"[dim]{sum(len(w) for w in waves)} work item(s) in {len(waves)} wave(s)[/dim]")
