"""CLI helper utilities for aadflow commands."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Protocol

import typer
import yaml
from pydantic import ValidationError as PydanticValidationError
from rich.console import Console
from rich.table import Table

from aadflow.kernel import (
    AadflowConfig,
    RunSummary,
    ValidationError,
    WorkDeclaration,
    WorkItemStatus,
)

EXIT_INCOMPLETE = 1
EXIT_INVALID = 2
EXIT_CORRUPT_CHECKPOINT = 3

STATUS_STYLES = {
    WorkItemStatus.PENDING: "dim",
    WorkItemStatus.READY: "cyan",
    WorkItemStatus.RUNNING: "blue",
    WorkItemStatus.BLOCKED: "yellow",
    WorkItemStatus.COMPLETED: "green",
    WorkItemStatus.FAILED: "red",
    WorkItemStatus.SKIPPED: "magenta",
}


class ContextProtocol(Protocol):
    """Protocol for common interface between Click and Typer contexts."""

    @property
    def obj(self) -> dict[str, Any] | None: ...


console = Console()


def print_output(data: Any, ctx: ContextProtocol | None = None) -> None:
    """Print ``data`` according to ``ctx.obj['output_format']``.

    If ctx is None or no format specified, pretty-print using rich.console.
    """
    fmt = None
    if ctx is not None:
        settings = getattr(ctx, "obj", None)
        if isinstance(settings, dict):
            fmt = settings.get("output_format")

    if fmt == "json":
        typer.echo(json.dumps(data, default=str, indent=2))
    elif fmt == "yaml":
        typer.echo(yaml.safe_dump(data, sort_keys=False))
    elif isinstance(data, (str, int, float)):
        typer.echo(str(data))
    else:
        console.print(data)


def wants_machine_output(ctx: ContextProtocol | None) -> bool:
    settings = getattr(ctx, "obj", None) if ctx is not None else None
    return isinstance(settings, dict) and settings.get("output_format") in ("json", "yaml")


def get_config(ctx: ContextProtocol | None) -> AadflowConfig:
    settings = getattr(ctx, "obj", None) if ctx is not None else None
    if isinstance(settings, dict) and isinstance(settings.get("config"), AadflowConfig):
        return settings["config"]
    return AadflowConfig()


# ============================================================================
# Work declarations
# ============================================================================


def parse_item_args(items: list[str]) -> list[WorkDeclaration]:
    """Parse ``ID`` / ``ID:DEP1,DEP2`` arguments.

    Raises
    ------
    ValidationError
        If an argument is malformed
    """
    try:
        return [WorkDeclaration.parse(item) for item in items]
    except PydanticValidationError as e:
        raise ValidationError("items", _first_error(e), items) from e


def load_plan(path: Path) -> list[WorkDeclaration]:
    """Load work declarations from a YAML or JSON plan file.

    Accepted shapes are a list of entries or a mapping with an ``items`` list.
    Each entry is either the ``ID:DEP1,DEP2`` string form or a mapping::

        items:
          - A
          - id: B
            dependencies: [A]
            final_phase: review

    Raises
    ------
    ValidationError
        If the file cannot be read or an entry is malformed
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ValidationError("plan", f"cannot read plan file: {e}", str(path)) from e

    try:
        data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValidationError("plan", f"cannot parse plan file: {e}", str(path)) from e

    if isinstance(data, dict):
        data = data.get("items")
    if not isinstance(data, list):
        raise ValidationError("plan", "expected a list of work items", str(path))

    declarations = []
    for index, entry in enumerate(data):
        try:
            if isinstance(entry, str):
                declarations.append(WorkDeclaration.parse(entry))
            else:
                declarations.append(WorkDeclaration.model_validate(entry))
        except PydanticValidationError as e:
            raise ValidationError(f"plan[{index}]", _first_error(e), entry) from e
    return declarations


def _first_error(error: PydanticValidationError) -> str:
    details = error.errors()
    return str(details[0]["msg"]) if details else str(error)


# ============================================================================
# Rendering
# ============================================================================


def summary_table(summary: RunSummary, title: str | None = None) -> Table:
    """Render a run summary as a rich table."""
    table = Table(
        title=title or f"Run {summary.run_id}",
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("Work item", style="bold")
    table.add_column("Status")
    table.add_column("Detail", style="dim")

    superseded = set(summary.superseded)
    blocked_on = {record.work_item_id: record.block_id for record in summary.unresolved}
    for item_id, status in summary.statuses.items():
        style = STATUS_STYLES.get(status, "")
        if item_id in superseded:
            detail = "superseded by split"
        elif item_id in blocked_on:
            detail = f"awaiting {blocked_on[item_id]}"
        else:
            detail = summary.errors.get(item_id, "")
        table.add_row(item_id, f"[{style}]{status.value}[/{style}]", detail)

    table.caption = f"{summary.describe()} ({summary.progress_percent:.0f}% done)"
    return table


def summary_dict(summary: RunSummary) -> dict[str, Any]:
    return {
        "run_id": summary.run_id,
        "succeeded": summary.succeeded,
        "progress_percent": summary.progress_percent,
        "counts": summary.counts,
        "statuses": {item_id: status.value for item_id, status in summary.statuses.items()},
        "superseded": summary.superseded,
        "errors": summary.errors,
        "unresolved": [record.block_id for record in summary.unresolved],
    }
