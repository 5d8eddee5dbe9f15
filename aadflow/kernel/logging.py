"""Logging setup for aadflow, built on Loguru.

Every record carries the id of the run that produced it (``extra[run]``), so
the interleaved output of concurrent sessions can be told apart and a resumed
run logs under the same id as the run it continues.

Examples
--------
Module loggers::

    from aadflow.kernel.logging import get_logger

    logger = get_logger(__name__)
    logger.info("Work item '{item}' ready", item="A")

Explicit configuration (the CLI does this from ``[logging]``)::

    from aadflow.kernel.logging import configure_logging

    configure_logging(level="DEBUG", format="json", output_file="state/aadflow.log")
"""

from __future__ import annotations

import contextvars
import os
import sys
from contextlib import suppress
from dataclasses import asdict, dataclass
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from loguru import logger
from rich.logging import RichHandler

if TYPE_CHECKING:
    from loguru import Logger, Record

LogLevel = Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
LogFormat = Literal["console", "json", "structured", "rich"]

NO_RUN = "-"

_run_id: contextvars.ContextVar[str] = contextvars.ContextVar("aadflow_run_id", default=NO_RUN)


@dataclass(frozen=True, slots=True)
class _LogSettings:
    level: str
    format: str
    output_file: str | None
    use_color: bool
    include_timestamp: bool
    backtrace: bool
    diagnose: bool


_active: _LogSettings | None = None
_handler_ids: list[int] = []


def _tag_run(record: Record) -> None:
    record["extra"].setdefault("run", _run_id.get())


def _stderr_options(settings: _LogSettings) -> dict[str, Any]:
    """Sink keyword arguments for the stderr handler of ``settings.format``."""
    stamp = "{time:YYYY-MM-DD HH:mm:ss} " if settings.include_timestamp else ""

    match settings.format:
        case "rich":
            handler = RichHandler(
                rich_tracebacks=True,
                markup=False,
                show_time=settings.include_timestamp,
                show_path=False,
            )
            return {"sink": handler, "format": "[{extra[run]}] {message}"}
        case "json":
            return {"sink": sys.stderr, "serialize": True}
        case "structured":
            colorize = settings.use_color and sys.stderr.isatty()
            if colorize:
                stamp = f"<green>{stamp}</green>" if stamp else ""
            return {
                "sink": sys.stderr,
                "colorize": colorize,
                "format": (
                    f"{stamp}<level>{{level: <8}}</level> "
                    "<cyan>{extra[run]}</cyan> <cyan>{name}:{line}</cyan> | "
                    "<level>{message}</level>"
                ),
            }
        case _:
            return {
                "sink": sys.stderr,
                "colorize": False,
                "format": f"{stamp}{{level: <8}} | {{extra[run]}} | {{message}}",
            }


def configure_logging(
    level: LogLevel = "INFO",
    format: LogFormat = "structured",
    output_file: str | Path | None = None,
    use_color: bool = True,
    include_timestamp: bool = True,
    force_reconfigure: bool = False,
    backtrace: bool = True,
    diagnose: bool = False,
) -> None:
    """Install aadflow's log handlers.

    Calling it again with the same settings is a no-op; different settings
    replace the handlers installed earlier. Handlers added by others (pytest's
    caplog, an embedding application) are left alone.

    Parameters
    ----------
    level : LogLevel, default="INFO"
        Minimum level written
    format : LogFormat, default="structured"
        ``console`` plain lines, ``json`` one serialized record per line,
        ``structured`` Loguru's colored layout, ``rich`` a RichHandler
    output_file : str | Path | None, default=None
        Additional JSON lines file, rotated at 10 MB
    use_color : bool, default=True
        Color the structured format when stderr is a terminal
    include_timestamp : bool, default=True
        Prefix lines with the time
    force_reconfigure : bool, default=False
        Reinstall handlers even when the settings are unchanged
    backtrace : bool, default=True
        Extended tracebacks for logged exceptions
    diagnose : bool, default=False
        Include variable values in tracebacks
    """
    global _active

    settings = _LogSettings(
        level=level,
        format=format,
        output_file=str(output_file) if output_file else None,
        use_color=use_color,
        include_timestamp=include_timestamp,
        backtrace=backtrace,
        diagnose=diagnose,
    )
    if settings == _active and not force_reconfigure:
        return

    for handler_id in _handler_ids:
        with suppress(ValueError):
            logger.remove(handler_id)
    _handler_ids.clear()

    logger.configure(patcher=_tag_run)
    common = {"level": level, "backtrace": backtrace, "diagnose": diagnose}
    _handler_ids.append(logger.add(**_stderr_options(settings), **common))

    if settings.output_file:
        path = Path(settings.output_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        _handler_ids.append(
            logger.add(path, serialize=True, rotation="10 MB", retention=5, **common)
        )

    _active = settings


def current_settings() -> dict[str, Any] | None:
    """Settings of the installed handlers, or None before configuration."""
    return asdict(_active) if _active else None


@lru_cache(maxsize=256)
def get_logger(name: str) -> Logger:
    """Logger bound to module ``name``.

    Logging is configured from ``AADFLOW_LOG_LEVEL`` and ``AADFLOW_LOG_FORMAT``
    on first use if nothing configured it yet.
    """
    if _active is None:
        configure_logging(
            level=os.getenv("AADFLOW_LOG_LEVEL", "INFO").upper(),  # type: ignore[arg-type]
            format=os.getenv("AADFLOW_LOG_FORMAT", "structured").lower(),  # type: ignore[arg-type]
        )
    return logger.bind(module=name)


def set_run_id(run_id: str) -> contextvars.Token[str]:
    """Tag records logged in the current context with ``run_id``."""
    return _run_id.set(run_id)


def get_run_id() -> str:
    """Run id of the current context, or ``"-"`` outside a run.

    >>> get_run_id()
    '-'
    """
    return _run_id.get()


def reset_run_id(token: contextvars.Token[str]) -> None:
    _run_id.reset(token)
