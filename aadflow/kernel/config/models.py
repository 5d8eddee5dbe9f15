"""Configuration data models for aadflow."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Literal

from aadflow.kernel.exceptions import ValidationError

DEFAULT_STATE_DIR = ".aad/orchestration"


def _default_concurrency() -> int:
    return os.cpu_count() or 4


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Logging configuration for aadflow.

    Attributes
    ----------
    level : str, default="INFO"
        Log level (TRACE, DEBUG, INFO, WARNING, ERROR, CRITICAL)
    format : str, default="structured"
        Output format (console, json, structured, rich)
    output_file : str | None, default=None
        Optional file path to write JSON logs to
    use_color : bool, default=True
        Use ANSI color codes (auto-disabled for non-TTY)
    include_timestamp : bool, default=True
        Include timestamp in log output
    backtrace : bool, default=True
        Enable extended backtraces
    diagnose : bool, default=False
        Show variable values in tracebacks

    Examples
    --------
    TOML configuration:

    ```toml
    [tool.aadflow.logging]
    level = "DEBUG"
    format = "rich"
    ```

    Environment variable overrides:

    ```bash
    export AADFLOW_LOG_LEVEL=DEBUG
    export AADFLOW_LOG_FORMAT=json
    export AADFLOW_LOG_FILE=.aad/orchestration/aadflow.log
    ```
    """

    level: Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["console", "json", "structured", "rich"] = "structured"
    output_file: str | None = None
    use_color: bool = True
    include_timestamp: bool = True
    backtrace: bool = True
    diagnose: bool = False


@dataclass(frozen=True, slots=True)
class OrchestratorConfig:
    """Execution limits and timing knobs for the coordinator loop.

    Attributes
    ----------
    max_concurrent : int
        Maximum number of sessions running at once (defaults to the CPU count)
    session_timeout : float
        Hard deadline for one session, in seconds
    poll_interval : float
        How long the coordinator waits for a report before sweeping timers
    max_attempts : int
        Total attempts per work item phase, including the first one
    retry_backoff : float
        Base of the exponential backoff between attempts, in seconds
    escalation_timeout : float
        Seconds a pending escalation may wait before the operator is notified
    blocked_grace_period : float | None
        Seconds to keep waiting for decisions once only blocked work remains.
        ``None`` waits indefinitely.
    backup_count : int
        Rotated checkpoint backups kept next to the state file
    """

    max_concurrent: int = field(default_factory=_default_concurrency)
    session_timeout: float = 3600.0
    poll_interval: float = 1.0
    max_attempts: int = 3
    retry_backoff: float = 2.0
    escalation_timeout: float = 1800.0
    blocked_grace_period: float | None = None
    backup_count: int = 3

    def __post_init__(self) -> None:
        """Validate configuration values.

        Raises
        ------
        ValidationError
            If any limit is non-positive or a delay is negative
        """
        if self.max_concurrent < 1:
            raise ValidationError("max_concurrent", "must be at least 1", self.max_concurrent)
        if self.session_timeout <= 0:
            raise ValidationError("session_timeout", "must be positive", self.session_timeout)
        if self.poll_interval <= 0:
            raise ValidationError("poll_interval", "must be positive", self.poll_interval)
        if self.max_attempts < 1:
            raise ValidationError("max_attempts", "must be at least 1", self.max_attempts)
        if self.retry_backoff < 0:
            raise ValidationError("retry_backoff", "cannot be negative", self.retry_backoff)
        if self.escalation_timeout <= 0:
            raise ValidationError(
                "escalation_timeout", "must be positive", self.escalation_timeout
            )
        if self.blocked_grace_period is not None and self.blocked_grace_period < 0:
            raise ValidationError(
                "blocked_grace_period", "cannot be negative", self.blocked_grace_period
            )
        if self.backup_count < 0:
            raise ValidationError("backup_count", "cannot be negative", self.backup_count)

    def backoff_for(self, attempt: int) -> float:
        """Delay before attempt ``attempt + 1`` after ``attempt`` failures.

        >>> OrchestratorConfig(max_concurrent=1).backoff_for(3)
        8.0
        """
        return self.retry_backoff * 2 ** (attempt - 1) if attempt > 0 else 0.0


@dataclass(frozen=True, slots=True)
class RunnerConfig:
    """Worker runner settings.

    Attributes
    ----------
    command : list[str]
        Argument vector of the worker executable. Empty means no subprocess
        runner is configured.
    env : dict[str, str]
        Extra environment variables passed to every worker
    """

    command: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class AadflowConfig:
    """Complete aadflow configuration.

    Examples
    --------
    TOML configuration in pyproject.toml:

    ```toml
    [tool.aadflow]
    state_dir = ".aad/orchestration"

    [tool.aadflow.orchestrator]
    max_concurrent = 4
    retry_backoff = 2.0

    [tool.aadflow.runner]
    command = ["python", "-m", "my_agent"]
    env = { API_KEY = "${API_KEY}" }
    ```
    """

    state_dir: str = DEFAULT_STATE_DIR
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
