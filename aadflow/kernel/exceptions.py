"""Core exception hierarchy for aadflow.

All aadflow exceptions inherit from AadflowError for easy exception handling.
The taxonomy mirrors how the orchestrator reacts to each failure:

- ValidationError: malformed declarations or cycles, fatal before any state exists
- RunnerError: worker crashed or timed out, recovered through bounded retry
- EscalationTimeout: no external decision in time, surfaced to the operator
- CheckpointCorruptionError: unreadable state on resume, fatal at startup
"""

from __future__ import annotations

# ============================================================================
# Base Exception
# ============================================================================


class AadflowError(Exception):
    """Base exception for all aadflow errors.

    Catch this to handle all aadflow errors.
    """

    pass


# ============================================================================
# Configuration & Validation Errors
# ============================================================================


class ConfigurationError(AadflowError):
    """Raised when configuration is invalid or missing.

    Examples
    --------
    Example usage::

        raise ConfigurationError("runner", "no command configured")
    """

    def __init__(self, component: str, reason: str) -> None:
        """Initialize configuration error.

        Args
        ----
            component: Name of the component with invalid configuration
            reason: Explanation of what's wrong
        """
        super().__init__(f"Configuration error in '{component}': {reason}")
        self.component = component
        self.reason = reason


class ValidationError(AadflowError):
    """Raised when data validation fails.

    Examples
    --------
    Example usage::

        raise ValidationError("max_concurrent", "must be positive", value=-1)
    """

    def __init__(self, field: str, constraint: str, value: object = None) -> None:
        """Initialize validation error.

        Args
        ----
            field: Name of the field that failed validation
            constraint: Description of the validation constraint
            value: The invalid value (optional)
        """
        if value is not None:
            msg = f"Validation failed for '{field}': {constraint} (got {value!r})"
        else:
            msg = f"Validation failed for '{field}': {constraint}"
        super().__init__(msg)
        self.field = field
        self.constraint = constraint
        self.value = value


class CycleError(ValidationError):
    """Raised when a dependency edge would close a cycle.

    Attributes
    ----------
    path : list[str]
        The cycle, with the first item repeated at the end
        (e.g. ``["A", "B", "C", "A"]``).
    """

    def __init__(self, path: list[str]) -> None:
        self.path = list(path)
        super().__init__("dependencies", f"cycle detected: {' -> '.join(self.path)}")


class InvalidTransitionError(ValidationError):
    """Raised when a work item is moved to a status its lifecycle forbids."""

    def __init__(self, item_id: str, from_status: str, to_status: str) -> None:
        super().__init__(
            "status",
            f"work item '{item_id}' cannot move from {from_status} to {to_status}",
        )
        self.item_id = item_id
        self.from_status = from_status
        self.to_status = to_status


# ============================================================================
# Execution Errors
# ============================================================================


class RunnerError(AadflowError):
    """Raised when a worker crashes or exceeds its deadline.

    Raised inside worker sessions and converted into a ``failed`` report;
    it never escapes into the coordinator loop.
    """

    def __init__(self, reason: str, detail: str | None = None) -> None:
        msg = f"Runner failed: {reason}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)
        self.reason = reason
        self.detail = detail


class OrchestratorError(AadflowError):
    """Raised when the coordinator loop cannot proceed."""

    pass


# ============================================================================
# Escalation Errors
# ============================================================================


class EscalationTimeout(AadflowError):
    """An escalation received no external decision within its window.

    The work item stays blocked; the orchestrator never guesses a resolution.
    """

    def __init__(self, block_id: str, work_item_id: str, waited_seconds: float) -> None:
        super().__init__(
            f"Escalation '{block_id}' for '{work_item_id}' unresolved after "
            f"{waited_seconds:.0f}s"
        )
        self.block_id = block_id
        self.work_item_id = work_item_id
        self.waited_seconds = waited_seconds


class EscalationStateError(AadflowError):
    """Raised when an escalation is resolved twice or does not exist."""

    pass


# ============================================================================
# Persistence Errors
# ============================================================================


class CheckpointCorruptionError(AadflowError):
    """Raised when a checkpoint file cannot be trusted on resume."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Checkpoint '{path}' is unusable: {reason}")
        self.path = path
        self.reason = reason


__all__ = [
    "AadflowError",
    "CheckpointCorruptionError",
    "ConfigurationError",
    "CycleError",
    "EscalationStateError",
    "EscalationTimeout",
    "InvalidTransitionError",
    "OrchestratorError",
    "RunnerError",
    "ValidationError",
]
