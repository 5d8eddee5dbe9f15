"""Concrete implementations of the kernel ports."""

from aadflow.adapters.escalation import FileEscalationSink, InMemoryEscalationSink
from aadflow.adapters.runners import ScriptedRunner, SubprocessRunner

__all__ = [
    "FileEscalationSink",
    "InMemoryEscalationSink",
    "ScriptedRunner",
    "SubprocessRunner",
]
