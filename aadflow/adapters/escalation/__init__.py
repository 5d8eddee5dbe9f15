"""Escalation sink adapters."""

from aadflow.adapters.escalation.file_sink import FileEscalationSink
from aadflow.adapters.escalation.memory_sink import InMemoryEscalationSink

__all__ = ["FileEscalationSink", "InMemoryEscalationSink"]
