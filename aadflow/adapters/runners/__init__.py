"""Runner adapters."""

from aadflow.adapters.runners.scripted_runner import ScriptedRunner
from aadflow.adapters.runners.subprocess_runner import SubprocessRunner

__all__ = ["ScriptedRunner", "SubprocessRunner"]
