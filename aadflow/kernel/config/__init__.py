"""Configuration models and the TOML loader."""

from aadflow.kernel.config.loader import ConfigLoader, clear_config_cache, load_config
from aadflow.kernel.config.models import (
    AadflowConfig,
    LoggingConfig,
    OrchestratorConfig,
    RunnerConfig,
)

__all__ = [
    "AadflowConfig",
    "ConfigLoader",
    "LoggingConfig",
    "OrchestratorConfig",
    "RunnerConfig",
    "clear_config_cache",
    "load_config",
]
