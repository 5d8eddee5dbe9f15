"""TOML configuration loader for aadflow."""

from __future__ import annotations

import dataclasses
import os
import re
import shlex
import tomllib
from functools import lru_cache
from pathlib import Path
from typing import Any, TypeVar

from aadflow.kernel.config.models import (
    AadflowConfig,
    LoggingConfig,
    OrchestratorConfig,
    RunnerConfig,
)
from aadflow.kernel.exceptions import ConfigurationError
from aadflow.kernel.logging import get_logger

# Constants for boolean environment variable parsing
_TRUTHY_VALUES = frozenset({"true", "1", "yes", "on", "enabled"})
_FALSY_VALUES = frozenset({"false", "0", "no", "off", "disabled"})

# Environment overrides for [orchestrator]: variable -> (field, converter)
_ORCHESTRATOR_ENV: dict[str, tuple[str, type]] = {
    "AADFLOW_MAX_CONCURRENT": ("max_concurrent", int),
    "AADFLOW_SESSION_TIMEOUT": ("session_timeout", float),
    "AADFLOW_POLL_INTERVAL": ("poll_interval", float),
    "AADFLOW_MAX_ATTEMPTS": ("max_attempts", int),
    "AADFLOW_RETRY_BACKOFF": ("retry_backoff", float),
    "AADFLOW_ESCALATION_TIMEOUT": ("escalation_timeout", float),
    "AADFLOW_BLOCKED_GRACE_PERIOD": ("blocked_grace_period", float),
    "AADFLOW_BACKUP_COUNT": ("backup_count", int),
}

_T = TypeVar("_T")

logger = get_logger(__name__)


def _parse_bool_env(value: str) -> bool:
    """Parse boolean from environment variable value.

    Raises
    ------
    ValueError
        If value is not a recognized boolean string
    """
    normalized = value.lower().strip()
    if normalized in _TRUTHY_VALUES:
        return True
    if normalized in _FALSY_VALUES:
        return False
    expected = sorted(_TRUTHY_VALUES | _FALSY_VALUES)
    raise ValueError(f"Invalid boolean value: {value!r}. Expected one of: {expected}")


@lru_cache(maxsize=32)
def _load_and_parse_cached(path_str: str) -> AadflowConfig:
    """Cached configuration loader."""
    return ConfigLoader()._load_and_parse(Path(path_str))


class ConfigLoader:
    """Loads and processes aadflow configuration from TOML files."""

    ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")
    SEARCH_PATHS = ("aadflow.toml", ".aadflow.toml", "pyproject.toml")

    def load_from_toml(self, path: str | Path | None = None) -> AadflowConfig:
        """Load configuration from a TOML file.

        Parameters
        ----------
        path : str | Path | None
            Path to TOML file. If None, searches the working directory.

        Returns
        -------
        AadflowConfig
            Parsed configuration with environment variables substituted

        Raises
        ------
        FileNotFoundError
            If ``path`` is given but missing, or nothing is found by search
        """
        config_path = self._find_config_file(path)
        return _load_and_parse_cached(str(config_path.absolute()))

    def _load_and_parse(self, config_path: Path) -> AadflowConfig:
        logger.info("Loading configuration from {path}", path=config_path)

        try:
            with config_path.open("rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(str(config_path), f"invalid TOML: {e}") from e

        if "tool" in data and "aadflow" in data["tool"]:
            aadflow_data = data["tool"]["aadflow"]
        elif config_path.name == "pyproject.toml":
            logger.warning("No [tool.aadflow] section found in pyproject.toml, using defaults")
            aadflow_data = {}
        else:
            # Flat format (top-level keys)
            aadflow_data = data

        return self._parse_config(self._substitute_env_vars(aadflow_data))

    def _find_config_file(self, path: str | Path | None) -> Path:
        if path:
            config_path = Path(path)
            if not config_path.exists():
                raise FileNotFoundError(f"Configuration file not found: {config_path}")
            return config_path

        if env_path := os.getenv("AADFLOW_CONFIG_PATH"):
            config_path = Path(env_path)
            if config_path.exists():
                logger.debug(f"Using config from AADFLOW_CONFIG_PATH: {config_path}")
                return config_path
            logger.warning(f"AADFLOW_CONFIG_PATH set but file not found: {config_path}")

        for search_path in map(Path, self.SEARCH_PATHS):
            if search_path.exists():
                return search_path

        raise FileNotFoundError(
            "No configuration file found. Searched for: " + ", ".join(self.SEARCH_PATHS)
        )

    def _substitute_env_vars(self, data: Any) -> Any:
        """Recursively substitute ``${VAR}`` and ``${VAR:-default}``.

        Unknown variables without a default keep their placeholder.
        """
        if isinstance(data, str):

            def replacer(match: re.Match[str]) -> str:
                var_name, default = match.group(1), match.group(2)
                value = os.environ.get(var_name)
                if value is not None:
                    return value
                if default is not None:
                    return default
                logger.debug(f"Environment variable ${{{var_name}}} not found, keeping placeholder")
                return match.group(0)

            return self.ENV_VAR_PATTERN.sub(replacer, data)

        if isinstance(data, dict):
            return {key: self._substitute_env_vars(value) for key, value in data.items()}

        if isinstance(data, list):
            return [self._substitute_env_vars(item) for item in data]

        return data

    def _parse_config(self, data: dict[str, Any]) -> AadflowConfig:
        config = AadflowConfig()

        if state_dir := os.getenv("AADFLOW_STATE_DIR", data.get("state_dir")):
            config.state_dir = str(state_dir)

        config.logging = self._parse_logging_config(data.get("logging", {}))
        config.orchestrator = self._parse_orchestrator_config(data.get("orchestrator", {}))
        config.runner = self._parse_runner_config(data.get("runner", {}))
        return config

    def _parse_logging_config(self, logging_data: dict[str, Any]) -> LoggingConfig:
        """Parse logging configuration with environment variable overrides.

        Environment variables take precedence over TOML configuration:
        - AADFLOW_LOG_LEVEL: Log level
        - AADFLOW_LOG_FORMAT: Output format (console, json, structured, rich)
        - AADFLOW_LOG_FILE: Optional file path for log output
        - AADFLOW_LOG_COLOR: Use color output (true/false)
        """
        values = dict(logging_data)

        if env_level := os.getenv("AADFLOW_LOG_LEVEL"):
            values["level"] = env_level.upper()
        if env_format := os.getenv("AADFLOW_LOG_FORMAT"):
            values["format"] = env_format.lower()
        if env_file := os.getenv("AADFLOW_LOG_FILE"):
            values["output_file"] = env_file
        if env_color := os.getenv("AADFLOW_LOG_COLOR"):
            try:
                values["use_color"] = _parse_bool_env(env_color)
            except ValueError as e:
                logger.warning(f"Invalid AADFLOW_LOG_COLOR value: {e}")

        return _build_section(LoggingConfig, values, "logging")

    def _parse_orchestrator_config(self, data: dict[str, Any]) -> OrchestratorConfig:
        values = dict(data)
        for env_name, (field_name, converter) in _ORCHESTRATOR_ENV.items():
            if (raw := os.getenv(env_name)) is None:
                continue
            try:
                values[field_name] = converter(raw)
            except ValueError as e:
                raise ConfigurationError(env_name, f"expected {converter.__name__}: {raw!r}") from e
            logger.debug(f"Overriding orchestrator.{field_name} from env: {raw}")
        return _build_section(OrchestratorConfig, values, "orchestrator")

    def _parse_runner_config(self, data: dict[str, Any]) -> RunnerConfig:
        values = dict(data)
        if env_cmd := os.getenv("AADFLOW_RUNNER_CMD"):
            values["command"] = env_cmd
        if isinstance(values.get("command"), str):
            values["command"] = shlex.split(values["command"])
        return _build_section(RunnerConfig, values, "runner")


def _build_section(cls: type[_T], values: dict[str, Any], section: str) -> _T:
    """Instantiate a config dataclass, rejecting unknown keys."""
    known = {f.name for f in dataclasses.fields(cls)}  # type: ignore[arg-type]
    if unknown := sorted(set(values) - known):
        raise ConfigurationError(section, f"unknown keys: {', '.join(unknown)}")
    try:
        return cls(**values)
    except TypeError as e:
        raise ConfigurationError(section, str(e)) from e


def load_config(path: str | Path | None = None) -> AadflowConfig:
    """Load configuration from TOML file or return defaults.

    Parameters
    ----------
    path : str | Path | None
        Path to configuration file or None to search

    Returns
    -------
    AadflowConfig
        Loaded configuration or defaults if no file found
    """
    try:
        return ConfigLoader().load_from_toml(path)
    except FileNotFoundError:
        if path:
            raise
        logger.info("No configuration file found, using defaults")
        return ConfigLoader()._parse_config({})


def clear_config_cache() -> None:
    """Clear the configuration cache.

    Useful for testing or when configuration files have been modified.
    """
    _load_and_parse_cached.cache_clear()
