"""Shared fixtures for aadflow tests."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from aadflow.kernel.config import OrchestratorConfig, clear_config_cache


@pytest.fixture
def fast_config() -> Callable[..., OrchestratorConfig]:
    """Factory for configs that keep the coordinator loop fast."""

    def make(**overrides: Any) -> OrchestratorConfig:
        values: dict[str, Any] = {
            "max_concurrent": 2,
            "poll_interval": 0.01,
            "retry_backoff": 0.0,
            "session_timeout": 5.0,
        }
        values.update(overrides)
        return OrchestratorConfig(**values)

    return make


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch: pytest.MonkeyPatch):
    """Keep environment overrides from leaking into tests."""
    for name in ("AADFLOW_CONFIG_PATH", "AADFLOW_STATE_DIR", "AADFLOW_RUNNER_CMD"):
        monkeypatch.delenv(name, raising=False)
    clear_config_cache()
    yield
    clear_config_cache()
