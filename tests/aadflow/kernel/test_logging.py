"""Tests for logging configuration."""

from __future__ import annotations

from pathlib import Path

import pytest
from loguru import logger

from aadflow.kernel.logging import (
    configure_logging,
    current_settings,
    get_logger,
    get_run_id,
    reset_run_id,
    set_run_id,
)


@pytest.fixture(autouse=True)
def _restore_logging():
    yield
    configure_logging(level="WARNING", format="console", force_reconfigure=True)


class TestRunId:
    """Tests for tagging records with the run id."""

    def test_default_outside_a_run(self) -> None:
        assert get_run_id() == "-"

    def test_set_and_reset(self) -> None:
        token = set_run_id("run-1")
        assert get_run_id() == "run-1"

        reset_run_id(token)
        assert get_run_id() == "-"

    def test_records_carry_run_id(self) -> None:
        configure_logging(level="DEBUG", format="console", force_reconfigure=True)
        seen: list[str] = []
        handler_id = logger.add(lambda m: seen.append(m.record["extra"]["run"]), level="DEBUG")
        token = set_run_id("run-42")
        try:
            get_logger("tests.logging").info("hello")
        finally:
            reset_run_id(token)
            logger.remove(handler_id)

        assert seen == ["run-42"]


class TestConfigureLogging:
    """Tests for handler installation."""

    def test_idempotent(self) -> None:
        configure_logging(level="INFO", format="json", force_reconfigure=True)
        first = current_settings()

        configure_logging(level="INFO", format="json")

        assert current_settings() == first
        assert first is not None and first["format"] == "json"

    @pytest.mark.parametrize("fmt", ["console", "json", "structured", "rich"])
    def test_every_format_installs(self, fmt: str) -> None:
        configure_logging(level="INFO", format=fmt, force_reconfigure=True)  # type: ignore

        get_logger("tests.logging").info("format {fmt}", fmt=fmt)

        assert current_settings()["format"] == fmt  # type: ignore[index]

    def test_output_file_gets_json_lines(self, tmp_path: Path) -> None:
        path = tmp_path / "logs" / "aadflow.log"
        configure_logging(level="INFO", format="console", output_file=path)

        get_logger("tests.logging").info("to file")
        logger.complete()

        assert '"to file"' in path.read_text()
