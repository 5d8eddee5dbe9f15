"""CheckpointStore component for orchestrator state persistence.

Checkpoints are versioned JSON documents written atomically: the new content
goes to a temporary file in the same directory, is flushed and fsynced, and
then replaces the live file with ``os.replace``. A crash therefore leaves
either the old or the new checkpoint, never a torn one.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from aadflow.kernel.exceptions import CheckpointCorruptionError
from aadflow.kernel.logging import get_logger
from aadflow.kernel.orchestration.models import CHECKPOINT_VERSION, Checkpoint, OrchestratorState

__all__ = ["CheckpointStore"]

logger = get_logger(__name__)

STATE_FILE_NAME = "state.json"


class CheckpointStore:
    """Persists orchestrator state after every transition.

    Parameters
    ----------
    state_dir : str | Path
        Directory holding ``state.json`` and its backups
    backup_count : int, default=3
        Rotated backups kept as ``state.json.1`` (newest) to
        ``state.json.<backup_count>``

    Examples
    --------
    Example usage::

        store = CheckpointStore(".aad/orchestration")
        store.persist(state)
        restored = store.load().state
    """

    def __init__(self, state_dir: str | Path, backup_count: int = 3) -> None:
        self.state_dir = Path(state_dir)
        self.backup_count = backup_count
        self.path = self.state_dir / STATE_FILE_NAME

    def exists(self) -> bool:
        return self.path.exists()

    def backup_path(self, index: int) -> Path:
        return self.path.with_name(f"{self.path.name}.{index}")

    def persist(self, state: OrchestratorState) -> Checkpoint:
        """Atomically write a checkpoint of ``state``.

        Returns
        -------
        Checkpoint
            The immutable snapshot that was written
        """
        checkpoint = Checkpoint.of(state)
        self.state_dir.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.state_dir
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(checkpoint.model_dump_json(indent=2))
                f.flush()
                os.fsync(f.fileno())
            self._rotate_backups()
            os.replace(tmp_path, self.path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

        self._fsync_dir()
        logger.debug(
            "Checkpoint written to {path} ({progress}% done)",
            path=self.path,
            progress=checkpoint.progress_percent,
        )
        return checkpoint

    def load(self) -> Checkpoint:
        """Read and validate the live checkpoint.

        Raises
        ------
        CheckpointCorruptionError
            If the file is missing, unreadable, partial, or written by an
            incompatible version
        """
        return self._load_path(self.path)

    def load_backup(self, index: int = 1) -> Checkpoint:
        """Read one of the rotated backups (1 is the newest)."""
        return self._load_path(self.backup_path(index))

    def _load_path(self, path: Path) -> Checkpoint:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise CheckpointCorruptionError(str(path), "file does not exist") from e
        except (OSError, UnicodeDecodeError) as e:
            raise CheckpointCorruptionError(str(path), f"unreadable: {e}") from e

        try:
            document = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CheckpointCorruptionError(str(path), f"invalid JSON: {e}") from e

        if not isinstance(document, dict):
            raise CheckpointCorruptionError(str(path), "top level is not an object")
        version = document.get("version")
        if version != CHECKPOINT_VERSION:
            raise CheckpointCorruptionError(
                str(path), f"unsupported version {version!r}, expected {CHECKPOINT_VERSION}"
            )

        try:
            checkpoint = Checkpoint.model_validate(document)
        except PydanticValidationError as e:
            raise CheckpointCorruptionError(str(path), f"invalid structure: {e}") from e

        logger.info(
            "Loaded checkpoint from {path} written at {created}",
            path=path,
            created=checkpoint.created_at.isoformat(),
        )
        return checkpoint

    def _rotate_backups(self) -> None:
        if self.backup_count <= 0 or not self.path.exists():
            return
        for index in range(self.backup_count - 1, 0, -1):
            older = self.backup_path(index)
            if older.exists():
                os.replace(older, self.backup_path(index + 1))
        # Hard link keeps the live file in place until the final replace
        newest = self.backup_path(1)
        newest.unlink(missing_ok=True)
        try:
            os.link(self.path, newest)
        except OSError:
            newest.write_bytes(self.path.read_bytes())

    def _fsync_dir(self) -> None:
        if os.name != "posix":
            return
        dir_fd = os.open(self.state_dir, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
