"""Single-slot checkpoint for resumable indexing runs."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from .errors import CheckpointError
from .models import Checkpoint

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Holds at most one checkpoint, stored as a JSON file.

    Saving replaces the previous checkpoint atomically; only the latest one
    is ever needed to resume.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def save(self, checkpoint: Checkpoint) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".checkpoint-")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(checkpoint.model_dump_json(indent=2))
            os.replace(tmp, self.path)
        except OSError as e:
            raise CheckpointError(f"Could not save checkpoint to {self.path}: {e}") from e

    def load(self) -> Checkpoint | None:
        if not self.path.exists():
            return None
        try:
            return Checkpoint.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError):
            logger.warning("Could not load checkpoint %s, starting fresh", self.path, exc_info=True)
            return None

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
