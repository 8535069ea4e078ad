"""
Local state storage.

Keeps the record in a JSON file next to the project:

    <root>/.stackweave/state.<stage>.json

File access runs in a worker thread through asyncio.to_thread.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

from stackweave.errors import StorageError

from .base import StateStorage

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = ".stackweave"


class LocalStateStorage(StateStorage):
    """State storage backed by a JSON file per stage."""

    def __init__(self, root: str | Path, stage: str, state_dir: str = DEFAULT_STATE_DIR):
        super().__init__()
        self.stage = stage
        self.state_root = Path(root) / state_dir

    @property
    def name(self) -> str:
        return f"local:{self.stage}"

    @property
    def state_file(self) -> Path:
        return self.state_root / f"state.{self.stage}.json"

    async def _load(self) -> dict[str, Any] | None:
        path = self.state_file
        try:
            record = await asyncio.to_thread(self._read_file, path)
        except FileNotFoundError:
            logger.debug(f"[state] No state file at {path}, starting empty")
            return None
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(
                f"Could not read state from {path}: {e}", "CANNOT_READ_LOCAL_STATE"
            ) from e

        if not isinstance(record, dict):
            raise StorageError(
                f"Could not read state from {path}: expected a JSON object",
                "CANNOT_READ_LOCAL_STATE",
            )
        return record

    async def _save(self, record: dict[str, Any]) -> None:
        path = self.state_file
        try:
            await asyncio.to_thread(self._write_file, path, record)
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(
                f"Could not update state in {path}: {e}", "CANNOT_UPDATE_LOCAL_STATE"
            ) from e

    async def _delete(self) -> None:
        path = self.state_file
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as e:
            raise StorageError(
                f"Could not remove state at {path}: {e}", "CANNOT_REMOVE_LOCAL_STATE"
            ) from e

    # Blocking helpers, run in a worker thread

    @staticmethod
    def _read_file(path: Path) -> Any:
        with path.open() as f:
            return json.load(f)

    @staticmethod
    def _write_file(path: Path, record: dict[str, Any]) -> None:
        # Replaced atomically through a sibling temporary file
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        with tmp_path.open("w") as f:
            json.dump(record, f, indent=2, sort_keys=True)
        os.replace(tmp_path, path)
