"""
In-memory state storage.

Used by tests and dry runs. The "backing store" is a plain dict that
can be shared between two storage instances to simulate a fresh
process reading the same record.
"""

from __future__ import annotations

import copy
from typing import Any

from .base import StateStorage


class MemoryStateStorage(StateStorage):
    """
    State storage backed by a dict.

    Usage:
        backend: dict = {}
        storage = MemoryStateStorage(backend, stage="dev")
        await storage.write_component_outputs("api", {"url": "..."})

        # A second instance sees the persisted record, not the cache
        fresh = MemoryStateStorage(backend, stage="dev")
        await fresh.read_component_outputs("api")
    """

    def __init__(self, backend: dict[str, Any] | None = None, stage: str = "dev"):
        super().__init__()
        self.backend = backend if backend is not None else {}
        self.stage = stage
        self.load_count = 0

    @property
    def name(self) -> str:
        return f"memory:{self.stage}"

    async def _load(self) -> dict[str, Any] | None:
        self.load_count += 1
        record = self.backend.get(self.stage)
        return copy.deepcopy(record) if record is not None else None

    async def _save(self, record: dict[str, Any]) -> None:
        self.backend[self.stage] = copy.deepcopy(record)

    async def _delete(self) -> None:
        self.backend.pop(self.stage, None)
