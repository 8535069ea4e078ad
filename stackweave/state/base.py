"""
State Storage.

Persists one record per stage:

    {
        "service": {"id": "..."},
        "components": {
            "<service id>": {"state": {...}, "outputs": {...}},
        },
    }

Consistency model:
    - Read-through cache: the backing store is read at most once per
      process. We assume no other process mutates the same record while
      we run; there is no locking across processes.
    - Serialized writes: every write snapshots the whole record and is
      pushed through a single-writer FIFO gate, so concurrent graph nodes
      never interleave uploads of the same backing object.
    - A missing record reads as empty. Any other failure is a StorageError.

Backends implement _load / _save / _delete only.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from typing import Any

logger = logging.getLogger(__name__)


class StateStorage(ABC):
    """
    Base class for state storage backends.

    Subclasses must implement:
    - name: Backend identifier for logging
    - _load(): Return the stored record, or None if it does not exist
    - _save(record): Persist the whole record
    - _delete(): Remove the record
    """

    def __init__(self) -> None:
        self._state: dict[str, Any] | None = None
        self._read_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._write_count = 0

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend identifier."""
        ...

    @abstractmethod
    async def _load(self) -> dict[str, Any] | None:
        ...

    @abstractmethod
    async def _save(self, record: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def _delete(self) -> None:
        ...

    # =========================================================================
    # Record access
    # =========================================================================

    async def read_state(self) -> dict[str, Any]:
        """Load the record once, then serve it from memory."""
        if self._state is None:
            async with self._read_lock:
                if self._state is None:
                    loaded = await self._load()
                    self._state = loaded if loaded is not None else {}
                    logger.debug(
                        f"[state] Loaded {self.name} state "
                        f"({len(self._state.get('components', {}))} components)"
                    )
        return self._state

    async def write_state(self) -> None:
        """Persist a snapshot of the cached record."""
        state = await self.read_state()
        snapshot = copy.deepcopy(state)
        async with self._write_lock:
            await self._save(snapshot)
            self._write_count += 1

    async def flush(self) -> None:
        """Wait for any in-flight write to finish."""
        async with self._write_lock:
            pass

    async def remove_state(self) -> None:
        """Delete the whole record from the backend."""
        async with self._write_lock:
            await self._delete()
        self._state = {}
        logger.info(f"[state] Removed {self.name} state")

    @property
    def write_count(self) -> int:
        """Number of completed writes, for diagnostics."""
        return self._write_count

    # =========================================================================
    # Service state
    # =========================================================================

    async def read_service_state(self, default: dict[str, Any]) -> dict[str, Any]:
        """Return the service-level record, seeding and persisting the default."""
        state = await self.read_state()
        if "service" not in state:
            state["service"] = copy.deepcopy(default)
            await self.write_state()
        return copy.deepcopy(state["service"])

    # =========================================================================
    # Component state and outputs
    # =========================================================================

    async def read_component_state(self, component_id: str) -> dict[str, Any]:
        record = await self._read_component(component_id)
        return copy.deepcopy(record.get("state") or {})

    async def write_component_state(self, component_id: str, component_state: dict[str, Any]) -> None:
        state = await self.read_state()
        components = state.setdefault("components", {})
        components.setdefault(component_id, {})["state"] = copy.deepcopy(component_state)
        await self.write_state()

    async def read_component_outputs(self, component_id: str) -> dict[str, Any]:
        record = await self._read_component(component_id)
        return copy.deepcopy(record.get("outputs") or {})

    async def write_component_outputs(
        self, component_id: str, component_outputs: dict[str, Any]
    ) -> None:
        state = await self.read_state()
        components = state.setdefault("components", {})
        components.setdefault(component_id, {})["outputs"] = copy.deepcopy(component_outputs)
        await self.write_state()

    async def read_all_outputs(self) -> dict[str, dict[str, Any]]:
        """Outputs of every service, keyed by service id."""
        state = await self.read_state()
        return {
            component_id: copy.deepcopy(record.get("outputs") or {})
            for component_id, record in state.get("components", {}).items()
        }

    async def _read_component(self, component_id: str) -> dict[str, Any]:
        state = await self.read_state()
        return state.get("components", {}).get(component_id) or {}

    async def close(self) -> None:
        """Release backend resources. Pending writes are flushed first."""
        await self.flush()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name='{self.name}')"
