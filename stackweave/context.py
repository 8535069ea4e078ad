"""
Run Context for stackweave.

One Context exists per CLI invocation. It is created by
ComponentsService.boot() and passed explicitly to every component
through its ComponentContext; there is no module-level state.

Provides:
- Project identity (root directory, name, stage, persisted service id)
- The state storage shared by all services
- Terminal output (text, outputs rendering, verbose and error lines)
- Per-service progress and outcomes
- Tracking of subprocesses spawned by components, so that shutdown()
  can terminate them
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

import click
import yaml

if TYPE_CHECKING:
    from .executor import Outcome
    from .state.base import StateStorage

logger = logging.getLogger(__name__)

# Seconds to wait for a terminated subprocess before killing it
SUBPROCESS_TERMINATE_TIMEOUT = 5.0


def random_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Context:
    """
    Invocation-scoped context.

    Example:
        context = Context(root=Path("."), stage="dev", project="shop",
                          state_storage=LocalStateStorage(".", "dev"))
        await context.init()
        ...
        await context.shutdown()
    """

    root: Path
    stage: str
    project: str
    state_storage: StateStorage
    verbose: bool = False

    # Populated by init()
    id: str | None = None

    # Per-service bookkeeping
    outcomes: dict[str, "Outcome"] = field(default_factory=dict)
    progress: dict[str, str] = field(default_factory=dict)

    # Terminal writer, swapped in tests
    echo: Callable[[str], None] = field(default=click.echo, repr=False)

    _processes: set[asyncio.subprocess.Process] = field(default_factory=set, repr=False)
    _closed: bool = field(default=False, repr=False)

    async def init(self) -> None:
        """Load (or seed) the persisted service identity."""
        service_state = await self.state_storage.read_service_state({"id": random_id()})
        self.id = service_state["id"]
        logger.debug(f"[context] Project {self.project} stage {self.stage} id {self.id}")

    # =========================================================================
    # Output
    # =========================================================================

    def write_text(self, message: str, namespace: list[str] | None = None) -> None:
        """Write command output (not a log line) to the terminal."""
        prefix = _prefix(namespace)
        for line in message.splitlines() or [""]:
            self.echo(f"{prefix}{line}")

    def log_verbose(self, message: str, namespace: list[str] | None = None) -> None:
        logger.debug(f"{_prefix(namespace)}{message}")
        if self.verbose:
            self.write_text(message, namespace)

    def log_error(self, error: BaseException | str, namespace: list[str] | None = None) -> None:
        logger.error(f"{_prefix(namespace)}{error}")

    def render_outputs(self, outputs: dict[str, Any]) -> None:
        """Render stored outputs as YAML."""
        if not outputs:
            return
        rendered = yaml.safe_dump(outputs, default_flow_style=False, sort_keys=False)
        self.write_text(rendered.rstrip())

    # =========================================================================
    # Progress
    # =========================================================================

    def start_progress(self, service_id: str, text: str) -> None:
        self._set_progress(service_id, "running", text)

    def update_progress(self, service_id: str, text: str) -> None:
        self._set_progress(service_id, "running", text)

    def success_progress(self, service_id: str, text: str) -> None:
        self._set_progress(service_id, "success", text)

    def error_progress(self, service_id: str, error: BaseException | str) -> None:
        self._set_progress(service_id, "error", str(error))

    def skip_progress(self, service_id: str) -> None:
        self._set_progress(service_id, "skipped", "skipped")

    def _set_progress(self, service_id: str, status: str, text: str) -> None:
        self.progress[service_id] = status
        logger.info(f"[{service_id}] {text}")

    # =========================================================================
    # Subprocesses and shutdown
    # =========================================================================

    def track_process(self, process: asyncio.subprocess.Process) -> None:
        self._processes.add(process)

    def untrack_process(self, process: asyncio.subprocess.Process) -> None:
        self._processes.discard(process)

    @property
    def running_processes(self) -> list[asyncio.subprocess.Process]:
        return [p for p in self._processes if p.returncode is None]

    async def shutdown(self) -> None:
        """
        Terminate tracked subprocesses and flush pending state writes.

        Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True

        for process in self.running_processes:
            logger.info(f"[context] Terminating subprocess {process.pid}")
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=SUBPROCESS_TERMINATE_TIMEOUT)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                logger.warning(f"[context] Subprocess {process.pid} did not exit, killing it")
                process.kill()
                await process.wait()
        self._processes.clear()

        await self.state_storage.close()
        logger.debug("[context] Shutdown complete")


def _prefix(namespace: list[str] | None) -> str:
    return "".join(f"[{name}] " for name in namespace or [])
