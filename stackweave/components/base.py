"""
Component Base Classes.

A component is the implementation behind a service: it knows how to
deploy, remove and describe one kind of infrastructure. The orchestrator
never looks inside; it only calls the lifecycle methods below.

This module defines:
- ComponentContext: per-service view of the run context (state, outputs,
  logging and progress, all namespaced by the service id)
- Component: base class every component extends

Lifecycle methods all take a single `options` mapping:

    deploy(options)           required
    remove(options)           required
    info(options)             required
    refresh_outputs(options)  required
    logs(options)             optional
    package(options)          optional

Component-specific subcommands go in the `commands` table, mapping a
command name to an async handler taking the same `options` mapping.

Usage:
    class Queue(Component):
        input_model = QueueInputs

        async def deploy(self, options):
            self.start_progress("deploying")
            arn = await create_queue(self.inputs["name"])
            await self.update_outputs({"QueueArn": arn})
            self.success_progress("deployed")
        ...
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Awaitable, Callable, ClassVar

from pydantic import BaseModel

if TYPE_CHECKING:
    from stackweave.context import Context

logger = logging.getLogger(__name__)

CommandHandler = Callable[[dict[str, Any]], Awaitable[Any]]

# Commands every component answers, mapped to their method names
LIFECYCLE_METHODS = {
    "deploy": "deploy",
    "remove": "remove",
    "info": "info",
    "logs": "logs",
    "package": "package",
    "refresh-outputs": "refresh_outputs",
}


class ComponentContext:
    """
    What a component sees of the run.

    Keeps the run Context private so the surface offered to components
    stays small: state and outputs of its own service, plus output and
    progress helpers that prefix every line with the service id.
    """

    def __init__(self, service_id: str, context: "Context"):
        self.service_id = service_id
        self.stage = context.stage
        self.root = context.root
        self.project = context.project
        self.state: dict[str, Any] = {}
        self.outputs: dict[str, Any] = {}
        self._context = context

    async def init(self) -> None:
        """Load this service's state and outputs from storage."""
        storage = self._context.state_storage
        self.state = await storage.read_component_state(self.service_id)
        self.outputs = await storage.read_component_outputs(self.service_id)

    async def save(self) -> None:
        await self._context.state_storage.write_component_state(self.service_id, self.state)

    async def update_outputs(self, outputs: dict[str, Any]) -> None:
        self.outputs = outputs
        await self._context.state_storage.write_component_outputs(self.service_id, self.outputs)

    @property
    def verbose(self) -> bool:
        return self._context.verbose

    def write_text(self, message: str, namespace: list[str] | None = None) -> None:
        self._context.write_text(message, [self.service_id, *(namespace or [])])

    def log_verbose(self, message: str, namespace: list[str] | None = None) -> None:
        self._context.log_verbose(message, [self.service_id, *(namespace or [])])

    def log_error(self, error: BaseException | str, namespace: list[str] | None = None) -> None:
        self._context.log_error(error, [self.service_id, *(namespace or [])])

    def start_progress(self, text: str) -> None:
        self._context.start_progress(self.service_id, text)

    def update_progress(self, text: str) -> None:
        self._context.update_progress(self.service_id, text)

    def success_progress(self, text: str) -> None:
        self._context.success_progress(self.service_id, text)

    def track_process(self, process: Any) -> None:
        self._context.track_process(process)

    def untrack_process(self, process: Any) -> None:
        self._context.untrack_process(process)


class Component(ABC):
    """
    Base class for components.

    Subclasses must implement:
    - deploy(options)
    - remove(options)
    - info(options)
    - refresh_outputs(options)

    Optional:
    - logs(options), package(options)
    - input_model: pydantic model the service inputs are validated against
    - commands: extra command handlers, keyed by command name
    """

    # Registry identifier; defaults to the class name
    type_name: ClassVar[str | None] = None

    # Validated by the loader before the component is constructed
    input_model: ClassVar[type[BaseModel] | None] = None

    def __init__(self, service_id: str, context: ComponentContext, inputs: dict[str, Any]):
        if service_id == "Context":
            raise ValueError('You cannot use "Context" as a service name. It is reserved.')
        self.id = service_id
        self.context = context
        self.inputs = inputs
        self.commands: dict[str, CommandHandler] = {}

    async def init(self) -> None:
        await self.context.init()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @abstractmethod
    async def deploy(self, options: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def remove(self, options: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def info(self, options: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def refresh_outputs(self, options: dict[str, Any]) -> None:
        ...

    def get_method(self, command: str) -> CommandHandler | None:
        """Lifecycle method for a command name, or None if not implemented."""
        method_name = LIFECYCLE_METHODS.get(command)
        if method_name is None:
            return None
        method = getattr(self, method_name, None)
        return method if callable(method) else None

    # =========================================================================
    # State and outputs (delegated to the component context)
    # =========================================================================

    @property
    def stage(self) -> str:
        return self.context.stage

    @property
    def state(self) -> dict[str, Any]:
        return self.context.state

    @state.setter
    def state(self, value: dict[str, Any]) -> None:
        self.context.state = value

    @property
    def outputs(self) -> dict[str, Any]:
        return self.context.outputs

    async def save(self) -> None:
        await self.context.save()

    async def update_outputs(self, outputs: dict[str, Any]) -> None:
        await self.context.update_outputs(outputs)

    def write_text(self, message: str, namespace: list[str] | None = None) -> None:
        self.context.write_text(message, namespace)

    def log_verbose(self, message: str, namespace: list[str] | None = None) -> None:
        self.context.log_verbose(message, namespace)

    def log_error(self, error: BaseException | str, namespace: list[str] | None = None) -> None:
        self.context.log_error(error, namespace)

    def start_progress(self, text: str) -> None:
        self.context.start_progress(text)

    def update_progress(self, text: str) -> None:
        self.context.update_progress(text)

    def success_progress(self, text: str) -> None:
        self.context.success_progress(text)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(id='{self.id}')"
