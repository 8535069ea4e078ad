"""
Components Service.

Top-level facade of the orchestrator:

    service = ComponentsService(root=".", stage="prod")
    await service.boot()
    try:
        await service.invoke_lifecycle("deploy")
        await service.invoke_single_service("api", "print", {})
    finally:
        await service.shutdown()

    exit_code = 1 if service.has_failures else 0

boot() loads the project document, resolves ${env:...} and ${sw:stage},
builds and validates the dependency graph, and opens the state store.
Nothing runs before all of that has succeeded.

Command dispatch:
- deploy, package       graph order (dependencies first)
- remove                reverse graph order, then delete the state record
                        when every service was removed
- info, logs,
  refresh-outputs       instantiate in graph order, then run all at once
- outputs               print stored outputs
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from .components.base import LIFECYCLE_METHODS, Component
from .components.framework import FrameworkComponent
from .components.loader import create_default_registry, load_component
from .components.registry import ComponentRegistry
from .config.loader import load_configuration
from .config.schemas import ComposeConfiguration
from .context import Context
from .errors import (
    ComponentExecutionError,
    NothingDeployedError,
    StorageError,
    UnknownCommandError,
    UnknownServiceError,
    format_error,
    is_user_error,
)
from .executor import ExecutionResult, GraphExecutor, Outcome
from .graph import ServiceGraph, build_service_graph
from .state.base import StateStorage
from .state.factory import create_state_storage
from .state.local import DEFAULT_STATE_DIR
from .variables import resolve_references

logger = logging.getLogger(__name__)

GRAPH_COMMANDS = ("deploy", "package", "remove")
PARALLEL_COMMANDS = ("info", "logs", "refresh-outputs")
GLOBAL_COMMANDS = (*GRAPH_COMMANDS, *PARALLEL_COMMANDS, "outputs")

_PROGRESS_TITLES = {
    "deploy": "Deploying to stage {stage}",
    "package": "Packaging for stage {stage}",
    "remove": "Removing stage {stage} of {name}",
}


class ComponentsService:
    """
    Orchestrates lifecycle commands across the services of a project.

    Collaborators can be injected for tests: a parsed `configuration`,
    a `state_storage`, or a `registry` with extra component types.
    """

    def __init__(
        self,
        root: str | Path = ".",
        stage: str = "dev",
        *,
        verbose: bool = False,
        max_concurrency: int | None = None,
        configuration: ComposeConfiguration | None = None,
        configuration_path: str | Path | None = None,
        state_storage: StateStorage | None = None,
        registry: ComponentRegistry | None = None,
        state_dir: str = DEFAULT_STATE_DIR,
        environ: Mapping[str, str] | None = None,
    ):
        self.root = Path(root).resolve()
        self.stage = stage
        self.verbose = verbose
        self.configuration = configuration
        self.registry = registry or create_default_registry()
        self.executor = GraphExecutor(max_concurrency=max_concurrency)

        self._configuration_path = configuration_path
        self._state_storage = state_storage
        self._state_dir = state_dir
        self._environ = environ

        self._graph: ServiceGraph | None = None
        self._context: Context | None = None

    # =========================================================================
    # Boot and shutdown
    # =========================================================================

    async def boot(self) -> None:
        """
        Load configuration, build the graph and open the state store.

        Raises:
            InvalidConfigurationError, InvalidReferenceError,
            CircularDependencyError, DuplicateServicePathError, ...:
                anything wrong with the project; nothing has run yet
        """
        if self.configuration is None:
            self.configuration = load_configuration(
                self.root, self.stage, path=self._configuration_path, environ=self._environ
            )

        self._graph = build_service_graph(self.configuration.services)

        storage = self._state_storage or create_state_storage(
            self.configuration.state,
            root=self.root,
            project=self.configuration.name,
            stage=self.stage,
            state_dir=self._state_dir,
        )
        self._context = Context(
            root=self.root,
            stage=self.stage,
            project=self.configuration.name,
            state_storage=storage,
            verbose=self.verbose,
        )
        await self._context.init()
        logger.info(
            f"[service] Booted '{self.configuration.name}' stage={self.stage} "
            f"services={len(self._graph)}"
        )

    async def shutdown(self) -> None:
        """Terminate child processes and flush state. Safe to call twice."""
        if self._context is not None:
            await self._context.shutdown()

    @property
    def context(self) -> Context:
        if self._context is None:
            raise RuntimeError("ComponentsService.boot() must be called first")
        return self._context

    @property
    def graph(self) -> ServiceGraph:
        if self._graph is None:
            raise RuntimeError("ComponentsService.boot() must be called first")
        return self._graph

    # =========================================================================
    # Outcomes
    # =========================================================================

    @property
    def outcomes(self) -> dict[str, Outcome]:
        return dict(self._context.outcomes) if self._context else {}

    @property
    def has_failures(self) -> bool:
        return any(outcome is Outcome.FAILURE for outcome in self.outcomes.values())

    def summary(self) -> dict[str, int]:
        counts = {outcome.value: 0 for outcome in Outcome}
        for outcome in self.outcomes.values():
            counts[outcome.value] += 1
        return counts

    # =========================================================================
    # Global commands
    # =========================================================================

    async def invoke_lifecycle(
        self, method: str, options: dict[str, Any] | None = None
    ) -> ExecutionResult | None:
        """
        Run a command across every service.

        Returns the executor result for graph-ordered commands.

        Raises:
            UnknownCommandError: `method` is not a global command
            NothingDeployedError: `outputs` with nothing deployed
            StorageError: State could not be read or written
        """
        options = dict(options or {})

        if method in GRAPH_COMMANDS:
            result = await self._execute_graph(method, options, reverse=method == "remove")
            if method == "remove" and all(
                outcome is Outcome.SUCCESS for outcome in self.outcomes.values()
            ):
                await self.context.state_storage.remove_state()
            return result

        if method in PARALLEL_COMMANDS:
            await self._invoke_in_parallel(method, options)
            return None

        if method == "outputs":
            await self._render_outputs()
            return None

        raise UnknownCommandError(None, method)

    async def _execute_graph(
        self, method: str, options: dict[str, Any], *, reverse: bool
    ) -> ExecutionResult:
        context = self.context
        title = _PROGRESS_TITLES[method].format(stage=self.stage, name=context.project)
        context.write_text(title)

        for service_id in self.graph:
            context.progress[service_id] = "waiting"

        async def run(service_id: str) -> None:
            component = await self._instantiate(service_id)
            handler = component.get_method(method)
            if handler is None:
                raise ComponentExecutionError(
                    service_id, f'Missing method "{method}" on service "{service_id}"'
                )
            await handler(options)

        try:
            result = await self.executor.execute(self.graph, run, reverse=reverse)
            self._record(result)
        except StorageError as e:
            if e.partial_result is not None:
                self._record(e.partial_result)
            raise
        finally:
            # Anything that never ran (pruned, or aborted by a storage error)
            for service_id in self.graph:
                if service_id not in context.outcomes:
                    context.outcomes[service_id] = Outcome.SKIP
                    context.skip_progress(service_id)
        return result

    async def _invoke_in_parallel(self, method: str, options: dict[str, Any]) -> None:
        await self._instantiate_all(list(self.graph))
        logger.debug(f'[service] Executing "{method}" across all services in parallel')

        async def run(service_id: str) -> None:
            component = self.graph.node(service_id).instance
            handler = component.get_method(method)
            if handler is None:
                self.context.outcomes[service_id] = Outcome.SKIP
                return
            await self._invoke(service_id, handler, options)

        # Let every service settle before a storage error propagates
        results = await asyncio.gather(
            *(run(service_id) for service_id in self.graph), return_exceptions=True
        )
        for error in results:
            if isinstance(error, BaseException):
                raise error

    async def _render_outputs(self, service_id: str | None = None) -> None:
        storage = self.context.state_storage
        if service_id is not None:
            self.context.render_outputs(await storage.read_component_outputs(service_id))
            return

        outputs = {
            other: values
            for other, values in (await storage.read_all_outputs()).items()
            if values
        }
        if not outputs:
            raise NothingDeployedError(self.stage)
        self.context.render_outputs(outputs)

    # =========================================================================
    # Single-service commands
    # =========================================================================

    async def invoke_single_service(
        self, service_id: str, command: str, options: dict[str, Any] | None = None
    ) -> Outcome:
        """
        Run one command on one service.

        The service's dependency chain is instantiated first so that its
        references resolve. Lifecycle commands call the component method;
        anything else goes to the component's `commands` table, and the
        framework component forwards unknown commands to its CLI.

        Raises:
            UnknownServiceError: No such service
            UnknownCommandError: The component has no handler for `command`
        """
        options = dict(options or {})
        if service_id not in self.graph:
            raise UnknownServiceError(service_id, list(self.graph))

        if command == "outputs":
            await self._render_outputs(service_id)
            self.context.outcomes[service_id] = Outcome.SUCCESS
            return Outcome.SUCCESS

        chain = [*self.graph.transitive_dependencies(service_id), service_id]
        await self._instantiate_all(chain)

        component = self.graph.node(service_id).instance
        component.log_verbose(f'Invoking "{command}" on service "{service_id}"')

        if command in LIFECYCLE_METHODS:
            handler = component.get_method(command)
        elif command in component.commands:
            handler = component.commands[command]
        elif isinstance(component, FrameworkComponent):
            async def handler(opts: dict[str, Any]) -> Any:
                return await component.command(command, opts)
        else:
            handler = None

        if handler is None:
            raise UnknownCommandError(service_id, command)

        return await self._invoke(service_id, handler, options)

    async def _invoke(self, service_id: str, handler: Any, options: dict[str, Any]) -> Outcome:
        """Call a handler, recording its outcome. Storage errors propagate."""
        try:
            await handler(options)
        except StorageError as e:
            self._report_failure(service_id, e)
            self.context.outcomes[service_id] = Outcome.FAILURE
            raise
        except Exception as e:
            self._report_failure(service_id, e)
            self.context.outcomes[service_id] = Outcome.FAILURE
            return Outcome.FAILURE
        self.context.outcomes[service_id] = Outcome.SUCCESS
        return Outcome.SUCCESS

    # =========================================================================
    # Instantiation
    # =========================================================================

    async def _instantiate(self, service_id: str) -> Component:
        """
        Load the component of a service with its references resolved
        against the outputs stored so far.
        """
        node = self.graph.node(service_id)
        outputs = await self.context.state_storage.read_all_outputs()
        inputs = resolve_references(
            node.definition.inputs, outputs, max_passes=len(self.graph) + 1
        )
        component = await load_component(
            self.context, service_id, node.definition.component, inputs, registry=self.registry
        )
        node.instance = component
        return component

    async def _instantiate_all(self, service_ids: list[str]) -> None:
        """Instantiate services layer by layer so every reference can resolve."""
        subgraph = self.graph.subgraph(service_ids)
        for layer in subgraph.layers():
            await asyncio.gather(*(self._instantiate(service_id) for service_id in layer))

    # =========================================================================
    # Reporting
    # =========================================================================

    def _record(self, result: ExecutionResult) -> None:
        context = self.context
        for service_id, node_result in result.results.items():
            context.outcomes[service_id] = node_result.outcome
            if node_result.outcome is Outcome.FAILURE and node_result.error is not None:
                self._report_failure(service_id, node_result.error)
            elif node_result.outcome is Outcome.SKIP:
                context.skip_progress(service_id)

    def _report_failure(self, service_id: str, error: BaseException) -> None:
        context = self.context
        context.error_progress(service_id, error)
        if not is_user_error(error):
            logger.debug(f"[service] Unexpected error in {service_id}", exc_info=error)
        context.log_error(format_error(error, verbose=context.verbose), [service_id])

    def __repr__(self) -> str:
        name = self.configuration.name if self.configuration else None
        return f"ComponentsService(project={name!r}, stage={self.stage!r})"
