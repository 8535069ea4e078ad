"""
Graph Executor for stackweave.

Runs a per-service callback over a ServiceGraph, layer by layer
("peel the sinks"):

1. Ready = every pending node whose dependencies all succeeded
2. Start every ready node at once, then wait for all of them (barrier)
3. Release dependents of the nodes that succeeded; repeat

Execution Model:
- Forward: dependencies run before their dependents (deploy, package)
- Reverse: dependents run before their dependencies (remove)
- A failing node never stops its siblings; its dependents are pruned and
  recorded as skipped
- An optional semaphore caps how many callbacks run at the same time,
  even inside one layer
- Storage errors abort the whole run once the current layer has settled

The graph is never mutated. Progress lives in a per-run counter of
remaining dependencies for each node.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from .errors import GraphInvariantError, StorageError, is_user_error
from .graph import ServiceGraph

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    """Result of one service's invocation."""

    SUCCESS = "success"
    FAILURE = "failure"
    SKIP = "skip"


NodeCallback = Callable[[str], Awaitable[Any]]


@dataclass
class NodeResult:
    """Outcome of one node, recorded exactly once per run."""

    service_id: str
    outcome: Outcome
    error: BaseException | None = None
    layer: int | None = None
    duration_ms: float = 0.0

    @property
    def unexpected(self) -> bool:
        """True when the node failed with an error that is not a user error."""
        return self.error is not None and not is_user_error(self.error)


@dataclass
class ExecutionResult:
    """Aggregate result of one graph execution."""

    results: dict[str, NodeResult] = field(default_factory=dict)
    layers: list[list[str]] = field(default_factory=list)

    @property
    def outcomes(self) -> dict[str, Outcome]:
        return {service_id: result.outcome for service_id, result in self.results.items()}

    @property
    def success(self) -> bool:
        return not self.failures

    @property
    def failures(self) -> list[NodeResult]:
        return [r for r in self.results.values() if r.outcome is Outcome.FAILURE]

    def record(self, result: NodeResult) -> None:
        if result.service_id in self.results:
            raise GraphInvariantError(
                f'Outcome of service "{result.service_id}" recorded twice'
            )
        self.results[result.service_id] = result


class GraphExecutor:
    """
    Layered concurrent executor.

    The callback receives a service id and does the actual work. It may
    return an Outcome (for instance Outcome.SKIP when the service has
    nothing to do); any other return value counts as success. Raising
    marks the node as failed.

    Example:
        executor = GraphExecutor(max_concurrency=4)

        async def deploy(service_id: str) -> None:
            ...

        result = await executor.execute(graph, deploy)
        if not result.success:
            ...
    """

    def __init__(self, max_concurrency: int | None = None):
        if max_concurrency is not None and max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency

    async def execute(
        self,
        graph: ServiceGraph,
        run: NodeCallback,
        *,
        reverse: bool = False,
    ) -> ExecutionResult:
        """
        Execute `run` on every node of the graph.

        Args:
            graph: Validated, acyclic service graph
            run: Async callback invoked with each service id
            reverse: Run dependents before their dependencies

        Returns:
            ExecutionResult with exactly one NodeResult per node

        Raises:
            GraphInvariantError: Nodes remain but none can run
            StorageError: A node failed to read or write state. The nodes
                recorded before the abort are attached as `partial_result`
        """
        result = ExecutionResult()
        semaphore = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None

        # Edges to wait on before a node may run
        def blockers(node_id: str) -> tuple[str, ...]:
            return graph.dependents_of(node_id) if reverse else graph.dependencies_of(node_id)

        def released_by(node_id: str) -> tuple[str, ...]:
            return graph.dependencies_of(node_id) if reverse else graph.dependents_of(node_id)

        remaining = {node_id: len(blockers(node_id)) for node_id in graph}
        pending = list(graph)
        direction = "reverse" if reverse else "forward"

        logger.info(
            f"[executor] Starting {direction} execution of {len(graph)} services"
            + (f" (max_concurrency={self.max_concurrency})" if semaphore else "")
        )

        while pending:
            ready = [node_id for node_id in pending if remaining[node_id] == 0]
            if not ready:
                raise GraphInvariantError(
                    f"No service is ready to run but {len(pending)} remain: {', '.join(pending)}"
                )

            layer_index = len(result.layers)
            result.layers.append(ready)
            logger.debug(f"[executor] Layer {layer_index}: {ready}")

            tasks = [
                asyncio.create_task(self._run_node(node_id, run, semaphore, layer_index))
                for node_id in ready
            ]
            layer_results: list[NodeResult] = await asyncio.gather(*tasks)

            ready_set = set(ready)
            pending = [node_id for node_id in pending if node_id not in ready_set]

            for node_result in layer_results:
                result.record(node_result)

            storage_failure = next(
                (r.error for r in layer_results if isinstance(r.error, StorageError)), None
            )
            if storage_failure is not None:
                logger.error(f"[executor] Aborting after storage failure: {storage_failure}")
                storage_failure.partial_result = result
                raise storage_failure

            for node_result in layer_results:
                if node_result.outcome is Outcome.FAILURE:
                    pruned = self._prune(graph, node_result.service_id, reverse, pending)
                    for node_id in pruned:
                        result.record(NodeResult(service_id=node_id, outcome=Outcome.SKIP))
                    if pruned:
                        logger.info(
                            f"[executor] Skipping {pruned} after "
                            f'"{node_result.service_id}" failed'
                        )
                    pruned_set = set(pruned)
                    pending = [node_id for node_id in pending if node_id not in pruned_set]
                    continue

                for other in released_by(node_result.service_id):
                    remaining[other] -= 1

        logger.info(
            "[executor] Finished: "
            + ", ".join(
                f"{outcome.value}={count}"
                for outcome, count in _count(result.outcomes.values()).items()
            )
        )
        return result

    async def _run_node(
        self,
        node_id: str,
        run: NodeCallback,
        semaphore: asyncio.Semaphore | None,
        layer: int,
    ) -> NodeResult:
        if semaphore is not None:
            async with semaphore:
                return await self._invoke(node_id, run, layer)
        return await self._invoke(node_id, run, layer)

    async def _invoke(self, node_id: str, run: NodeCallback, layer: int) -> NodeResult:
        start_time = time.perf_counter()
        try:
            returned = await run(node_id)
        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            if is_user_error(e):
                logger.warning(f'[executor] Service "{node_id}" failed: {e}')
            else:
                logger.error(f'[executor] Service "{node_id}" failed: {e}', exc_info=True)
            return NodeResult(
                service_id=node_id,
                outcome=Outcome.FAILURE,
                error=e,
                layer=layer,
                duration_ms=duration_ms,
            )

        duration_ms = (time.perf_counter() - start_time) * 1000
        outcome = returned if isinstance(returned, Outcome) else Outcome.SUCCESS
        logger.debug(f'[executor] Service "{node_id}": {outcome.value} in {duration_ms:.1f}ms')
        return NodeResult(
            service_id=node_id, outcome=outcome, layer=layer, duration_ms=duration_ms
        )

    @staticmethod
    def _prune(
        graph: ServiceGraph, failed: str, reverse: bool, pending: list[str]
    ) -> list[str]:
        """Pending nodes that can no longer run because `failed` did not succeed."""
        blocked = (
            graph.transitive_dependencies(failed)
            if reverse
            else graph.transitive_dependents(failed)
        )
        pending_set = set(pending)
        return [node_id for node_id in blocked if node_id in pending_set]

    def __repr__(self) -> str:
        return f"GraphExecutor(max_concurrency={self.max_concurrency})"


def _count(outcomes: Any) -> dict[Outcome, int]:
    counts = {outcome: 0 for outcome in Outcome}
    for outcome in outcomes:
        counts[outcome] += 1
    return counts
