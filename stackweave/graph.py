"""
Service Dependency Graph.

Edges point from a dependent to its dependency:

    consumer --> resources      (consumer uses ${resources.QueueArn})

Edges come from two places:
- Explicit `dependsOn` entries
- Implicit ${service.output} references anywhere in a service's inputs

The graph is an arena of immutable nodes. Nothing is removed while
executing; the executor keeps its own remaining-dependency counters.

Validation (all fatal, raised before anything runs):
- Every referenced service exists
- No two services of the same component type share a `path`
- The graph is acyclic; every cycle is reported, not just the first
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from .config.schemas import ServiceDefinition
from .errors import (
    CircularDependencyError,
    DuplicateServicePathError,
    InvalidConfigurationError,
    InvalidReferenceError,
)
from .variables import find_references

logger = logging.getLogger(__name__)


@dataclass
class ServiceNode:
    """A service in the graph, plus its component instance once loaded."""

    definition: ServiceDefinition
    dependencies: tuple[str, ...] = ()
    instance: Any = field(default=None, repr=False)

    @property
    def id(self) -> str:
        return self.definition.id


class ServiceGraph:
    """
    Directed dependency graph over services.

    Node order follows the configuration order, which keeps layers,
    log lines and error messages deterministic.
    """

    def __init__(self, nodes: Mapping[str, ServiceNode]):
        self._nodes: dict[str, ServiceNode] = dict(nodes)
        self._dependents: dict[str, list[str]] = {node_id: [] for node_id in self._nodes}
        for node in self._nodes.values():
            for dependency in node.dependencies:
                self._dependents[dependency].append(node.id)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __iter__(self) -> Iterator[str]:
        return iter(self._nodes)

    def node(self, node_id: str) -> ServiceNode:
        return self._nodes[node_id]

    @property
    def nodes(self) -> list[ServiceNode]:
        return list(self._nodes.values())

    def dependencies_of(self, node_id: str) -> tuple[str, ...]:
        return self._nodes[node_id].dependencies

    def dependents_of(self, node_id: str) -> tuple[str, ...]:
        return tuple(self._dependents[node_id])

    def edges(self) -> list[tuple[str, str]]:
        """All (dependent, dependency) pairs."""
        return [
            (node.id, dependency)
            for node in self._nodes.values()
            for dependency in node.dependencies
        ]

    def sinks(self) -> list[str]:
        """Services with no dependencies."""
        return [node.id for node in self._nodes.values() if not node.dependencies]

    def sources(self) -> list[str]:
        """Services nothing depends on."""
        return [node_id for node_id, dependents in self._dependents.items() if not dependents]

    def transitive_dependencies(self, node_id: str) -> list[str]:
        """Every service `node_id` depends on, directly or not, in graph order."""
        seen: set[str] = set()
        stack = list(self._nodes[node_id].dependencies)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._nodes[current].dependencies)
        return [other for other in self._nodes if other in seen]

    def transitive_dependents(self, node_id: str) -> list[str]:
        """Every service that depends on `node_id`, directly or not."""
        seen: set[str] = set()
        stack = list(self._dependents[node_id])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._dependents[current])
        return [other for other in self._nodes if other in seen]

    def subgraph(self, node_ids: list[str]) -> "ServiceGraph":
        """Graph restricted to `node_ids`; edges leaving the set are dropped."""
        keep = set(node_ids)
        return ServiceGraph({
            node_id: ServiceNode(
                definition=node.definition,
                dependencies=tuple(d for d in node.dependencies if d in keep),
                instance=node.instance,
            )
            for node_id, node in self._nodes.items()
            if node_id in keep
        })

    def layers(self, *, reverse: bool = False) -> list[list[str]]:
        """
        Topological layers (Kahn's algorithm).

        Forward: dependencies first. Reverse: dependents first.
        """
        if reverse:
            remaining = {node_id: len(deps) for node_id, deps in self._dependents.items()}
        else:
            remaining = {node.id: len(node.dependencies) for node in self._nodes.values()}

        layers: list[list[str]] = []
        ready = [node_id for node_id, count in remaining.items() if count == 0]
        while ready:
            layers.append(ready)
            next_ready: list[str] = []
            for node_id in ready:
                released = self.dependencies_of(node_id) if reverse else self.dependents_of(node_id)
                for other in released:
                    remaining[other] -= 1
                    if remaining[other] == 0:
                        next_ready.append(other)
            ready = [node_id for node_id in self._nodes if node_id in set(next_ready)]
        return layers

    def __repr__(self) -> str:
        return f"ServiceGraph(nodes={list(self._nodes)}, edges={self.edges()})"


# =============================================================================
# Construction
# =============================================================================


def collect_dependencies(services: Mapping[str, ServiceDefinition]) -> dict[str, tuple[str, ...]]:
    """
    Compute the dependency set of every service.

    Implicit references come first (in order of appearance), then
    explicit `dependsOn` entries. Duplicates collapse.

    Raises:
        InvalidReferenceError: A ${service...} reference names an unknown service
        InvalidConfigurationError: A dependsOn entry names an unknown service
    """
    dependencies: dict[str, tuple[str, ...]] = {}
    for service_id, definition in services.items():
        collected: dict[str, None] = {}

        for reference in find_references(definition.inputs):
            if reference.service_id not in services:
                raise InvalidReferenceError(
                    reference.token,
                    f"the referenced service in expression {reference.token} "
                    f'of service "{service_id}" does not exist',
                )
            collected[reference.service_id] = None

        for explicit in definition.depends_on:
            if explicit not in services:
                raise InvalidConfigurationError(
                    f'The service "{explicit}" referenced in "dependsOn" of "{service_id}" '
                    "does not exist",
                    "UNKNOWN_DEPENDENCY",
                )
            collected[explicit] = None

        dependencies[service_id] = tuple(collected)
    return dependencies


def build_service_graph(services: Mapping[str, ServiceDefinition]) -> ServiceGraph:
    """
    Build and validate the dependency graph.

    Raises:
        DuplicateServicePathError: Two services would share a working directory
        InvalidReferenceError / InvalidConfigurationError: Unknown dependency
        CircularDependencyError: The graph has at least one cycle
    """
    validate_service_paths(services)
    dependencies = collect_dependencies(services)
    graph = ServiceGraph({
        service_id: ServiceNode(definition=definition, dependencies=dependencies[service_id])
        for service_id, definition in services.items()
    })
    validate_acyclic(graph)
    logger.debug(f"[graph] Built {graph!r}")
    return graph


def validate_service_paths(services: Mapping[str, ServiceDefinition]) -> None:
    """Reject services of the same component type that share a `path`."""
    groups: dict[tuple[str, str], list[str]] = {}
    for service_id, definition in services.items():
        if definition.path is None:
            continue
        key = (definition.component, os.path.normpath(definition.path))
        groups.setdefault(key, []).append(service_id)

    for service_ids in groups.values():
        if len(service_ids) > 1:
            raise DuplicateServicePathError(service_ids[0], service_ids[1:])


def validate_acyclic(graph: ServiceGraph) -> None:
    """Raise CircularDependencyError listing every cycle in the graph."""
    cycles = find_cycles(graph)
    if cycles:
        logger.debug(f"[graph] Found {len(cycles)} cycle(s): {cycles}")
        raise CircularDependencyError(cycles)


def find_cycles(graph: ServiceGraph) -> list[list[str]]:
    """
    Find cycles using Tarjan's strongly connected components.

    Every non-trivial component (more than one node, or a node that
    depends on itself) yields one or more cycles, chosen so that each
    of its nodes appears in at least one of them. A cycle is returned
    as an ordered chain without repeating the first node.
    """
    cycles: list[list[str]] = []
    for component in _strongly_connected_components(graph):
        members = set(component)
        if len(component) == 1:
            node_id = component[0]
            if node_id in graph.dependencies_of(node_id):
                cycles.append([node_id])
            continue

        covered: set[str] = set()
        for start in component:
            if start in covered:
                continue
            cycle = _cycle_through(graph, start, members)
            cycles.append(cycle)
            covered.update(cycle)
    return cycles


def _strongly_connected_components(graph: ServiceGraph) -> list[list[str]]:
    index_of: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    components: list[list[str]] = []
    order = {node_id: position for position, node_id in enumerate(graph)}

    def strongconnect(node_id: str) -> None:
        index_of[node_id] = lowlink[node_id] = len(index_of)
        stack.append(node_id)
        on_stack.add(node_id)

        for dependency in graph.dependencies_of(node_id):
            if dependency not in index_of:
                strongconnect(dependency)
                lowlink[node_id] = min(lowlink[node_id], lowlink[dependency])
            elif dependency in on_stack:
                lowlink[node_id] = min(lowlink[node_id], index_of[dependency])

        if lowlink[node_id] == index_of[node_id]:
            component: list[str] = []
            while True:
                member = stack.pop()
                on_stack.discard(member)
                component.append(member)
                if member == node_id:
                    break
            components.append(sorted(component, key=order.__getitem__))

    for node_id in graph:
        if node_id not in index_of:
            strongconnect(node_id)
    return components


def _cycle_through(graph: ServiceGraph, start: str, members: set[str]) -> list[str]:
    """Depth-first search for a path from `start` back to itself inside `members`."""
    path = [start]
    visited = {start}
    iterators = [iter(graph.dependencies_of(start))]

    while iterators:
        for dependency in iterators[-1]:
            if dependency == start:
                return list(path)
            if dependency in members and dependency not in visited:
                visited.add(dependency)
                path.append(dependency)
                iterators.append(iter(graph.dependencies_of(dependency)))
                break
        else:
            iterators.pop()
            path.pop()

    # Unreachable for a strongly connected component
    return [start]
