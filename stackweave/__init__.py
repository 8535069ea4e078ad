"""
Stackweave - deploy a project made of several services, in dependency order.

Stackweave reads a `stackweave.yml` describing named services, wires
their outputs into each other's inputs, and runs lifecycle commands
(deploy, remove, info, logs, ...) across all of them:

- **Dependency Graph**: Explicit `dependsOn` plus implicit ${service.output} references
- **Concurrent Execution**: Independent services run at the same time, layer by layer
- **Persistent State**: Outputs and component state stored per stage (local file or HTTP)
- **Pluggable Components**: Built-in `framework` component, local or installed plugins

Quick Start:
    >>> from stackweave import ComponentsService
    >>>
    >>> service = ComponentsService(root=".", stage="dev")
    >>> await service.boot()
    >>> await service.invoke_lifecycle("deploy")
    >>> await service.shutdown()
"""

__version__ = "0.1.0"
__license__ = "MIT"

from stackweave.components import Component, ComponentContext, ComponentRegistry
from stackweave.context import Context
from stackweave.errors import ErrorKind, StackweaveError
from stackweave.executor import GraphExecutor, Outcome
from stackweave.graph import ServiceGraph, build_service_graph
from stackweave.service import ComponentsService

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Facade
    "ComponentsService",
    "Context",
    # Building blocks
    "Component",
    "ComponentContext",
    "ComponentRegistry",
    "GraphExecutor",
    "Outcome",
    "ServiceGraph",
    "build_service_graph",
    # Errors
    "ErrorKind",
    "StackweaveError",
]
