"""
Component Registry.

Maps the `component` value of a service to a Component class.

Resolution order for a reference:
1. A type registered in this registry ("framework", ...)
2. A local directory ("./my-component"): loads `component.py` from it
   and uses its `Component` attribute
3. A dotted import path ("package.module:ClassName")
4. An installed plugin exposing an entry point in the
   "stackweave.components" group

Usage:
    registry = ComponentRegistry()
    registry.register("framework", FrameworkComponent)

    component_class = registry.resolve("./components/queue", root=Path("."))
"""

from __future__ import annotations

import importlib
import importlib.util
import inspect
import logging
import sys
from importlib.metadata import entry_points
from pathlib import Path

from stackweave.errors import UnrecognizedComponentError

from .base import Component

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "stackweave.components"
LOCAL_COMPONENT_FILENAME = "component.py"
LOCAL_COMPONENT_ATTRIBUTE = "Component"


class ComponentRegistry:
    """
    Registry of component types.

    Types are registered once at startup. Local, dotted and plugin
    references are resolved on demand and cached under the reference.
    """

    def __init__(self) -> None:
        self._components: dict[str, type[Component]] = {}
        self._resolved: dict[str, type[Component]] = {}

    def register(self, type_name: str, component_class: type[Component]) -> None:
        """
        Register a component type.

        Raises:
            ValueError: If the name is taken or the class is not a Component
        """
        if type_name in self._components:
            raise ValueError(f"Component type '{type_name}' already registered")
        if not (inspect.isclass(component_class) and issubclass(component_class, Component)):
            raise ValueError(f"'{type_name}' must be a Component subclass")
        self._components[type_name] = component_class
        logger.debug(f"[components] Registered component type: {type_name}")

    def unregister(self, type_name: str) -> bool:
        return self._components.pop(type_name, None) is not None

    def get(self, type_name: str) -> type[Component] | None:
        return self._components.get(type_name)

    def list_types(self) -> list[str]:
        return list(self._components)

    def __contains__(self, type_name: object) -> bool:
        return type_name in self._components

    def __len__(self) -> int:
        return len(self._components)

    def resolve(self, reference: str, root: Path | None = None) -> type[Component]:
        """
        Resolve a component reference to a class.

        Args:
            reference: Value of the service's `component` key
            root: Project directory, for local references

        Raises:
            UnrecognizedComponentError: Nothing matches the reference
        """
        registered = self._components.get(reference)
        if registered is not None:
            return registered

        cache_key = f"{root}|{reference}" if reference.startswith(".") else reference
        cached = self._resolved.get(cache_key)
        if cached is not None:
            return cached

        if reference.startswith("."):
            component_class = self._load_local(reference, root or Path.cwd())
        elif ":" in reference:
            component_class = self._load_dotted(reference)
        else:
            component_class = self._load_entry_point(reference)

        self._resolved[cache_key] = component_class
        logger.debug(f"[components] Resolved '{reference}' to {component_class.__qualname__}")
        return component_class

    def _load_local(self, reference: str, root: Path) -> type[Component]:
        directory = (root / reference).resolve()
        module_path = directory / LOCAL_COMPONENT_FILENAME
        if not module_path.is_file():
            raise UnrecognizedComponentError(
                f"No {LOCAL_COMPONENT_FILENAME} file found in {reference}",
                "LOCAL_COMPONENT_NOT_FOUND",
            )

        module_name = f"stackweave_local_components.{directory.name.replace('-', '_')}"
        spec = importlib.util.spec_from_file_location(module_name, module_path)
        if spec is None or spec.loader is None:
            raise UnrecognizedComponentError(f"Unable to load component from '{module_path}'")

        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            sys.modules.pop(module_name, None)
            raise UnrecognizedComponentError(
                f"Unable to load component from '{module_path}': {e}"
            ) from e

        return _check_component(
            getattr(module, LOCAL_COMPONENT_ATTRIBUTE, None),
            f"{reference}/{LOCAL_COMPONENT_FILENAME} must define a "
            f"'{LOCAL_COMPONENT_ATTRIBUTE}' class extending stackweave Component",
        )

    def _load_dotted(self, reference: str) -> type[Component]:
        module_path, _, attribute = reference.partition(":")
        try:
            module = importlib.import_module(module_path)
        except ImportError as e:
            raise UnrecognizedComponentError(f"Unrecognized component: {reference} ({e})") from e
        return _check_component(
            getattr(module, attribute, None),
            f"Unrecognized component: {reference} is not a Component class",
        )

    def _load_entry_point(self, reference: str) -> type[Component]:
        for ep in entry_points().select(group=ENTRY_POINT_GROUP):
            if ep.name == reference:
                return _check_component(
                    ep.load(),
                    f"Entry point '{reference}' in '{ENTRY_POINT_GROUP}' is not a Component class",
                )
        raise UnrecognizedComponentError(f"Unrecognized component: {reference}")

    def __repr__(self) -> str:
        return f"ComponentRegistry(types={self.list_types()})"


def _check_component(candidate: object, message: str) -> type[Component]:
    if inspect.isclass(candidate) and issubclass(candidate, Component):
        return candidate
    raise UnrecognizedComponentError(message)
