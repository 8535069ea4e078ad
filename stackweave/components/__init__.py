"""
Components: the pluggable implementations behind services.

Usage:
    from stackweave.components import Component, create_default_registry

    registry = create_default_registry()
    registry.register("queue", QueueComponent)
"""

from .base import LIFECYCLE_METHODS, Component, ComponentContext
from .framework import FrameworkComponent, FrameworkInputs, parse_stack_outputs
from .loader import create_default_registry, load_component, validate_component_inputs
from .registry import ENTRY_POINT_GROUP, ComponentRegistry

__all__ = [
    "Component",
    "ComponentContext",
    "ComponentRegistry",
    "ENTRY_POINT_GROUP",
    "FrameworkComponent",
    "FrameworkInputs",
    "LIFECYCLE_METHODS",
    "create_default_registry",
    "load_component",
    "parse_stack_outputs",
    "validate_component_inputs",
]
