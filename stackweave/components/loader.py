"""
Component Loader.

Turns a service definition into a ready-to-use component instance:

1. Resolve the component reference through the registry
2. Validate the (already resolved) inputs against the component's
   `input_model`, if it declares one
3. Construct the component with a fresh ComponentContext
4. Load its state and outputs from storage
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from stackweave.errors import InvalidComponentConfigurationError

from .base import Component, ComponentContext
from .registry import ComponentRegistry

if TYPE_CHECKING:
    from stackweave.context import Context

logger = logging.getLogger(__name__)


def create_default_registry() -> ComponentRegistry:
    """Registry with the built-in component types."""
    from .framework import FrameworkComponent

    registry = ComponentRegistry()
    registry.register(FrameworkComponent.type_name, FrameworkComponent)
    return registry


def validate_component_inputs(
    component_class: type[Component], service_id: str, inputs: dict[str, Any]
) -> None:
    """
    Check inputs against the component's declared schema.

    Raises:
        InvalidComponentConfigurationError: One line per failing field
    """
    model = component_class.input_model
    if model is None:
        return
    try:
        model.model_validate(inputs)
    except ValidationError as e:
        details = []
        for error in e.errors():
            location = ".".join(str(part) for part in error["loc"]) or "(root)"
            details.append(f"  - {location}: {error['msg']}")
        raise InvalidComponentConfigurationError(
            service_id,
            f'Invalid configuration for service "{service_id}":\n' + "\n".join(details),
        ) from e


async def load_component(
    context: "Context",
    service_id: str,
    reference: str,
    inputs: dict[str, Any],
    *,
    registry: ComponentRegistry | None = None,
) -> Component:
    """
    Load, validate and initialize the component of one service.

    Args:
        context: Run context
        service_id: Service identifier
        reference: Component reference ("framework", "./dir", "pkg.mod:Class", ...)
        inputs: Service inputs with every ${...} reference resolved

    Raises:
        UnrecognizedComponentError: Reference cannot be resolved
        InvalidComponentConfigurationError: Inputs fail the component schema
    """
    registry = registry or create_default_registry()
    component_class = registry.resolve(reference, root=context.root)
    validate_component_inputs(component_class, service_id, inputs)

    component = component_class(service_id, ComponentContext(service_id, context), inputs)
    await component.init()
    logger.debug(f"[components] Loaded {component!r} from '{reference}'")
    return component
