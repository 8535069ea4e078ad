"""
stackweave configuration

Project document loading and runtime settings.
"""

from .loader import get_settings, load_configuration
from .reader import read_configuration, resolve_configuration_path
from .schemas import (
    DEFAULT_COMPONENT,
    ComposeConfiguration,
    ServiceDefinition,
    Settings,
    StateConfiguration,
)
from .validate import validate_configuration

__all__ = [
    "DEFAULT_COMPONENT",
    "ComposeConfiguration",
    "ServiceDefinition",
    "Settings",
    "StateConfiguration",
    "get_settings",
    "load_configuration",
    "read_configuration",
    "resolve_configuration_path",
    "validate_configuration",
]
