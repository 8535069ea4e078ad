"""
Structural validation of the project document.

Runs before variable resolution. Every failure is fatal and raised as
InvalidConfigurationError; nothing has executed yet.
"""

from __future__ import annotations

from typing import Any

from stackweave.errors import InvalidConfigurationError

ALLOWED_TOP_LEVEL_KEYS = ("name", "services", "state")

# Options of single-service deployment frameworks that people tend to paste
# into the project document by mistake
FRAMEWORK_ONLY_KEYS = (
    "service",
    "provider",
    "functions",
    "params",
    "frameworkVersion",
    "useDotenv",
    "package",
    "layers",
    "resources",
    "custom",
)

DOCS_HINT = "Read about the project configuration in the stackweave README."


def validate_configuration(configuration: Any, filename: str = "stackweave.yml") -> None:
    """
    Validate the top-level structure of a raw project document.

    Raises:
        InvalidConfigurationError: On the first structural violation
    """
    if not isinstance(configuration, dict):
        raise InvalidConfigurationError(
            f"{filename} does not contain a valid stackweave configuration.\n{DOCS_HINT}"
        )

    if not configuration.get("name") or "services" not in configuration:
        raise InvalidConfigurationError(
            f'Invalid configuration: {filename} must contain "name" and "services" properties.\n'
            f"{DOCS_HINT}"
        )

    if not isinstance(configuration["name"], str):
        raise InvalidConfigurationError(
            f'Invalid configuration: "name" in {filename} must be a string.'
        )

    for key in FRAMEWORK_ONLY_KEYS:
        if key in configuration:
            raise InvalidConfigurationError(
                f'Invalid property "{key}" in {filename}.\n'
                "This is an option of a single-service deployment framework "
                "and is not supported at the project level."
            )

    extra = [key for key in configuration if key not in ALLOWED_TOP_LEVEL_KEYS]
    if extra:
        raise InvalidConfigurationError(
            f"Unrecognized property {', '.join(extra)} in {filename}.\n{DOCS_HINT}"
        )

    services = configuration["services"]
    if not isinstance(services, dict):
        raise InvalidConfigurationError(
            f'Invalid configuration: "services" in {filename} must be an object.'
        )

    for service_id, entry in services.items():
        if not isinstance(entry, dict):
            raise InvalidConfigurationError(
                f'Invalid configuration: service "{service_id}" must be an object.'
            )
