"""
Configuration Schemas for stackweave.

Pydantic models for the project document (stackweave.yml) and for
runtime settings read from the environment.

Document shape:

    name: my-project
    state: local                    # or {backend: http, url: ...}
    services:
      resources:
        path: resources
      consumer:
        component: framework        # optional, default "framework"
        path: consumer
        dependsOn: resources        # optional, string or list
        params:
          queueArn: ${resources.QueueArn}
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from stackweave.errors import InvalidConfigurationError

DEFAULT_COMPONENT = "framework"

# Keys consumed by the orchestrator; everything else is component input
RESERVED_SERVICE_KEYS = ("component", "dependsOn")


class ServiceDefinition(BaseModel):
    """
    One entry under `services`.

    `inputs` holds every key of the raw entry except the reserved
    orchestrator keys. It may contain ${service.output} references,
    which are resolved right before the service runs.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Service identifier, unique in the project")
    component: str = Field(DEFAULT_COMPONENT, description="Component type or reference")
    depends_on: tuple[str, ...] = Field(default=(), description="Explicit dependencies")
    inputs: dict[str, Any] = Field(default_factory=dict, description="Raw component inputs")

    @property
    def path(self) -> str | None:
        path = self.inputs.get("path")
        return path if isinstance(path, str) else None

    @classmethod
    def from_config(cls, service_id: str, raw: dict[str, Any]) -> "ServiceDefinition":
        """Build a definition from a raw `services` entry."""
        component = raw.get("component") or DEFAULT_COMPONENT
        if not isinstance(component, str):
            raise InvalidConfigurationError(
                f'Invalid "component" in service "{service_id}": expected a string'
            )

        depends_on = raw.get("dependsOn", [])
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
            raise InvalidConfigurationError(
                f'Invalid "dependsOn" in service "{service_id}": '
                "expected a service name or a list of service names"
            )

        inputs = {key: value for key, value in raw.items() if key not in RESERVED_SERVICE_KEYS}
        return cls(
            id=service_id,
            component=component,
            depends_on=tuple(dict.fromkeys(depends_on)),
            inputs=inputs,
        )


class StateConfiguration(BaseModel):
    """
    State backend selection.

    Backend-specific options (url, headers, ...) are kept as extras.
    """

    model_config = ConfigDict(extra="allow")

    backend: str = Field("local", description="State backend identifier")

    @property
    def options(self) -> dict[str, Any]:
        return dict(self.model_extra or {})

    @classmethod
    def from_config(cls, raw: Any) -> "StateConfiguration":
        if raw is None:
            return cls()
        if isinstance(raw, str):
            return cls(backend=raw)
        if isinstance(raw, dict):
            try:
                return cls(**raw)
            except ValidationError as e:
                raise InvalidConfigurationError(
                    f'Invalid "state" configuration: {e.errors()[0]["msg"]}',
                    "INVALID_STATE_CONFIGURATION_FORMAT",
                ) from e
        raise InvalidConfigurationError(
            'Invalid "state" configuration provided. It should be a string or an object.',
            "INVALID_STATE_CONFIGURATION_FORMAT",
        )


class ComposeConfiguration(BaseModel):
    """The whole project document, after validation and variable resolution."""

    model_config = ConfigDict(extra="forbid")

    name: str
    services: dict[str, ServiceDefinition] = Field(default_factory=dict)
    state: StateConfiguration = Field(default_factory=StateConfiguration)

    @property
    def service_ids(self) -> list[str]:
        return list(self.services)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ComposeConfiguration":
        """Build from an already-validated raw document."""
        return cls(
            name=raw["name"],
            services={
                service_id: ServiceDefinition.from_config(service_id, entry)
                for service_id, entry in raw["services"].items()
            },
            state=StateConfiguration.from_config(raw.get("state")),
        )


class Settings(BaseModel):
    """
    Runtime settings.

    Read from STACKWEAVE_* environment variables; CLI flags override them.
    """

    stage: str = "dev"
    verbose: bool = False
    max_concurrency: int | None = Field(None, ge=1)
    state_dir: str = ".stackweave"
