"""
Error taxonomy for stackweave.

Every failure the orchestrator raises on purpose is a StackweaveError carrying:
- kind: an ErrorKind classifying the failure
- user_error: whether the failure is an expected user-facing condition
  (misconfiguration, bad reference, failed deployment) or an unexpected
  programmer error that deserves a stack trace
- code: a stable identifier for telemetry and tests

Propagation contract:
- Configuration and graph errors are raised at boot, before anything runs
- Errors raised by a component during graph execution are caught per node
  and recorded as that node's outcome; they never abort sibling nodes
- Storage errors abort the run
"""

from __future__ import annotations

import traceback
from enum import Enum
from typing import Any, Iterable, Sequence


class ErrorKind(str, Enum):
    """Classification of stackweave errors."""

    # Configuration errors - raised at boot, nothing runs
    INVALID_CONFIGURATION = "invalid_configuration"
    INVALID_COMPONENT_CONFIGURATION = "invalid_component_configuration"
    UNRECOGNIZED_COMPONENT = "unrecognized_component"
    INVALID_CLI_OPTION = "invalid_cli_option"

    # Variable resolution errors
    INVALID_REFERENCE = "invalid_reference"
    INVALID_REFERENCE_TYPE = "invalid_reference_type"
    UNRECOGNIZED_VARIABLE_SOURCE = "unrecognized_variable_source"
    MISSING_ENVIRONMENT_VARIABLE = "missing_environment_variable"

    # Graph errors
    CIRCULAR_DEPENDENCY = "circular_dependency"
    DUPLICATE_SERVICE_PATH = "duplicate_service_path"

    # Invocation errors
    UNKNOWN_SERVICE = "unknown_service"
    UNKNOWN_COMMAND = "unknown_command"
    COMPONENT_EXECUTION_ERROR = "component_execution_error"

    # Infrastructure errors
    STORAGE_ERROR = "storage_error"
    INTERNAL_ERROR = "internal_error"


class StackweaveError(Exception):
    """Base exception for stackweave."""

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR
    user_error: bool = True

    def __init__(self, message: str, code: str | None = None):
        self.message = message
        self.code = code or self.kind.name
        super().__init__(message)

    def to_dict(self) -> dict[str, str | bool]:
        return {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "user_error": self.user_error,
        }


class InvalidConfigurationError(StackweaveError):
    """The configuration document is structurally invalid."""

    kind = ErrorKind.INVALID_CONFIGURATION


class InvalidComponentConfigurationError(StackweaveError):
    """A service's inputs fail its component's declared schema."""

    kind = ErrorKind.INVALID_COMPONENT_CONFIGURATION

    def __init__(self, service_id: str, message: str, code: str | None = None):
        self.service_id = service_id
        super().__init__(message, code)


class UnrecognizedComponentError(StackweaveError):
    """A service references a component that cannot be resolved."""

    kind = ErrorKind.UNRECOGNIZED_COMPONENT


class InvalidCliOptionError(StackweaveError):
    kind = ErrorKind.INVALID_CLI_OPTION


class InvalidReferenceError(StackweaveError):
    """A ${service.output} reference points at something that does not exist."""

    kind = ErrorKind.INVALID_REFERENCE

    def __init__(self, reference: str, message: str | None = None):
        self.reference = reference
        super().__init__(
            message
            or f"the variable {reference} cannot be resolved: the referenced output does not exist"
        )


class InvalidReferenceTypeError(StackweaveError):
    """A reference embedded in a larger string resolved to a non-string value."""

    kind = ErrorKind.INVALID_REFERENCE_TYPE

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(
            f"the variable {reference} cannot be resolved: the referenced substring is not a string"
        )


class UnrecognizedVariableSourceError(StackweaveError):
    """One or more ${source:address} tokens use an unknown source."""

    kind = ErrorKind.UNRECOGNIZED_VARIABLE_SOURCE

    def __init__(self, sources: Iterable[str]):
        self.sources = sorted(set(sources))
        joined = '", "'.join(self.sources)
        super().__init__(
            f'Unrecognized configuration variable sources: "{joined}"',
            "UNRECOGNIZED_VARIABLE_SOURCES",
        )


class MissingEnvironmentVariableError(StackweaveError):
    kind = ErrorKind.MISSING_ENVIRONMENT_VARIABLE

    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f'The environment variable "{name}" is referenced but is not defined',
            "CANNOT_FIND_ENVIRONMENT_VARIABLE",
        )


class CircularDependencyError(StackweaveError):
    """
    The dependency graph contains one or more cycles.

    The message lists every cycle twice: once following the edges
    (a --> b --> a) and once reversed (a <-- b <-- a).
    """

    kind = ErrorKind.CIRCULAR_DEPENDENCY

    def __init__(self, cycles: Sequence[Sequence[str]]):
        self.cycles = [list(cycle) for cycle in cycles]
        lines = ["Your configuration has circular dependencies:"]
        for index, cycle in enumerate(self.cycles, start=1):
            closed = [*cycle, cycle[0]]
            forward = f"{index}. " + " --> ".join(closed)
            backward = " <-- ".join(reversed(closed))
            lines.append(f"    {forward}")
            lines.append(f"    {backward.rjust(len(forward))}")
        super().__init__("\n".join(lines))


class DuplicateServicePathError(StackweaveError):
    kind = ErrorKind.DUPLICATE_SERVICE_PATH

    def __init__(self, service_id: str, others: Sequence[str]):
        self.service_ids = [service_id, *others]
        quoted = ", ".join(f'"{other}"' for other in others)
        super().__init__(
            f'Service "{service_id}" has the same "path" as the following services: {quoted}. '
            "This is not supported because running such services in parallel "
            "writes their artifacts to the same working directory."
        )


class UnknownServiceError(StackweaveError):
    kind = ErrorKind.UNKNOWN_SERVICE

    def __init__(self, service_id: str, available: Sequence[str] = ()):
        self.service_id = service_id
        message = f"Unknown service {service_id}"
        if available:
            message += f". Available services: {', '.join(available)}"
        super().__init__(message)


class UnknownCommandError(StackweaveError):
    kind = ErrorKind.UNKNOWN_COMMAND

    def __init__(self, service_id: str | None, command: str):
        self.service_id = service_id
        self.command = command
        if service_id is None:
            super().__init__(f'Unknown command "{command}"')
        else:
            super().__init__(f'No command "{command}" on service "{service_id}"')


class NothingDeployedError(StackweaveError):
    """No service has stored outputs for this stage."""

    kind = ErrorKind.UNKNOWN_SERVICE

    def __init__(self, stage: str):
        self.stage = stage
        super().__init__(
            f"Could not find any deployed service for stage {stage}", "NO_DEPLOYED_SERVICES"
        )


class ComponentExecutionError(StackweaveError):
    """
    Raised by components for expected failures of their own work.

    Example: the wrapped deployment CLI exited with a non-zero code.
    """

    kind = ErrorKind.COMPONENT_EXECUTION_ERROR

    def __init__(self, service_id: str, message: str, code: str | None = None):
        self.service_id = service_id
        super().__init__(message, code)


class StorageError(StackweaveError):
    """
    Reading, writing or deleting the state record failed.

    When the failure aborts a graph execution, `partial_result` holds the
    outcomes recorded up to and including the layer that failed.
    """

    kind = ErrorKind.STORAGE_ERROR
    partial_result: Any = None


class GraphInvariantError(StackweaveError):
    """The executor found pending nodes but none of them can run."""

    kind = ErrorKind.INTERNAL_ERROR
    user_error = False


def is_user_error(exc: BaseException) -> bool:
    """Check if an exception is an expected, user-facing failure."""
    return isinstance(exc, StackweaveError) and exc.user_error


def format_error(exc: BaseException, verbose: bool = False) -> str:
    """
    Format an exception for terminal output.

    User errors render as their message. Unexpected errors render with
    their stack trace; for stackweave's own unexpected errors the trace
    is only included in verbose mode.
    """
    if is_user_error(exc):
        return str(exc)
    if isinstance(exc, StackweaveError) and not verbose:
        return str(exc)
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).rstrip()
