"""
Variable Resolution.

Two resolvers share the ${...} syntax:

1. Output references - ${service.outputKey.nested}
   Resolved against a lookup mapping keyed by service id, usually the
   outputs every service has written to the state store so far.
   Resolution is iterative: a substituted value may itself contain
   references, so the tree is re-scanned until a pass changes nothing.

2. Configuration sources - ${source:address}
   Resolved once at boot. Only two sources exist:
   - ${env:NAME}    process environment
   - ${sw:stage}    the current stage
   Every other source is collected and reported in a single error.

Typing rules for output references:
- "${a.b}" (the whole string is one token) keeps the referenced type
- "prefix-${a.b}" requires a string (numbers are coerced)
"""

from __future__ import annotations

import copy
import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .errors import (
    InvalidConfigurationError,
    InvalidReferenceError,
    InvalidReferenceTypeError,
    MissingEnvironmentVariableError,
    UnrecognizedVariableSourceError,
)

logger = logging.getLogger(__name__)

REFERENCE_PATTERN = re.compile(r"\$\{(\w[\w-]*(?:\.[\w-]+)*)\}")
SOURCE_PATTERN = re.compile(r"\$\{(\w+):([\w.\-/]+)\}")

STAGE_SOURCE = "sw"
ENV_SOURCE = "env"

MAX_CONFIGURATION_PASSES = 32

_MISSING = object()


@dataclass(frozen=True)
class Reference:
    """A single ${service.path} token found in a value tree."""

    token: str
    path: tuple[str, ...]

    @property
    def service_id(self) -> str:
        return self.path[0]


def find_references(value: Any) -> list[Reference]:
    """
    Collect every output reference in a value tree.

    Traverses nested mappings and sequences. Duplicate tokens are
    returned once, in order of first appearance.
    """
    found: dict[str, Reference] = {}
    for text in _iter_strings(value):
        for match in REFERENCE_PATTERN.finditer(text):
            token = match.group(0)
            if token not in found:
                found[token] = Reference(token=token, path=tuple(match.group(1).split(".")))
    return list(found.values())


def resolve_references(
    value: Any,
    lookup: Mapping[str, Any] | None = None,
    *,
    max_passes: int | None = None,
) -> Any:
    """
    Resolve ${service.path} references to a fixed point.

    Args:
        value: Value tree to resolve (not mutated)
        lookup: Mapping keyed by service id. When None, the tree itself
            is the lookup, so sibling keys can reference each other.
        max_passes: Upper bound on re-scans. Defaults to the number of
            lookup keys plus the number of distinct references, plus one.

    Returns:
        A new, fully resolved tree

    Raises:
        InvalidReferenceError: Unknown service or output, or no fixed point
        InvalidReferenceTypeError: Embedded reference to a non-string
    """
    current = copy.deepcopy(value)
    if max_passes is None:
        scope = current if lookup is None else lookup
        size = len(scope) if isinstance(scope, Mapping) else 0
        max_passes = size + len(find_references(current)) + 1

    for attempt in range(max_passes + 1):
        context = current if lookup is None else lookup
        resolved = _substitute(current, context)
        if resolved == current:
            if attempt > 1:
                logger.debug(f"[variables] Converged after {attempt} passes")
            return resolved
        current = resolved

    unresolved = ", ".join(ref.token for ref in find_references(current))
    raise InvalidReferenceError(
        unresolved,
        f"the variables {unresolved} cannot be resolved: references do not converge",
    )


def resolve_configuration_variables(
    configuration: Any,
    stage: str,
    environ: Mapping[str, str] | None = None,
) -> Any:
    """
    Resolve ${env:NAME} and ${sw:stage} in a configuration tree.

    Output references (${service.key}) are left untouched for late binding.

    Raises:
        MissingEnvironmentVariableError: ${env:NAME} with NAME undefined
        UnrecognizedVariableSourceError: All unknown sources, reported together
    """
    env = os.environ if environ is None else environ
    unrecognized: set[str] = set()
    current = copy.deepcopy(configuration)

    for _ in range(MAX_CONFIGURATION_PASSES):
        resolved_any = False

        def replace(text: str) -> Any:
            nonlocal resolved_any
            new_value: Any = text
            for match in SOURCE_PATTERN.finditer(text):
                token, source, address = match.group(0), match.group(1), match.group(2)
                if source == STAGE_SOURCE and address == "stage":
                    replacement: Any = stage
                elif source == ENV_SOURCE:
                    replacement = env.get(address)
                    if replacement is None:
                        raise MissingEnvironmentVariableError(address)
                else:
                    unrecognized.add(source)
                    continue
                resolved_any = True
                if token == text:
                    new_value = replacement
                else:
                    new_value = new_value.replace(token, str(replacement))
            return new_value

        current = _map_strings(current, replace)
        if not resolved_any:
            break
    else:
        raise InvalidConfigurationError(
            "Configuration variables do not converge: an environment variable "
            "probably references itself",
            "CONFIGURATION_VARIABLES_DO_NOT_CONVERGE",
        )

    if unrecognized:
        raise UnrecognizedVariableSourceError(unrecognized)
    return current


def lookup_path(lookup: Mapping[str, Any], path: tuple[str, ...]) -> Any:
    """Walk a dotted path through nested mappings and lists."""
    node: Any = lookup
    for segment in path:
        if isinstance(node, Mapping):
            node = node.get(segment, _MISSING)
        elif isinstance(node, list) and segment.isdigit() and int(segment) < len(node):
            node = node[int(segment)]
        else:
            return _MISSING
        if node is _MISSING:
            return _MISSING
    return node


# =============================================================================
# Traversal helpers
# =============================================================================


def _substitute(value: Any, lookup: Mapping[str, Any]) -> Any:
    def replace(text: str) -> Any:
        new_value: Any = text
        for match in REFERENCE_PATTERN.finditer(text):
            token = match.group(0)
            path = tuple(match.group(1).split("."))
            referenced = lookup_path(lookup, path)
            if referenced is _MISSING:
                if path[0] not in lookup:
                    raise InvalidReferenceError(
                        token,
                        f"the variable {token} cannot be resolved: "
                        f'the referenced service "{path[0]}" has no outputs yet '
                        "(has it been deployed?)",
                    )
                raise InvalidReferenceError(token)
            if token == text:
                return copy.deepcopy(referenced)
            if isinstance(referenced, bool) or not isinstance(referenced, (str, int, float)):
                raise InvalidReferenceTypeError(token)
            new_value = new_value.replace(token, str(referenced))
        return new_value

    return _map_strings(value, replace)


def _map_strings(value: Any, fn: Any) -> Any:
    if isinstance(value, str):
        return fn(value)
    if isinstance(value, Mapping):
        return {key: _map_strings(item, fn) for key, item in value.items()}
    if isinstance(value, list):
        return [_map_strings(item, fn) for item in value]
    if isinstance(value, tuple):
        return tuple(_map_strings(item, fn) for item in value)
    return value


def _iter_strings(value: Any):
    if isinstance(value, str):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from _iter_strings(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _iter_strings(item)
