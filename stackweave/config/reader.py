"""
Project document reader.

Finds and parses the project document. YAML and JSON are supported:

    stackweave.yml | stackweave.yaml | stackweave.json

The parsed document is normalized through a JSON round trip so that
only plain data (dicts, lists, strings, numbers, booleans, null)
reaches the orchestrator.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml

from stackweave.errors import InvalidConfigurationError

logger = logging.getLogger(__name__)

CONFIGURATION_FILENAMES = ("stackweave.yml", "stackweave.yaml", "stackweave.json")


def resolve_configuration_path(root: str | Path, explicit: str | Path | None = None) -> Path:
    """
    Locate the project document.

    Args:
        root: Project directory
        explicit: Path given on the command line, relative to root

    Raises:
        InvalidConfigurationError: When no document exists
    """
    root = Path(root)
    if explicit is not None:
        path = root / explicit
        if not path.is_file():
            raise InvalidConfigurationError(
                f'Cannot find "{explicit}"', "CONFIGURATION_FILE_NOT_FOUND"
            )
        return path

    for filename in CONFIGURATION_FILENAMES:
        path = root / filename
        if path.is_file():
            return path

    raise InvalidConfigurationError(
        f"No stackweave.yml file found in {root}", "CONFIGURATION_FILE_NOT_FOUND"
    )


def read_configuration(path: str | Path) -> dict[str, Any]:
    """
    Read and parse a project document.

    Raises:
        InvalidConfigurationError: File missing, unparsable or not a mapping
    """
    path = Path(path)
    try:
        content = path.read_text()
    except FileNotFoundError as e:
        raise InvalidConfigurationError(
            f'Cannot parse "{path.name}": File not found', "CONFIGURATION_FILE_NOT_FOUND"
        ) from e
    except OSError as e:
        raise InvalidConfigurationError(
            f'Cannot parse "{path.name}": {e}', "CONFIGURATION_FILE_NOT_ACCESSIBLE"
        ) from e

    suffix = path.suffix.lower()
    if suffix in (".yml", ".yaml"):
        try:
            configuration = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise InvalidConfigurationError(
                f'Cannot parse "{path.name}": {e}', "CONFIGURATION_PARSE_ERROR"
            ) from e
    elif suffix == ".json":
        try:
            configuration = json.loads(content)
        except json.JSONDecodeError as e:
            raise InvalidConfigurationError(
                f'Cannot parse "{path.name}": JSON parse error: {e}', "CONFIGURATION_PARSE_ERROR"
            ) from e
    else:
        raise InvalidConfigurationError(
            f'Cannot parse "{path.name}": Unsupported file extension',
            "UNSUPPORTED_CONFIGURATION_TYPE",
        )

    if not isinstance(configuration, dict):
        raise InvalidConfigurationError(
            f'Invalid configuration at "{path.name}": Plain object expected',
            "INVALID_CONFIGURATION_FORMAT",
        )

    try:
        configuration = json.loads(json.dumps(configuration))
    except (TypeError, ValueError) as e:
        raise InvalidConfigurationError(
            f'Invalid configuration at "{path.name}": Plain JSON structure expected, '
            f"when parsing observed error: {e}",
            "INVALID_CONFIGURATION_STRUCTURE",
        ) from e

    logger.debug(f"[config] Read {path} ({len(configuration.get('services') or {})} services)")
    return configuration
