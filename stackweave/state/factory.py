"""
State backend selection from the `state` key of the project document.
"""

from __future__ import annotations

import logging
from pathlib import Path

from stackweave.config.schemas import StateConfiguration
from stackweave.errors import InvalidConfigurationError

from .base import StateStorage
from .http import HttpStateStorage
from .local import DEFAULT_STATE_DIR, LocalStateStorage

logger = logging.getLogger(__name__)


def create_state_storage(
    configuration: StateConfiguration | None,
    *,
    root: str | Path,
    project: str,
    stage: str,
    state_dir: str = DEFAULT_STATE_DIR,
) -> StateStorage:
    """
    Build the state storage for a project and stage.

    Raises:
        InvalidConfigurationError: Unknown backend or missing backend options
    """
    configuration = configuration or StateConfiguration()
    backend = configuration.backend
    options = configuration.options

    if backend == "local":
        storage: StateStorage = LocalStateStorage(root, stage, state_dir=state_dir)
    elif backend == "http":
        url = options.get("url")
        if not isinstance(url, str) or not url:
            raise InvalidConfigurationError(
                'The "http" state backend requires a "url" option',
                "INVALID_STATE_CONFIGURATION_FORMAT",
            )
        headers = options.get("headers") or {}
        if not isinstance(headers, dict):
            raise InvalidConfigurationError(
                'The "headers" option of the "http" state backend must be an object',
                "INVALID_STATE_CONFIGURATION_FORMAT",
            )
        storage = HttpStateStorage(
            url,
            project,
            stage,
            headers={str(k): str(v) for k, v in headers.items()},
        )
    else:
        raise InvalidConfigurationError(
            f'Unrecognized state backend: "{backend}"', "UNRECOGNIZED_STATE_BACKEND"
        )

    logger.debug(f"[state] Using {storage.name} state storage")
    return storage
