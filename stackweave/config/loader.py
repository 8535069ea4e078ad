"""
Configuration loading.

Turns a project directory into a ComposeConfiguration:

    1. resolve_configuration_path()   find stackweave.yml
    2. read_configuration()           parse YAML/JSON
    3. validate_configuration()       structural checks
    4. resolve_configuration_variables()  ${env:...} and ${sw:stage}
    5. ComposeConfiguration.from_dict()

Output references (${service.key}) survive this step untouched; they
are resolved per service during graph execution.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path

from stackweave.variables import resolve_configuration_variables

from .reader import read_configuration, resolve_configuration_path
from .schemas import ComposeConfiguration, Settings
from .validate import validate_configuration

logger = logging.getLogger(__name__)


def load_configuration(
    root: str | Path,
    stage: str,
    *,
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> ComposeConfiguration:
    """
    Load, validate and resolve the project document.

    Args:
        root: Project directory
        stage: Stage used for ${sw:stage}
        path: Explicit document path, relative to root
        environ: Environment for ${env:...} (defaults to os.environ)
    """
    configuration_path = resolve_configuration_path(root, path)
    raw = read_configuration(configuration_path)
    validate_configuration(raw, configuration_path.name)
    resolved = resolve_configuration_variables(raw, stage, environ)
    configuration = ComposeConfiguration.from_dict(resolved)
    logger.info(
        f"[config] Loaded '{configuration.name}' from {configuration_path.name}: "
        f"services={configuration.service_ids}"
    )
    return configuration


@lru_cache()
def get_settings() -> Settings:
    """
    Get runtime settings from environment.

    Uses lru_cache for singleton pattern.
    """
    max_concurrency = os.getenv("STACKWEAVE_MAX_CONCURRENCY")
    return Settings(
        stage=os.getenv("STACKWEAVE_STAGE", "dev"),
        verbose=os.getenv("STACKWEAVE_VERBOSE", "false").lower() == "true",
        max_concurrency=int(max_concurrency) if max_concurrency else None,
        state_dir=os.getenv("STACKWEAVE_STATE_DIR", ".stackweave"),
    )
