"""
Pytest configuration and fixtures for stackweave tests.
"""

import sys
from pathlib import Path

import pytest

# Add the repository root to path for imports
# This allows `from stackweave.graph import ...` to work
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from stackweave.config.loader import get_settings  # noqa: E402
from stackweave.state.memory import MemoryStateStorage  # noqa: E402


@pytest.fixture
def state_backend():
    """Shared dict behind MemoryStateStorage instances."""
    return {}


@pytest.fixture
def memory_storage(state_backend):
    """In-memory state storage for stage "dev"."""
    return MemoryStateStorage(state_backend, stage="dev")


@pytest.fixture(autouse=True)
def clear_settings_cache():
    """Settings are cached per process; reset them around every test."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def sample_configuration():
    """Two services where the consumer reads an output of resources."""
    return {
        "name": "shop",
        "services": {
            "resources": {"path": "resources"},
            "consumer": {
                "path": "consumer",
                "params": {"queueArn": "${resources.QueueArn}"},
            },
        },
    }
