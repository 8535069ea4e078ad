"""
stackweave state storage

Per-stage persistence of service state and outputs.

Backends:
    - LocalStateStorage: JSON file under .stackweave/ (default)
    - HttpStateStorage: JSON object on a remote HTTP endpoint
    - MemoryStateStorage: in-process dict (tests)
"""

from .base import StateStorage
from .factory import create_state_storage
from .http import HttpStateStorage
from .local import LocalStateStorage
from .memory import MemoryStateStorage

__all__ = [
    "HttpStateStorage",
    "LocalStateStorage",
    "MemoryStateStorage",
    "StateStorage",
    "create_state_storage",
]
