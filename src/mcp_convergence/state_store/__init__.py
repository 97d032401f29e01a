"""State store package.

Provides:
- StateStore: interface the engine depends on (injected, never global)
- InMemoryStateStore: dict-backed implementation for tests and dry runs
- FileStateStore: one YAML document per resource plus a lock record
"""

from .base import LockInfo, StateStore, default_owner
from .file_store import DEFAULT_STATE_DIR, FileStateStore
from .memory import InMemoryStateStore

__all__ = [
    "LockInfo",
    "StateStore",
    "default_owner",
    "FileStateStore",
    "InMemoryStateStore",
    "DEFAULT_STATE_DIR",
]
