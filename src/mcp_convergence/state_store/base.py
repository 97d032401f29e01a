"""State store interface.

The state store is the durable record of what the system believes is
deployed. It is injected into the engine, never a module-level singleton, so
tests can swap in the in-memory implementation.
"""
import getpass
import logging
import os
import socket
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator, Optional

from ..engine.errors import LockHeldError, StateStoreError
from ..engine.schema import ResourceId, ResourceState

logger = logging.getLogger(__name__)


def default_owner() -> str:
    """Owner tag for lock records: user@host:pid."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()}:{os.getpid()}"


@dataclass
class LockInfo:
    """Who holds the state lock, and since when."""
    run_id: str
    owner: str
    acquired_at: datetime

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "owner": self.owner,
            "acquired_at": self.acquired_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LockInfo":
        acquired_at = data.get("acquired_at")
        if isinstance(acquired_at, str):
            acquired_at = datetime.fromisoformat(acquired_at)
        return cls(
            run_id=str(data.get("run_id", "")),
            owner=str(data.get("owner", "")),
            acquired_at=acquired_at or datetime.now(timezone.utc),
        )

    def held_error(self) -> LockHeldError:
        return LockHeldError(self.run_id, self.owner, self.acquired_at)


class StateStore(ABC):
    """Durable mapping from resource id to ResourceState, with a run lock."""

    def __init__(self):
        self._run_id: Optional[str] = None

    @property
    def held_by(self) -> Optional[str]:
        """Run id holding the lock through this store instance."""
        return self._run_id

    # Locking
    @abstractmethod
    def acquire_lock(self, run_id: str) -> LockInfo:
        """Take exclusive write access for a run.

        Raises:
            LockHeldError: If another run holds the lock
        """
        pass

    @abstractmethod
    def release_lock(self, run_id: str) -> None:
        """Release the lock taken by run_id."""
        pass

    @abstractmethod
    def lock_info(self) -> Optional[LockInfo]:
        """Current lock holder, if any."""
        pass

    @abstractmethod
    def force_unlock(self) -> Optional[LockInfo]:
        """Break the lock regardless of holder. Returns the broken lock."""
        pass

    @contextmanager
    def locked(self, run_id: str) -> Iterator[LockInfo]:
        """Hold the lock for the duration of a block; always released."""
        info = self.acquire_lock(run_id)
        try:
            yield info
        finally:
            self.release_lock(run_id)

    # State access
    @abstractmethod
    def read_all(self) -> dict[ResourceId, ResourceState]:
        """Snapshot of every stored resource state."""
        pass

    def read(self, resource_id: ResourceId) -> Optional[ResourceState]:
        """Stored state for one resource, or None."""
        return self.read_all().get(resource_id)

    @abstractmethod
    def write(self, resource_id: ResourceId, state: ResourceState) -> None:
        """Persist one resource state. Requires the lock."""
        pass

    @abstractmethod
    def delete(self, resource_id: ResourceId) -> None:
        """Remove one resource state. Requires the lock."""
        pass

    def _require_lock(self, operation: str, resource_id: ResourceId) -> None:
        if self._run_id is None:
            raise StateStoreError(
                f"Cannot {operation} {resource_id}: state lock is not held"
            )
