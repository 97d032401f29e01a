"""In-memory state store (tests and dry runs)."""
import copy
import logging
import threading
from datetime import datetime, timezone
from typing import Optional

from ..engine.schema import ResourceId, ResourceState
from .base import LockInfo, StateStore, default_owner

logger = logging.getLogger(__name__)


class InMemoryStateStore(StateStore):
    """Dict-backed state store.

    Several handles may share one backing record through ``shared()`` to model
    concurrent runs against the same store.
    """

    def __init__(self, initial: Optional[dict[ResourceId, ResourceState]] = None):
        super().__init__()
        self._states: dict[ResourceId, ResourceState] = dict(initial or {})
        self._lock_record: list[Optional[LockInfo]] = [None]
        self._mutex = threading.Lock()
        self.writes: list[ResourceId] = []
        self.deletes: list[ResourceId] = []

    def shared(self) -> "InMemoryStateStore":
        """Another handle on the same states and lock record."""
        other = InMemoryStateStore()
        other._states = self._states
        other._lock_record = self._lock_record
        other._mutex = self._mutex
        return other

    def acquire_lock(self, run_id: str) -> LockInfo:
        with self._mutex:
            current = self._lock_record[0]
            if current is not None:
                raise current.held_error()
            info = LockInfo(
                run_id=run_id,
                owner=default_owner(),
                acquired_at=datetime.now(timezone.utc),
            )
            self._lock_record[0] = info
            self._run_id = run_id
        logger.debug(f"Lock acquired by run {run_id}")
        return info

    def release_lock(self, run_id: str) -> None:
        with self._mutex:
            current = self._lock_record[0]
            if current is None:
                logger.warning(f"Run {run_id} released a lock that was not held")
            elif current.run_id != run_id:
                raise current.held_error()
            else:
                self._lock_record[0] = None
            self._run_id = None
        logger.debug(f"Lock released by run {run_id}")

    def lock_info(self) -> Optional[LockInfo]:
        return self._lock_record[0]

    def force_unlock(self) -> Optional[LockInfo]:
        with self._mutex:
            broken = self._lock_record[0]
            self._lock_record[0] = None
        if broken:
            logger.warning(f"Force-unlocked state held by run {broken.run_id}")
        return broken

    def read_all(self) -> dict[ResourceId, ResourceState]:
        return {rid: copy.deepcopy(state) for rid, state in self._states.items()}

    def write(self, resource_id: ResourceId, state: ResourceState) -> None:
        self._require_lock("write", resource_id)
        self._states[resource_id] = copy.deepcopy(state)
        self.writes.append(resource_id)

    def delete(self, resource_id: ResourceId) -> None:
        self._require_lock("delete", resource_id)
        self._states.pop(resource_id, None)
        self.deletes.append(resource_id)
