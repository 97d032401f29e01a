"""File-backed state store.

Directory layout:
    <state_dir>/
    ├── resources/
    │   └── <type>.<name>.yaml   # one ResourceState per file
    └── lock.yaml                # run_id, owner, acquired_at

Each resource file is replaced atomically (temp file + os.replace), so a
crash mid-run leaves every file either at its old or its new content.
"""
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import yaml

from ..engine.errors import StateStoreError
from ..engine.schema import ResourceId, ResourceState
from .base import LockInfo, StateStore, default_owner

logger = logging.getLogger(__name__)

# Default state directory
DEFAULT_STATE_DIR = Path.home() / ".convergecraft" / "state"


def _plain(value: Any) -> Any:
    """Convert values to types yaml.safe_dump can represent."""
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return {_plain(v) for v in value}
    return value


class FileStateStore(StateStore):
    """State store keeping one YAML document per resource."""

    def __init__(self, state_dir: Optional[Path] = None, owner: Optional[str] = None):
        """
        Initialize the store.

        Args:
            state_dir: Base directory (default: ~/.convergecraft/state)
            owner: Owner tag written into lock records (default: user@host:pid)
        """
        super().__init__()
        self.state_dir = Path(state_dir) if state_dir else DEFAULT_STATE_DIR
        self.owner = owner or default_owner()
        self.resources_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(f"State store initialized at {self.state_dir}")

    @property
    def resources_dir(self) -> Path:
        return self.state_dir / "resources"

    @property
    def lock_path(self) -> Path:
        return self.state_dir / "lock.yaml"

    def _resource_path(self, resource_id: ResourceId) -> Path:
        return self.resources_dir / f"{resource_id}.yaml"

    # === Locking ===

    def acquire_lock(self, run_id: str) -> LockInfo:
        info = LockInfo(
            run_id=run_id,
            owner=self.owner,
            acquired_at=datetime.now(timezone.utc),
        )

        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            holder = self.lock_info()
            if holder is None:
                # Lock vanished between the two calls; report it as held anyway
                holder = LockInfo(run_id="unknown", owner="", acquired_at=info.acquired_at)
            raise holder.held_error() from None

        with os.fdopen(fd, "w", encoding="utf-8") as f:
            yaml.safe_dump(info.to_dict(), f, default_flow_style=False, sort_keys=False)
            f.flush()
            os.fsync(f.fileno())

        self._run_id = run_id
        logger.info(f"State lock acquired by run {run_id} ({self.owner})")
        return info

    def release_lock(self, run_id: str) -> None:
        holder = self.lock_info()

        if holder is None:
            logger.warning(f"Run {run_id} released a lock that was not held")
        elif holder.run_id != run_id:
            raise holder.held_error()
        else:
            self.lock_path.unlink(missing_ok=True)
            logger.info(f"State lock released by run {run_id}")

        self._run_id = None

    def lock_info(self) -> Optional[LockInfo]:
        if not self.lock_path.exists():
            return None

        try:
            data = yaml.safe_load(self.lock_path.read_text(encoding="utf-8")) or {}
        except FileNotFoundError:
            return None
        except yaml.YAMLError as e:
            logger.error(f"Unreadable lock record {self.lock_path}: {e}")
            data = {}

        if not isinstance(data, dict) or not data:
            # Created but not yet written (or truncated by a crash)
            return LockInfo(run_id="unknown", owner="", acquired_at=datetime.now(timezone.utc))

        return LockInfo.from_dict(data)

    def force_unlock(self) -> Optional[LockInfo]:
        broken = self.lock_info()
        self.lock_path.unlink(missing_ok=True)
        if broken:
            logger.warning(f"Force-unlocked state held by run {broken.run_id} ({broken.owner})")
        return broken

    # === State Access ===

    def read_all(self) -> dict[ResourceId, ResourceState]:
        states = {}
        for path in sorted(self.resources_dir.glob("*.yaml")):
            state = self._load(path)
            states[state.resource_id] = state
        return states

    def read(self, resource_id: ResourceId) -> Optional[ResourceState]:
        path = self._resource_path(resource_id)
        if not path.exists():
            return None
        return self._load(path)

    def write(self, resource_id: ResourceId, state: ResourceState) -> None:
        self._require_lock("write", resource_id)

        content = yaml.safe_dump(
            _plain(state.to_dict()),
            default_flow_style=False,
            sort_keys=False,
        )
        target = self._resource_path(resource_id)

        fd, tmp_name = tempfile.mkstemp(
            dir=self.resources_dir, prefix=f".{resource_id}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.debug(f"Wrote state for {resource_id} (revision {state.revision})")

    def delete(self, resource_id: ResourceId) -> None:
        self._require_lock("delete", resource_id)
        self._resource_path(resource_id).unlink(missing_ok=True)
        logger.debug(f"Deleted state for {resource_id}")

    def _load(self, path: Path) -> ResourceState:
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
            return ResourceState.from_dict(data)
        except (yaml.YAMLError, KeyError, TypeError, ValueError) as e:
            raise StateStoreError(f"Unreadable state file {path}: {e}") from e
