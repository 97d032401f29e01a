"""Local filesystem provider.

Manages files and directories on the machine running the engine.

Resource types:
    local_directory: path, mode (octal string such as "0755", or an int)
    local_file:      path, content, mode

Relative paths resolve against the provider's ``root`` option (default: the
current directory). Outputs: ``absolute_path`` for both types, plus
``sha256`` and ``size`` for files.

Filesystem calls run in worker threads. A thread cannot be interrupted, so
an operation abandoned on timeout is waited for before the next operation
on the same resource starts.
"""
import asyncio
import errno
import functools
import hashlib
import logging
import os
from pathlib import Path
from typing import Any, Callable, Optional

from ..engine.errors import PermanentProviderError, ProviderError, TransientProviderError
from ..engine.schema import Action, ActionType, ResourceId, ResourceState
from .base import Provider, ProviderConfig

logger = logging.getLogger(__name__)

# errno values worth retrying
TRANSIENT_ERRNOS = {
    errno.EAGAIN,
    errno.EBUSY,
    errno.EINTR,
    errno.ETIMEDOUT,
}


def _provider_error(e: OSError, resource_id: ResourceId) -> ProviderError:
    """Classify an OSError as transient or permanent."""
    if e.errno in TRANSIENT_ERRNOS:
        return TransientProviderError(str(e), resource_id=str(resource_id))
    return PermanentProviderError(str(e), resource_id=str(resource_id))


def _format_mode(st_mode: int) -> str:
    return format(st_mode & 0o7777, "04o")


def _parse_mode(value: Any, resource_id: ResourceId) -> int:
    """Permission bits from an octal string ("0644") or a plain int (420).

    YAML reads an unquoted 0644 as the int 420, which already is the mode.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        if 0 <= value <= 0o7777:
            return value
    elif isinstance(value, str):
        try:
            mode = int(value, 8)
        except ValueError:
            mode = -1
        if 0 <= mode <= 0o7777:
            return mode

    raise PermanentProviderError(
        f"Invalid mode {value!r}: expected an octal string like '0644'",
        resource_id=str(resource_id),
    )


def _observed_mode(st_mode: int, declared: Any, resource_id: ResourceId) -> Any:
    """Observed mode, in the declared spelling when both mean the same bits."""
    actual = st_mode & 0o7777
    if declared is not None:
        try:
            if _parse_mode(declared, resource_id) == actual:
                return declared
        except PermanentProviderError:
            pass
    return _format_mode(actual)


class LocalProvider(Provider):
    """Provider for local files and directories."""

    resource_types = frozenset({"local_file", "local_directory"})

    def __init__(self, name: str = "local", config: Optional[ProviderConfig] = None):
        super().__init__(name, config)
        self.root = Path(self.config.options.get("root", ".")).expanduser()
        self._running: dict[ResourceId, asyncio.Future] = {}

    def resolve_path(self, path: Any) -> Path:
        candidate = Path(str(path)).expanduser()
        if not candidate.is_absolute():
            candidate = self.root / candidate
        return candidate.resolve()

    async def _in_thread(self, resource_id: ResourceId, func: Callable, *args) -> Any:
        """Run func in a worker thread, one at a time per resource."""
        previous = self._running.get(resource_id)
        if previous is not None and not previous.done():
            logger.warning(f"Waiting for an abandoned operation on {resource_id} to finish")
            await asyncio.wait({previous})

        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, functools.partial(func, *args))
        self._running[resource_id] = future
        try:
            # Shielded: a timeout abandons the wait, the thread runs on
            return await asyncio.shield(future)
        except OSError as e:
            raise _provider_error(e, resource_id) from e
        finally:
            if future.done() and self._running.get(resource_id) is future:
                del self._running[resource_id]

    # --- probe ---

    async def probe(
        self,
        resource_id: ResourceId,
        known: Optional[ResourceState] = None,
    ) -> Optional[ResourceState]:
        self._check_supported(resource_id)

        if known is None or "path" not in known.attributes:
            # Nothing tells us where to look
            return None

        return await self._in_thread(resource_id, self._probe, resource_id, known)

    def _probe(self, resource_id: ResourceId, known: ResourceState) -> Optional[ResourceState]:
        path = known.attributes["path"]
        declared_mode = known.attributes.get("mode")
        target = self.resolve_path(path)

        if resource_id.type == "local_directory":
            if not target.is_dir():
                return None
            return ResourceState(
                resource_id=resource_id,
                attributes={
                    "path": path,
                    "mode": _observed_mode(target.stat().st_mode, declared_mode, resource_id),
                },
                outputs={"absolute_path": str(target)},
            )

        if not target.is_file():
            return None

        raw = target.read_bytes()
        try:
            content = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise PermanentProviderError(
                f"{target} is not valid UTF-8 text", resource_id=str(resource_id)
            ) from None

        return ResourceState(
            resource_id=resource_id,
            attributes={
                "path": path,
                "content": content,
                "mode": _observed_mode(target.stat().st_mode, declared_mode, resource_id),
            },
            outputs=self._file_outputs(target, raw),
        )

    # --- apply ---

    async def apply(self, action: Action) -> Optional[ResourceState]:
        self._check_supported(action.resource_id)
        return await self._in_thread(action.resource_id, self._apply, action)

    def _apply(self, action: Action) -> Optional[ResourceState]:
        resource_id = action.resource_id

        if action.action_type == ActionType.DELETE:
            if action.prior is not None and "path" in action.prior.attributes:
                self._remove(resource_id, self.resolve_path(action.prior.attributes["path"]))
            return None

        if action.resource is None:
            raise PermanentProviderError(
                f"No desired attributes for {action.action_type.value}",
                resource_id=str(resource_id),
            )

        attributes = action.resource.attributes
        if "path" not in attributes:
            raise PermanentProviderError("Missing required attribute: path", str(resource_id))

        target = self.resolve_path(attributes["path"])

        if resource_id.type == "local_directory":
            return self._ensure_directory(resource_id, target, attributes)
        return self._ensure_file(resource_id, target, attributes)

    async def retire(self, action: Action) -> None:
        """Remove the prior path of a moved file or directory."""
        self._check_supported(action.resource_id)
        if action.prior is None or action.resource is None:
            return
        old = action.prior.attributes.get("path")
        new = action.resource.attributes.get("path")
        if old is None or new is None:
            return

        old_path = self.resolve_path(old)
        if old_path != self.resolve_path(new):
            await self._in_thread(action.resource_id, self._remove, action.resource_id, old_path)

    def _ensure_directory(
        self,
        resource_id: ResourceId,
        target: Path,
        attributes: dict[str, Any],
    ) -> ResourceState:
        mode = _parse_mode(attributes["mode"], resource_id) if "mode" in attributes else None
        target.mkdir(parents=True, exist_ok=True)
        if mode is not None:
            target.chmod(mode)

        logger.info(f"Ensured directory {target}")
        return ResourceState(
            resource_id=resource_id,
            attributes=dict(attributes),
            outputs={"absolute_path": str(target)},
        )

    def _ensure_file(
        self,
        resource_id: ResourceId,
        target: Path,
        attributes: dict[str, Any],
    ) -> ResourceState:
        content = attributes.get("content", "")
        if not isinstance(content, str):
            raise PermanentProviderError(
                f"content must be a string, got {type(content).__name__}",
                resource_id=str(resource_id),
            )
        mode = _parse_mode(attributes["mode"], resource_id) if "mode" in attributes else None

        raw = content.encode("utf-8")
        target.parent.mkdir(parents=True, exist_ok=True)

        tmp = target.with_name(f".{target.name}.tmp")
        tmp.write_bytes(raw)
        if mode is not None:
            tmp.chmod(mode)
        os.replace(tmp, target)

        logger.info(f"Wrote {len(raw)} bytes to {target}")
        return ResourceState(
            resource_id=resource_id,
            attributes=dict(attributes),
            outputs=self._file_outputs(target, raw),
        )

    def _remove(self, resource_id: ResourceId, target: Path) -> None:
        if resource_id.type == "local_directory":
            if not target.exists():
                return
            try:
                target.rmdir()
            except OSError as e:
                if e.errno in (errno.ENOTEMPTY, errno.EEXIST):
                    raise PermanentProviderError(
                        f"Directory {target} is not empty", resource_id=str(resource_id)
                    ) from e
                raise
            logger.info(f"Removed directory {target}")
        else:
            target.unlink(missing_ok=True)
            logger.info(f"Removed file {target}")

    @staticmethod
    def _file_outputs(target: Path, raw: bytes) -> dict[str, Any]:
        return {
            "absolute_path": str(target),
            "sha256": hashlib.sha256(raw).hexdigest(),
            "size": len(raw),
        }
