"""In-memory provider.

Keeps resources in a dict and supports failure injection and artificial
latency, which makes it useful for tests, demonstrations and drift
simulation. Any resource type prefixed ``memory_`` is accepted.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from ..engine.errors import PermanentProviderError, TransientProviderError
from ..engine.schema import Action, ActionType, ResourceId, ResourceState
from .base import Provider, ProviderConfig

logger = logging.getLogger(__name__)


@dataclass
class CallRecord:
    """One apply call as observed by the provider."""
    resource_id: ResourceId
    action_type: ActionType
    started_at: float
    finished_at: float = 0.0
    succeeded: bool = False


class InMemoryProvider(Provider):
    """Provider backed by a dict of resource states."""

    def __init__(self, name: str = "memory", config: Optional[ProviderConfig] = None):
        super().__init__(name, config)
        options = self.config.options
        self.latency: float = float(options.get("latency", 0.0))
        self.objects: dict[ResourceId, ResourceState] = {}
        self.calls: list[CallRecord] = []
        self._failures: dict[ResourceId, list[bool]] = {}
        self._delays: dict[ResourceId, float] = {}
        self._serial = 0

    def supports(self, resource_type: str) -> bool:
        return resource_type.startswith(f"{self.name}_")

    # --- Test controls ---

    def fail(self, resource_id: ResourceId, times: int = 1, transient: bool = False) -> None:
        """Make the next ``times`` applies of a resource fail."""
        self._failures.setdefault(resource_id, []).extend([transient] * times)

    def delay(self, resource_id: ResourceId, seconds: float) -> None:
        """Add latency to applies of one resource."""
        self._delays[resource_id] = seconds

    def drift(self, resource_id: ResourceId, **attributes: Any) -> None:
        """Change an object out of band."""
        self.objects[resource_id].attributes.update(attributes)

    def remove(self, resource_id: ResourceId) -> None:
        """Delete an object out of band."""
        self.objects.pop(resource_id, None)

    def calls_for(self, resource_id: ResourceId) -> list[CallRecord]:
        return [c for c in self.calls if c.resource_id == resource_id]

    # --- Provider interface ---

    async def probe(
        self,
        resource_id: ResourceId,
        known: Optional[ResourceState] = None,
    ) -> Optional[ResourceState]:
        self._check_supported(resource_id)
        if self.latency:
            await asyncio.sleep(self.latency)
        state = self.objects.get(resource_id)
        if state is None:
            return None
        return ResourceState(
            resource_id=resource_id,
            attributes=dict(state.attributes),
            outputs=dict(state.outputs),
        )

    async def apply(self, action: Action) -> Optional[ResourceState]:
        resource_id = action.resource_id
        self._check_supported(resource_id)

        record = CallRecord(
            resource_id=resource_id,
            action_type=action.action_type,
            started_at=time.monotonic(),
        )
        self.calls.append(record)

        try:
            await asyncio.sleep(self._delays.get(resource_id, self.latency))

            pending = self._failures.get(resource_id)
            if pending:
                transient = pending.pop(0)
                if transient:
                    raise TransientProviderError("injected failure", resource_id=str(resource_id))
                raise PermanentProviderError("injected failure", resource_id=str(resource_id))

            result = self._apply(action)
            record.succeeded = True
            return result
        finally:
            record.finished_at = time.monotonic()

    def _apply(self, action: Action) -> Optional[ResourceState]:
        resource_id = action.resource_id

        if action.action_type == ActionType.DELETE:
            if self.objects.pop(resource_id, None) is None:
                logger.debug(f"{resource_id} already absent")
            return None

        if action.resource is None:
            raise PermanentProviderError(
                f"No desired attributes for {action.action_type.value}",
                resource_id=str(resource_id),
            )

        existing = self.objects.get(resource_id)
        if existing is None:
            self._serial += 1
            outputs = {"id": f"{resource_id.name}-{self._serial}"}
        else:
            outputs = dict(existing.outputs)

        state = ResourceState(
            resource_id=resource_id,
            attributes=dict(action.resource.attributes),
            outputs=outputs,
        )
        self.objects[resource_id] = state
        return ResourceState(
            resource_id=resource_id,
            attributes=dict(state.attributes),
            outputs=dict(state.outputs),
        )
