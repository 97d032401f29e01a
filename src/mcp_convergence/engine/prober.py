"""Current-state prober.

Refreshes last-applied state against what providers actually observe, so the
diff engine plans against reality and drift is reported.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterable, Optional

from ..utils.retry import async_retrying
from .diff import values_equal
from .errors import ProviderError, is_transient
from .interpolation import contains_interpolation, resolve_state, state_lookup
from .schema import (
    DriftItem,
    DriftReport,
    ExecuteOptions,
    Resource,
    ResourceId,
    ResourceState,
)

if TYPE_CHECKING:
    from ..providers import ProviderRegistry

logger = logging.getLogger(__name__)


class StateProber:
    """Probe providers for the observed state of stored resources."""

    def __init__(self, providers: ProviderRegistry, options: Optional[ExecuteOptions] = None):
        self.providers = providers
        self.options = options or ExecuteOptions()

    async def refresh(
        self,
        stored: dict[ResourceId, ResourceState],
        resources: Iterable[Resource] = (),
    ) -> tuple[dict[ResourceId, ResourceState], DriftReport]:
        """
        Build a refreshed baseline from stored state.

        - Resource no longer exists: dropped from the baseline (re-created),
          unless it is no longer declared; then it stays so it gets deleted
        - Attribute differs: observed value replaces the stored one (updated)
        - Probe failed: stored state kept as-is, reported as 'unknown'

        Attributes holding an interpolation compare against the value they
        were applied with, when one was recorded.

        Returns:
            Tuple of (refreshed baseline, drift report)
        """
        report = DriftReport(checked_at=datetime.now(timezone.utc))
        unordered = {r.id: r.unordered for r in resources}
        declared = set(unordered)
        semaphore = asyncio.Semaphore(max(1, self.options.pool_size))
        lookup = state_lookup(stored)

        async def probe_one(resource_id: ResourceId, state: ResourceState):
            async with semaphore:
                known = resolve_state(state, lookup)
                return resource_id, await self._probe(resource_id, known)

        probed = await asyncio.gather(
            *(probe_one(rid, state) for rid, state in sorted(stored.items()))
        )

        baseline: dict[ResourceId, ResourceState] = {}
        for resource_id, (found, observed, error) in probed:
            state = stored[resource_id]

            if error is not None:
                report.items.append(DriftItem(
                    resource_id=str(resource_id),
                    drift_type="unknown",
                    details=f"Probe failed: {error}",
                ))
                baseline[resource_id] = state
                continue

            if not found:
                report.items.append(DriftItem(
                    resource_id=str(resource_id),
                    drift_type="missing",
                    details=f"{resource_id} recorded in state but not found",
                ))
                if resource_id not in declared:
                    # The plan deletes it, which clears the stored entry
                    baseline[resource_id] = state
                continue

            if observed is None:
                # No provider can observe this resource: trust the record
                baseline[resource_id] = state
                continue

            baseline[resource_id] = self._merge(
                resource_id, state, observed, report, unordered.get(resource_id, frozenset())
            )

        if report.in_sync:
            logger.info(f"Refreshed {len(stored)} resources: no drift")
        else:
            logger.warning(f"Refreshed {len(stored)} resources: {report.drift_count} drift items")

        return baseline, report

    async def _probe(
        self,
        resource_id: ResourceId,
        state: ResourceState,
    ) -> tuple[bool, Optional[ResourceState], Optional[str]]:
        """Returns (found, observed, error)."""
        provider = self.providers.for_resource(resource_id)
        if provider is None:
            logger.debug(f"No provider for {resource_id}; skipping probe")
            return True, None, None

        try:
            async for attempt in async_retrying(
                is_transient,
                max_attempts=self.options.max_attempts,
                multiplier=self.options.backoff_multiplier,
                min_wait=self.options.backoff_min,
                max_wait=self.options.backoff_max,
            ):
                with attempt:
                    observed = await asyncio.wait_for(
                        provider.probe(resource_id, state),
                        timeout=self.options.operation_timeout,
                    )
        except (ProviderError, asyncio.TimeoutError) as e:
            logger.warning(f"Probe of {resource_id} failed: {e}")
            return True, None, str(e) or type(e).__name__

        if observed is None:
            return False, None, None
        return True, observed, None

    def _merge(
        self,
        resource_id: ResourceId,
        state: ResourceState,
        observed: ResourceState,
        report: DriftReport,
        unordered: frozenset[str] = frozenset(),
    ) -> ResourceState:
        attributes = dict(state.attributes)
        resolved = dict(state.resolved)

        for name, declared in state.attributes.items():
            if name not in observed.attributes:
                continue

            referencing = contains_interpolation(declared)
            if referencing:
                if name not in state.resolved:
                    continue  # no applied value to compare with
                expected = state.resolved[name]
            else:
                expected = declared

            actual = observed.attributes[name]
            if values_equal(expected, actual, unordered=name in unordered):
                continue

            if referencing:
                resolved[name] = actual
            else:
                attributes[name] = actual
            report.items.append(DriftItem(
                resource_id=str(resource_id),
                drift_type="modified",
                attribute=name,
                expected=expected,
                actual=actual,
                details=f"{name}: expected {expected!r}, actual {actual!r}",
            ))

        return ResourceState(
            resource_id=resource_id,
            attributes=attributes,
            outputs={**state.outputs, **observed.outputs},
            dependencies=list(state.dependencies),
            applied_at=state.applied_at,
            revision=state.revision,
            resolved=resolved,
        )
