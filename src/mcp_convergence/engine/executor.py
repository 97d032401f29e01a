"""Executor for applying change plans.

Applies a plan level by level: every operation of dependency depth N
finishes before depth N+1 starts. Operations inside a level run on a bounded
worker pool. A failed resource takes its descendants down with it (Skipped);
independent branches keep converging.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from ..utils.audit_log import AuditTrail
from ..utils.logging_config import timed_section
from ..utils.retry import async_retrying
from .errors import InterpolationError, ProviderError, TransientProviderError, is_transient
from .graph import DependencyGraph, resource_dependencies
from .interpolation import contains_interpolation, resolve, resolve_state, state_lookup
from .schema import (
    Action,
    ActionType,
    ChangePlan,
    ExecuteOptions,
    ExecutionResult,
    ExecutionStatus,
    ResourceId,
    ResourceState,
    RunSummary,
)

if TYPE_CHECKING:
    from ..providers import Provider, ProviderRegistry
    from ..state_store import StateStore

logger = logging.getLogger(__name__)


class ConvergenceExecutor:
    """Execute change plans against providers, recording state as it goes."""

    def __init__(
        self,
        providers: ProviderRegistry,
        store: StateStore,
        options: Optional[ExecuteOptions] = None,
    ):
        """
        Initialize executor.

        Args:
            providers: Registry resolving the provider of each resource
            store: State store; the caller must hold its lock
            options: Pool size, retry policy and timeouts
        """
        self.providers = providers
        self.store = store
        self.options = options or ExecuteOptions()
        self._states: dict[ResourceId, ResourceState] = {}
        self._initial: dict[ResourceId, ResourceState] = {}
        # Updated resources whose prior location is cleaned up at the end
        self._retiring: dict[ResourceId, tuple[Provider, Action]] = {}

    async def execute(
        self,
        plan: ChangePlan,
        graph: DependencyGraph,
        run_id: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RunSummary:
        """
        Apply a change plan in dependency order.

        Args:
            plan: Change plan to apply
            graph: Acyclic dependency graph covering the plan
            run_id: Identifier of this run (audit trail)
            cancel_event: When set, no further level is started

        Returns:
            RunSummary with one ExecutionResult per planned resource
        """
        summary = RunSummary(run_id=run_id, plan=plan)
        actions = {a.resource_id: a for a in plan.actions}
        statuses: dict[ResourceId, ExecutionStatus] = {}
        audit = AuditTrail(run_id, user=self.options.user)

        # Interpolations resolve against this view, updated after each write
        self._states = self.store.read_all()
        self._initial = dict(self._states)
        self._retiring = {}

        levels = graph.levels()
        logger.info(
            f"Executing {plan.total_changes} changes across {len(levels)} levels "
            f"(pool size {self.options.pool_size})"
        )

        for depth, level in enumerate(levels):
            if cancel_event is not None and cancel_event.is_set():
                summary.cancelled = True
                remaining = [rid for lvl in levels[depth:] for rid in lvl if rid in actions]
                logger.warning(f"Run cancelled before level {depth}; skipping {len(remaining)} resources")
                for resource_id in remaining:
                    summary.results.append(self._skipped(actions[resource_id], "run cancelled"))
                break

            ready: list[Action] = []
            for resource_id in level:
                action = actions.get(resource_id)
                if action is None:
                    continue

                blocker = self._blocking_dependency(graph, resource_id, statuses)
                if blocker is not None:
                    result = self._skipped(action, f"dependency {blocker} did not succeed")
                elif action.action_type == ActionType.NOOP:
                    result = ExecutionResult(
                        resource_id=resource_id,
                        action_type=ActionType.NOOP,
                        status=ExecutionStatus.SUCCESS,
                    )
                else:
                    ready.append(action)
                    continue

                statuses[resource_id] = result.status
                summary.results.append(result)

            for result in await self._run_level(ready, audit):
                statuses[result.resource_id] = result.status
                summary.results.append(result)

        await self._retire_updated(graph, statuses, summary)

        counts = summary.counts
        logger.info(
            f"Run {run_id} finished: {counts['create']} created, {counts['update']} updated, "
            f"{counts['delete']} deleted, {counts['no-op']} unchanged, "
            f"{counts['failed']} failed, {counts['skipped']} skipped"
        )
        return summary

    def _blocking_dependency(
        self,
        graph: DependencyGraph,
        resource_id: ResourceId,
        statuses: dict[ResourceId, ExecutionStatus],
    ) -> Optional[ResourceId]:
        """First dependency that did not succeed, if any."""
        for dep in sorted(graph.deps.get(resource_id, ())):
            if statuses.get(dep) != ExecutionStatus.SUCCESS:
                return dep
        return None

    def _skipped(self, action: Action, reason: str) -> ExecutionResult:
        logger.info(f"Skipping {action.resource_id}: {reason}")
        return ExecutionResult(
            resource_id=action.resource_id,
            action_type=action.action_type,
            status=ExecutionStatus.SKIPPED,
            reason=reason,
        )

    async def _run_level(self, actions: list[Action], audit: AuditTrail) -> list[ExecutionResult]:
        """Run one level on the worker pool; returns once every operation finished."""
        if not actions:
            return []

        queue: asyncio.Queue[Action] = asyncio.Queue()
        for action in actions:
            queue.put_nowait(action)

        results: list[ExecutionResult] = []

        async def worker() -> None:
            while True:
                try:
                    action = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    results.append(await self._run_action(action, audit))
                finally:
                    queue.task_done()

        pool_size = max(1, min(self.options.pool_size, len(actions)))
        await asyncio.gather(*(worker() for _ in range(pool_size)))

        return sorted(results, key=lambda r: r.resource_id)

    async def _run_action(self, action: Action, audit: AuditTrail) -> ExecutionResult:
        """Apply one action with retries; never raises for resource-level failures."""
        resource_id = action.resource_id
        result = ExecutionResult(
            resource_id=resource_id,
            action_type=action.action_type,
            status=ExecutionStatus.FAILED,
            started_at=time.monotonic(),
        )
        before = self._states.get(resource_id)
        after: Optional[ResourceState] = None

        try:
            provider = self.providers.for_resource(resource_id)
            if provider is None:
                raise ProviderError(f"No provider serves type '{resource_id.type}'")

            prepared = self._prepare(action)

            async with timed_section("apply", target=str(resource_id), action=action.action_type.value):
                applied = await self._apply_with_retry(provider, prepared, result)

            after = self._record(action, prepared, applied)
            result.status = ExecutionStatus.SUCCESS
            if action.action_type == ActionType.UPDATE:
                self._retiring[resource_id] = (provider, prepared)

        except (ProviderError, InterpolationError) as e:
            result.reason = str(e)
            logger.error(f"{action.action_type.value} {resource_id} failed: {e}")

        except Exception as e:
            result.reason = f"{type(e).__name__}: {e}"
            logger.exception(f"{action.action_type.value} {resource_id} raised")

        finally:
            result.finished_at = time.monotonic()
            audit.log_change(
                resource_id=str(resource_id),
                action=action.action_type.value,
                success=result.status == ExecutionStatus.SUCCESS,
                attempts=result.attempts,
                error=result.reason,
                before_state=before.to_dict() if before else None,
                after_state=after.to_dict() if after else None,
            )

        return result

    def _prepare(self, action: Action) -> Action:
        """Resolve interpolations against the state of already-applied resources."""
        lookup = state_lookup(self._states)
        resource = action.resource
        if resource is not None and contains_interpolation(resource.attributes):
            resolved = dataclasses.replace(resource, attributes=resolve(resource.attributes, lookup))
            action = dataclasses.replace(action, resource=resolved)

        # Providers locate the existing object from the prior state (e.g. a path),
        # which resolves against the state as it was when the run started
        if action.prior is not None:
            prior = resolve_state(action.prior, state_lookup(self._initial))
            action = dataclasses.replace(action, prior=prior)
        return action

    async def _apply_with_retry(
        self,
        provider: Provider,
        action: Action,
        result: ExecutionResult,
    ) -> Optional[ResourceState]:
        """Call provider.apply, retrying transient failures with backoff."""
        timeout = self.options.operation_timeout
        applied: Optional[ResourceState] = None

        async for attempt in async_retrying(
            is_transient,
            max_attempts=self.options.max_attempts,
            multiplier=self.options.backoff_multiplier,
            min_wait=self.options.backoff_min,
            max_wait=self.options.backoff_max,
        ):
            with attempt:
                result.attempts = attempt.retry_state.attempt_number
                try:
                    applied = await asyncio.wait_for(provider.apply(action), timeout=timeout)
                except asyncio.TimeoutError:
                    raise TransientProviderError(
                        f"operation timed out after {timeout}s",
                        resource_id=str(action.resource_id),
                    ) from None

        return applied

    async def _retire_updated(
        self,
        graph: DependencyGraph,
        statuses: dict[ResourceId, ExecutionStatus],
        summary: RunSummary,
    ) -> None:
        """
        Let providers clean up what updates left at their prior location.

        Runs dependents first, and only for resources whose dependents all
        succeeded: a dependent still sitting in the old location keeps it.
        """
        if not self._retiring:
            return

        order = [rid for rid in reversed(graph.topological_order()) if rid in self._retiring]
        for resource_id in order:
            provider, action = self._retiring.pop(resource_id)
            result = summary.result_for(resource_id)

            waiting = sorted(
                d for d in graph.dependents(resource_id)
                if statuses.get(d) != ExecutionStatus.SUCCESS
            )
            if waiting:
                logger.warning(f"Keeping prior location of {resource_id}: {waiting[0]} did not succeed")
                continue

            try:
                await asyncio.wait_for(provider.retire(action), timeout=self.options.operation_timeout)
            except (ProviderError, asyncio.TimeoutError) as e:
                reason = str(e) or type(e).__name__
                logger.warning(f"Cleanup after updating {resource_id} failed: {reason}")
                if result is not None:
                    result.reason = f"prior location kept: {reason}"
            except Exception as e:
                logger.exception(f"Cleanup after updating {resource_id} raised")
                if result is not None:
                    result.reason = f"prior location kept: {type(e).__name__}: {e}"

        self._retiring.clear()

    def _record(
        self,
        action: Action,
        prepared: Action,
        applied: Optional[ResourceState],
    ) -> Optional[ResourceState]:
        """Write the outcome of a successful action to the state store.

        Attributes are stored as declared; the values referencing attributes
        were applied with go to ``resolved``.
        """
        resource_id = action.resource_id

        if action.action_type == ActionType.DELETE:
            self.store.delete(resource_id)
            self._states.pop(resource_id, None)
            return None

        resource = action.resource
        previous = self._states.get(resource_id)

        state = ResourceState(
            resource_id=resource_id,
            attributes=dict(resource.attributes),
            resolved={
                name: prepared.resource.attributes[name]
                for name, value in resource.attributes.items()
                if contains_interpolation(value)
            },
            outputs=dict(applied.outputs) if applied else {},
            dependencies=sorted(resource_dependencies(resource)),
            applied_at=datetime.now(timezone.utc),
            revision=(previous.revision if previous else 0) + 1,
        )
        self.store.write(resource_id, state)
        self._states[resource_id] = state
        return state
