"""Main Convergence Engine - orchestrates the full apply workflow.

Provides a single entry point for:
1. Validating the desired resource set
2. Locking and reading the state store
3. Refreshing stored state against providers (drift)
4. Calculating the change plan
5. Building the dependency graph
6. Executing level by level with error handling
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import TYPE_CHECKING, Iterable, Optional

from ..utils.logging_config import timed
from .diff import DiffEngine, summarize_plan
from .errors import ValidationError
from .executor import ConvergenceExecutor
from .graph import DependencyGraph, GraphBuilder
from .prober import StateProber
from .schema import ChangePlan, DriftReport, Resource, ResourceId, ResourceState, RunSummary, ValidationResult
from .validator import ResourceValidator

if TYPE_CHECKING:
    from ..config.settings import EngineSettings
    from ..providers import ProviderRegistry
    from ..state_store import StateStore

logger = logging.getLogger(__name__)


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


class ConvergenceEngine:
    """
    Main engine for converging infrastructure on a declared resource set.

    Usage:
        engine = ConvergenceEngine(store, providers)
        summary = await engine.apply(resources, dry_run=True)
    """

    def __init__(
        self,
        store: StateStore,
        providers: ProviderRegistry,
        settings: Optional[EngineSettings] = None,
    ):
        """
        Initialize the Convergence Engine.

        Args:
            store: State store holding last-applied state
            providers: Registry of providers serving resource types
            settings: Pool size, retry policy, timeouts and refresh flag
        """
        if settings is None:
            from ..config.settings import EngineSettings
            settings = EngineSettings()

        self.store = store
        self.providers = providers
        self.settings = settings
        self.options = settings.execute_options()
        self.validator = ResourceValidator(providers)
        self.diff_engine = DiffEngine()
        self.graph_builder = GraphBuilder()
        self.prober = StateProber(providers, self.options)
        self._cancel_event: Optional[asyncio.Event] = None

    def validate(self, resources: Iterable[Resource]) -> ValidationResult:
        """Validate a resource set (for external use)."""
        return self.validator.validate(resources)

    async def plan(
        self,
        resources: Iterable[Resource],
        refresh: Optional[bool] = None,
    ) -> tuple[ChangePlan, Optional[DriftReport]]:
        """
        Calculate the change plan without taking the lock.

        Args:
            resources: Desired resource set
            refresh: Probe providers first (defaults to settings.refresh)

        Returns:
            Tuple of (plan, drift report or None when not refreshed)

        Raises:
            ValidationError: If the resource set is invalid
            CycleError: If the dependencies form a cycle
        """
        resources = self._checked(resources)
        plan, drift, _ = await self._calculate(resources, self.store.read_all(), refresh)
        return plan, drift

    async def preview(self, resources: Iterable[Resource]) -> str:
        """Human-readable plan summary."""
        plan, drift = await self.plan(resources)
        summary = summarize_plan(plan)
        if drift is not None and not drift.in_sync:
            summary += "\n\n" + drift.summary()
        return summary

    async def apply(
        self,
        resources: Iterable[Resource],
        dry_run: bool = False,
        run_id: Optional[str] = None,
        config_checksum: Optional[str] = None,
    ) -> RunSummary:
        """
        Converge on a desired resource set.

        This is the main entry point. It:
        1. Validates the resource set
        2. Acquires the state lock (held until the run ends)
        3. Refreshes stored state and calculates the plan
        4. Builds and checks the dependency graph
        5. Executes (or dry-runs) the plan

        Args:
            resources: Desired resource set
            dry_run: If True, report the plan without touching providers or state
            run_id: Identifier for this run (generated when omitted)
            config_checksum: Checksum of the declaration, carried into the summary

        Returns:
            RunSummary with one result per planned resource

        Raises:
            ValidationError: If the resource set is invalid
            LockHeldError: If another run holds the state lock
            CycleError: If the dependencies form a cycle (nothing is executed)
        """
        run_id = run_id or new_run_id()
        resources = self._checked(resources)

        logger.info(f"{'DRY RUN: ' if dry_run else ''}Starting run {run_id} ({len(resources)} resources)")

        with self.store.locked(run_id):
            plan, drift, graph = await self._calculate(resources, self.store.read_all())

            if dry_run:
                logger.info(f"Dry run {run_id}: {plan.total_changes} changes planned")
                return RunSummary(
                    run_id=run_id,
                    dry_run=True,
                    plan=plan,
                    drift=drift,
                    config_checksum=config_checksum,
                )

            self._cancel_event = asyncio.Event()
            executor = ConvergenceExecutor(self.providers, self.store, self.options)
            try:
                summary = await executor.execute(plan, graph, run_id, self._cancel_event)
            finally:
                self._cancel_event = None

        summary.drift = drift
        summary.config_checksum = config_checksum
        return summary

    def cancel(self) -> bool:
        """
        Stop the running apply after the current level.

        Returns:
            True if a run was in progress
        """
        if self._cancel_event is None:
            return False
        logger.warning("Cancellation requested")
        self._cancel_event.set()
        return True

    def _checked(self, resources: Iterable[Resource]) -> list[Resource]:
        resources = sorted(resources, key=lambda r: r.id)
        validation = self.validator.validate(resources)
        for warning in validation.warnings:
            logger.warning(warning)
        if not validation.valid:
            raise ValidationError(validation.errors)
        return resources

    @timed("plan")
    async def _calculate(
        self,
        resources: list[Resource],
        stored: dict[ResourceId, ResourceState],
        refresh: Optional[bool] = None,
    ) -> tuple[ChangePlan, Optional[DriftReport], DependencyGraph]:
        refresh = self.settings.refresh if refresh is None else refresh

        drift = None
        baseline = stored
        if refresh and stored:
            baseline, drift = await self.prober.refresh(stored, resources)

        plan = self.diff_engine.calculate(resources, baseline)
        graph = self.graph_builder.build(plan, resources)

        counts = plan.counts()
        logger.info(
            f"Plan: {counts['create']} to create, {counts['update']} to update, "
            f"{counts['delete']} to delete, {counts['no-op']} unchanged"
        )
        return plan, drift, graph
