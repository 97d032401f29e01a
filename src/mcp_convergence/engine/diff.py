"""Diff engine for calculating changes between desired and stored state.

Produces one action per resource: create, update, delete or no-op.
"""
from typing import Any, Iterable, Optional

from .errors import InterpolationError
from .interpolation import Lookup, contains_interpolation, resolve
from .schema import (
    Action,
    ActionType,
    AttributeChange,
    ChangePlan,
    Resource,
    ResourceId,
    ResourceState,
)

_MISSING = object()


def values_equal(a: Any, b: Any, unordered: bool = False) -> bool:
    """
    Structural equality for attribute values.

    Sets compare as sets, sequences positionally (or as sets when
    ``unordered`` is True), mappings key by key. ``True`` never equals ``1``.
    """
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b

    if isinstance(a, dict) and isinstance(b, dict):
        if a.keys() != b.keys():
            return False
        return all(values_equal(a[k], b[k]) for k in a)

    if isinstance(a, (set, frozenset)) or isinstance(b, (set, frozenset)):
        if not isinstance(a, (set, frozenset, list, tuple)):
            return False
        if not isinstance(b, (set, frozenset, list, tuple)):
            return False
        return _same_members(a, b)

    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        if unordered:
            return _same_members(a, b)
        if len(a) != len(b):
            return False
        return all(values_equal(x, y) for x, y in zip(a, b))

    if isinstance(a, (dict, list, tuple)) or isinstance(b, (dict, list, tuple)):
        return False

    return a == b


def _same_members(a: Iterable, b: Iterable) -> bool:
    left = list(a)
    right = list(b)
    # Each element of one side must match some element of the other.
    return (
        all(any(values_equal(x, y) for y in right) for x in left)
        and all(any(values_equal(y, x) for x in left) for y in right)
    )


class _PendingValue(Exception):
    """A referenced value is only known once its resource has been applied."""


class DiffEngine:
    """Calculate differences between desired and stored state."""

    def calculate(
        self,
        resources: Iterable[Resource],
        baseline: dict[ResourceId, ResourceState],
    ) -> ChangePlan:
        """
        Calculate the change plan for a desired resource set.

        A resource whose references resolve to something other than the
        values it was last applied with is updated, including when the
        referenced resource is itself being created or updated in this plan.

        Args:
            resources: Desired resources for this run
            baseline: Last-applied (or refreshed) state per resource id

        Returns:
            ChangePlan with one action per desired or stored resource
        """
        desired = sorted(resources, key=lambda r: r.id)
        by_id = {r.id: r for r in desired}
        planned: dict[ResourceId, Action] = {}
        visiting: set[ResourceId] = set()

        def plan_resource(resource_id: ResourceId) -> Action:
            if resource_id in planned:
                return planned[resource_id]
            visiting.add(resource_id)
            try:
                action = self.diff_resource(by_id[resource_id], baseline.get(resource_id), lookup)
            finally:
                visiting.discard(resource_id)
            planned[resource_id] = action
            return action

        def lookup(ref: ResourceId, attribute: str) -> Any:
            state = baseline.get(ref)
            if ref not in by_id:
                if state is None:
                    raise KeyError(attribute)
                return state.lookup(attribute)
            if ref in visiting:
                # Cycle; the graph builder reports it
                raise _PendingValue(f"{ref}.{attribute}")

            if plan_resource(ref).action_type == ActionType.NOOP:
                return state.lookup(attribute)

            declared = by_id[ref].attributes
            if attribute not in declared or (state is not None and attribute in state.outputs):
                raise _PendingValue(f"{ref}.{attribute}")
            return resolve(declared[attribute], lookup)

        plan = ChangePlan()
        for resource in desired:
            plan.actions.append(plan_resource(resource.id))

        # Anything stored but no longer declared is removed
        for resource_id in sorted(baseline):
            if resource_id not in by_id:
                plan.actions.append(Action(
                    resource_id=resource_id,
                    action_type=ActionType.DELETE,
                    prior=baseline[resource_id],
                ))

        return plan

    def diff_resource(
        self,
        resource: Resource,
        state: Optional[ResourceState],
        lookup: Optional[Lookup] = None,
    ) -> Action:
        """Calculate the action needed for a single resource.

        Without a lookup, referencing attributes compare in declared form only.
        """
        if state is None:
            return Action(
                resource_id=resource.id,
                action_type=ActionType.CREATE,
                resource=resource,
                changes={
                    name: AttributeChange(name=name, old=None, new=value)
                    for name, value in resource.attributes.items()
                },
            )

        changes = self._diff_attributes(resource, state)
        if lookup is not None:
            changes.update(self._diff_references(resource, state, lookup, changes))

        return Action(
            resource_id=resource.id,
            action_type=ActionType.UPDATE if changes else ActionType.NOOP,
            resource=resource,
            prior=state,
            changes=dict(sorted(changes.items())),
        )

    def _diff_attributes(
        self,
        resource: Resource,
        state: ResourceState,
    ) -> dict[str, AttributeChange]:
        """Compare declared attributes only. Outputs are never diffed."""
        changes = {}
        names = set(resource.attributes) | set(state.attributes)

        for name in sorted(names):
            new = resource.attributes.get(name, _MISSING)
            old = state.attributes.get(name, _MISSING)

            if new is _MISSING or old is _MISSING:
                changes[name] = AttributeChange(
                    name=name,
                    old=None if old is _MISSING else old,
                    new=None if new is _MISSING else new,
                )
                continue

            if not values_equal(new, old, unordered=name in resource.unordered):
                changes[name] = AttributeChange(name=name, old=old, new=new)

        return changes

    def _diff_references(
        self,
        resource: Resource,
        state: ResourceState,
        lookup: Lookup,
        changes: dict[str, AttributeChange],
    ) -> dict[str, AttributeChange]:
        """Compare referencing attributes by the values they resolve to."""
        found = {}
        for name, value in sorted(resource.attributes.items()):
            if name in changes or not contains_interpolation(value):
                continue

            old = state.resolved.get(name, _MISSING)
            try:
                new = resolve(value, lookup)
            except (_PendingValue, InterpolationError):
                # Known after apply: shown in declared form
                found[name] = AttributeChange(
                    name=name, old=None if old is _MISSING else old, new=value
                )
                continue

            if old is _MISSING or not values_equal(new, old, unordered=name in resource.unordered):
                found[name] = AttributeChange(
                    name=name, old=None if old is _MISSING else old, new=new
                )

        return found


def summarize_plan(plan: ChangePlan) -> str:
    """
    Create a human-readable summary of a change plan.

    Useful for dry-run output and logging.
    """
    if plan.no_change:
        return "No changes needed - stored state matches desired state"

    lines = [f"Changes to apply ({plan.total_changes} total):", ""]

    for action in plan.actions:
        if action.action_type == ActionType.CREATE:
            lines.append(f"  [+] Create {action.resource_id}")
            for change in action.changes.values():
                lines.append(f"      {change.name}: {change.new!r}")

        elif action.action_type == ActionType.UPDATE:
            lines.append(f"  [~] Update {action.resource_id}")
            for change in action.changes.values():
                lines.append(f"      {change.name}: {change.old!r} -> {change.new!r}")

        elif action.action_type == ActionType.DELETE:
            lines.append(f"  [-] Delete {action.resource_id}")

    counts = plan.counts()
    lines.append("")
    lines.append(
        f"Plan: {counts['create']} to create, {counts['update']} to update, "
        f"{counts['delete']} to delete, {counts['no-op']} unchanged"
    )

    return "\n".join(lines)
