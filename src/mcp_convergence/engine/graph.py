"""Dependency graph builder.

Orders the actions of a change plan so that every resource is applied after
the resources it depends on. Edges come from explicit ``depends_on``
references, from ``${type.name.attr}`` interpolations, and from the stored
dependencies of resources being deleted.
"""
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .errors import CycleError
from .interpolation import find_references
from .schema import ActionType, ChangePlan, Resource, ResourceId

logger = logging.getLogger(__name__)


def resource_dependencies(resource: Resource) -> set[ResourceId]:
    """Explicit plus implicit (interpolated) dependencies of a resource."""
    deps = set(resource.depends_on)
    deps.update(ref for ref, _attr in find_references(resource.attributes))
    return deps


@dataclass
class DependencyGraph:
    """Directed graph over resource ids. deps[B] holds every A that B waits for."""
    deps: dict[ResourceId, set[ResourceId]] = field(default_factory=dict)

    @property
    def nodes(self) -> list[ResourceId]:
        return sorted(self.deps)

    def add_node(self, node: ResourceId) -> None:
        self.deps.setdefault(node, set())

    def add_edge(self, before: ResourceId, after: ResourceId) -> None:
        """Record that ``before`` must be applied before ``after``."""
        self.add_node(before)
        self.add_node(after)
        self.deps[after].add(before)

    def dependents(self, node: ResourceId) -> set[ResourceId]:
        """Direct dependents of a node."""
        return {n for n, deps in self.deps.items() if node in deps}

    def descendants(self, node: ResourceId) -> set[ResourceId]:
        """Every node that transitively depends on ``node``."""
        found: set[ResourceId] = set()
        stack = [node]
        while stack:
            current = stack.pop()
            for dependent in self.dependents(current):
                if dependent not in found:
                    found.add(dependent)
                    stack.append(dependent)
        return found

    def find_cycle(self) -> Optional[list[ResourceId]]:
        """
        Depth-first search with recursion-stack tracking.

        Returns the members of the first cycle found (in edge order), or
        None if the graph is acyclic.
        """
        WHITE, GRAY, BLACK = 0, 1, 2
        color = {node: WHITE for node in self.deps}
        path: list[ResourceId] = []

        for root in self.nodes:
            if color[root] != WHITE:
                continue

            # Iterative DFS: stack of (node, iterator over its dependencies)
            color[root] = GRAY
            path.append(root)
            stack = [(root, iter(sorted(self.deps[root])))]

            while stack:
                node, children = stack[-1]
                child = next(children, None)

                if child is None:
                    color[node] = BLACK
                    path.pop()
                    stack.pop()
                    continue

                if color[child] == GRAY:
                    cycle = path[path.index(child):]
                    # path follows "depends on" edges; report in apply order
                    return list(reversed(cycle))

                if color[child] == WHITE:
                    color[child] = GRAY
                    path.append(child)
                    stack.append((child, iter(sorted(self.deps[child]))))

        return None

    def levels(self) -> list[list[ResourceId]]:
        """
        Group nodes by dependency depth.

        Depth 0 holds nodes without dependencies; a node's depth is one more
        than the deepest of its dependencies.

        Raises:
            CycleError: If the graph is not acyclic
        """
        cycle = self.find_cycle()
        if cycle:
            raise CycleError([str(n) for n in cycle])

        remaining = {node: len(deps) for node, deps in self.deps.items()}
        dependents = {node: [] for node in self.deps}
        for node, deps in self.deps.items():
            for dep in deps:
                dependents[dep].append(node)

        levels = []
        current = sorted(n for n, count in remaining.items() if count == 0)
        while current:
            levels.append(current)
            following = set()
            for node in current:
                for dependent in dependents[node]:
                    remaining[dependent] -= 1
                    if remaining[dependent] == 0:
                        following.add(dependent)
            current = sorted(following)

        return levels

    def topological_order(self) -> list[ResourceId]:
        """A valid apply order (levels flattened)."""
        return [node for level in self.levels() for node in level]


class GraphBuilder:
    """Build a dependency graph for a change plan."""

    def build(
        self,
        plan: ChangePlan,
        resources: Optional[Iterable[Resource]] = None,
    ) -> DependencyGraph:
        """
        Build and verify the dependency graph.

        Args:
            plan: Change plan for this run
            resources: Desired resources (defaults to those carried by the plan)

        Returns:
            Acyclic DependencyGraph over every action in the plan

        Raises:
            CycleError: If the dependencies form a cycle
        """
        if resources is None:
            resources = [a.resource for a in plan.actions if a.resource is not None]
        resources = list(resources)

        graph = DependencyGraph()
        for action in plan.actions:
            graph.add_node(action.resource_id)

        for resource in resources:
            graph.add_node(resource.id)
            for dep in resource_dependencies(resource):
                graph.add_edge(dep, resource.id)

        self._add_delete_edges(graph, plan)

        cycle = graph.find_cycle()
        if cycle:
            logger.error(f"Dependency cycle: {' -> '.join(str(n) for n in cycle)}")
            raise CycleError([str(n) for n in cycle])

        logger.debug(f"Built dependency graph with {len(graph.deps)} nodes")
        return graph

    def _add_delete_edges(self, graph: DependencyGraph, plan: ChangePlan) -> None:
        """Deletes run in reverse dependency order, after surviving dependents move off."""
        deleted = {
            a.resource_id for a in plan.actions if a.action_type == ActionType.DELETE
        }
        if not deleted:
            return

        for action in plan.actions:
            if action.prior is None:
                continue
            for old_dep in action.prior.dependencies:
                if old_dep not in deleted:
                    continue
                # action's resource used to depend on old_dep: handle it first
                if action.resource_id != old_dep:
                    graph.add_edge(action.resource_id, old_dep)
