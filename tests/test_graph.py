"""Tests for the dependency graph builder."""
import pytest
from mcp_convergence.engine import (
    CycleError,
    DependencyGraph,
    DiffEngine,
    GraphBuilder,
    Resource,
    ResourceId,
    ResourceState,
)
from mcp_convergence.engine.graph import resource_dependencies


def rid(name):
    return ResourceId("memory_x", name)


def resource(name, depends_on=(), **attributes):
    return Resource(id=rid(name), attributes=attributes, depends_on=tuple(rid(d) for d in depends_on))


def build(resources, baseline=None):
    plan = DiffEngine().calculate(resources, baseline or {})
    return GraphBuilder().build(plan, resources)


class TestResourceDependencies:
    """Tests for dependency extraction."""

    def test_explicit_and_interpolated(self):
        r = resource("b", depends_on=["a"], ref="${memory_x.c.id}")
        assert resource_dependencies(r) == {rid("a"), rid("c")}

    def test_escaped_reference_is_not_a_dependency(self):
        assert resource_dependencies(resource("b", ref="$${memory_x.c.id}")) == set()


class TestLevels:
    """Tests for dependency levels."""

    def test_independent_resources_share_level_zero(self):
        graph = build([resource("a"), resource("b")])
        assert graph.levels() == [[rid("a"), rid("b")]]

    def test_chain(self):
        graph = build([
            resource("c", depends_on=["b"]),
            resource("b", depends_on=["a"]),
            resource("a"),
        ])
        assert graph.levels() == [[rid("a")], [rid("b")], [rid("c")]]

    def test_level_is_deepest_dependency_plus_one(self):
        """A node waits for its deepest dependency."""
        graph = build([
            resource("a"),
            resource("b", depends_on=["a"]),
            resource("c", depends_on=["a", "b"]),
            resource("d"),
        ])
        assert graph.levels() == [[rid("a"), rid("d")], [rid("b")], [rid("c")]]

    def test_interpolation_creates_edge(self):
        graph = build([resource("a"), resource("b", ref="${memory_x.a.id}")])
        assert graph.levels() == [[rid("a")], [rid("b")]]
        assert graph.dependents(rid("a")) == {rid("b")}

    def test_descendants(self):
        graph = build([
            resource("a"),
            resource("b", depends_on=["a"]),
            resource("c", depends_on=["b"]),
            resource("d"),
        ])
        assert graph.descendants(rid("a")) == {rid("b"), rid("c")}
        assert graph.descendants(rid("d")) == set()

    def test_topological_order(self):
        graph = build([resource("b", depends_on=["a"]), resource("a")])
        assert graph.topological_order() == [rid("a"), rid("b")]

    def test_long_chain_does_not_recurse(self):
        """Deep graphs are handled without hitting the recursion limit."""
        graph = DependencyGraph()
        for i in range(3000):
            graph.add_edge(rid(f"n{i}"), rid(f"n{i + 1}"))
        assert len(graph.levels()) == 3001


class TestCycles:
    """Tests for cycle detection."""

    def test_three_node_cycle(self):
        """A -> B -> C -> A is reported with all members."""
        with pytest.raises(CycleError) as exc:
            build([
                resource("a", depends_on=["c"]),
                resource("b", depends_on=["a"]),
                resource("c", depends_on=["b"]),
            ])

        assert exc.value.members == {"memory_x.a", "memory_x.b", "memory_x.c"}
        assert "Dependency cycle" in str(exc.value)

    def test_self_reference_is_a_cycle(self):
        with pytest.raises(CycleError) as exc:
            build([resource("a", ref="${memory_x.a.id}")])
        assert exc.value.cycle == ["memory_x.a"]

    def test_cycle_through_interpolation(self):
        with pytest.raises(CycleError):
            build([resource("a", ref="${memory_x.b.id}"), resource("b", ref="${memory_x.a.id}")])

    def test_cycle_excludes_bystanders(self):
        with pytest.raises(CycleError) as exc:
            build([
                resource("root"),
                resource("a", depends_on=["root", "b"]),
                resource("b", depends_on=["a"]),
            ])
        assert exc.value.members == {"memory_x.a", "memory_x.b"}

    def test_levels_raise_on_cycle(self):
        graph = DependencyGraph()
        graph.add_edge(rid("a"), rid("b"))
        graph.add_edge(rid("b"), rid("a"))

        assert graph.find_cycle() is not None
        with pytest.raises(CycleError):
            graph.levels()


class TestDeleteOrdering:
    """Tests for ordering of deletions."""

    def _stored(self, name, depends_on=()):
        return ResourceState(
            resource_id=rid(name),
            dependencies=[rid(d) for d in depends_on],
        )

    def test_deletes_run_in_reverse_dependency_order(self):
        """A deleted dependent goes before the deleted resource it used."""
        baseline = {
            rid("a"): self._stored("a"),
            rid("b"): self._stored("b", depends_on=["a"]),
        }
        graph = build([], baseline)
        assert graph.levels() == [[rid("b")], [rid("a")]]

    def test_survivor_moves_off_before_delete(self):
        """A kept resource that used to depend on a deleted one is applied first."""
        baseline = {
            rid("old"): self._stored("old"),
            rid("app"): self._stored("app", depends_on=["old"]),
        }
        graph = build([resource("app")], baseline)
        assert graph.levels() == [[rid("app")], [rid("old")]]
