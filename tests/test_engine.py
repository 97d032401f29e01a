"""Tests for the Convergence Engine (end to end with in-memory components)."""
import asyncio

import pytest
from mcp_convergence.config import EngineSettings
from mcp_convergence.engine import (
    ActionType,
    ConvergenceEngine,
    CycleError,
    ExecutionStatus,
    LockHeldError,
    Resource,
    ResourceId,
    ValidationError,
)
from mcp_convergence.providers import InMemoryProvider, ProviderRegistry
from mcp_convergence.state_store import InMemoryStateStore


def rid(name):
    return ResourceId("memory_bucket", name)


def resource(name, /, depends_on=(), **attributes):
    return Resource(
        id=rid(name),
        attributes=attributes,
        depends_on=tuple(rid(d) for d in depends_on),
    )


def make_engine(tmp_path, store=None, provider=None, **settings):
    provider = provider or InMemoryProvider()
    values = dict(state_dir=tmp_path, backoff_min=0.001, backoff_max=0.01, operation_timeout=5)
    values.update(settings)
    engine = ConvergenceEngine(
        store or InMemoryStateStore(),
        ProviderRegistry({"memory": provider}),
        EngineSettings(**values),
    )
    return engine, provider


DESIRED = [
    resource("net", cidr="10.0.0.0/24"),
    resource("app", depends_on=["net"], size=2, net_id="${memory_bucket.net.id}"),
    resource("logs", tags=["a", "b"]),
]


class TestApply:
    """Full apply runs."""

    @pytest.mark.asyncio
    async def test_first_run_creates_everything(self, tmp_path):
        engine, provider = make_engine(tmp_path)

        summary = await engine.apply(DESIRED)

        assert summary.success
        assert summary.counts["create"] == 3
        assert set(engine.store.read_all()) == {rid("net"), rid("app"), rid("logs")}
        net_id = provider.objects[rid("net")].outputs["id"]
        assert provider.objects[rid("app")].attributes["net_id"] == net_id
        assert engine.store.lock_info() is None

    @pytest.mark.asyncio
    async def test_second_run_is_all_noop(self, tmp_path):
        """Applying the same declaration twice changes nothing the second time."""
        engine, provider = make_engine(tmp_path)
        await engine.apply(DESIRED)
        provider.calls.clear()

        summary = await engine.apply(DESIRED)

        assert summary.success
        assert all(r.action_type == ActionType.NOOP for r in summary.results)
        assert summary.counts["no-op"] == 3
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_removed_resource_is_deleted(self, tmp_path):
        engine, provider = make_engine(tmp_path)
        await engine.apply(DESIRED)

        summary = await engine.apply([r for r in DESIRED if r.name != "logs"])

        assert summary.result_for(rid("logs")).action_type == ActionType.DELETE
        assert rid("logs") not in engine.store.read_all()
        assert rid("logs") not in provider.objects

    @pytest.mark.asyncio
    async def test_deleted_chain_goes_in_reverse_order(self, tmp_path):
        engine, provider = make_engine(tmp_path)
        await engine.apply(DESIRED)
        provider.calls.clear()

        await engine.apply([])

        order = [c.resource_id for c in provider.calls]
        assert order.index(rid("app")) < order.index(rid("net"))
        assert engine.store.read_all() == {}

    @pytest.mark.asyncio
    async def test_summary_carries_checksum_and_run_id(self, tmp_path):
        engine, _ = make_engine(tmp_path)

        summary = await engine.apply(DESIRED, run_id="fixed", config_checksum="sha256:abc")

        assert summary.run_id == "fixed"
        assert summary.to_dict()["config_checksum"] == "sha256:abc"

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_successful_state(self, tmp_path):
        engine, provider = make_engine(tmp_path)
        provider.fail(rid("net"))

        summary = await engine.apply(DESIRED)

        assert not summary.success
        assert summary.result_for(rid("app")).status == ExecutionStatus.SKIPPED
        assert set(engine.store.read_all()) == {rid("logs")}

        # The next run picks up where this one stopped
        summary = await engine.apply(DESIRED)
        assert summary.success
        assert summary.result_for(rid("logs")).action_type == ActionType.NOOP


class TestDryRun:
    """Dry runs plan without side effects."""

    @pytest.mark.asyncio
    async def test_dry_run_changes_nothing(self, tmp_path):
        engine, provider = make_engine(tmp_path)

        summary = await engine.apply(DESIRED, dry_run=True)

        assert summary.dry_run
        assert summary.counts["create"] == 3
        assert summary.results == []
        assert provider.calls == []
        assert engine.store.read_all() == {}
        assert engine.store.lock_info() is None

    @pytest.mark.asyncio
    async def test_plan_does_not_take_lock(self, tmp_path):
        store = InMemoryStateStore()
        engine, _ = make_engine(tmp_path, store=store)
        store.acquire_lock("someone-else")

        plan, drift = await engine.plan(DESIRED)

        assert plan.counts()["create"] == 3
        assert drift is None  # nothing stored, nothing to refresh

    @pytest.mark.asyncio
    async def test_preview(self, tmp_path):
        engine, _ = make_engine(tmp_path)
        text = await engine.preview(DESIRED)
        assert "[+] Create memory_bucket.app" in text


class TestAborts:
    """Fatal errors abort before anything is executed."""

    @pytest.mark.asyncio
    async def test_cycle_aborts_before_execution(self, tmp_path):
        engine, provider = make_engine(tmp_path)

        with pytest.raises(CycleError) as exc:
            await engine.apply([
                resource("a", depends_on=["c"]),
                resource("b", depends_on=["a"]),
                resource("c", depends_on=["b"]),
            ])

        assert exc.value.members == {"memory_bucket.a", "memory_bucket.b", "memory_bucket.c"}
        assert provider.calls == []
        assert engine.store.lock_info() is None

    @pytest.mark.asyncio
    async def test_validation_error(self, tmp_path):
        engine, provider = make_engine(tmp_path)

        with pytest.raises(ValidationError) as exc:
            await engine.apply([resource("a", depends_on=["missing"])])

        assert "memory_bucket.missing" in exc.value.errors[0]
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_held_lock_is_refused(self, tmp_path):
        store = InMemoryStateStore()
        engine, provider = make_engine(tmp_path, store=store)
        store.shared().acquire_lock("other-run")

        with pytest.raises(LockHeldError) as exc:
            await engine.apply(DESIRED)

        assert exc.value.run_id == "other-run"
        assert provider.calls == []
        assert store.read_all() == {}

    @pytest.mark.asyncio
    async def test_concurrent_runs_exclude_each_other(self, tmp_path):
        """Of two overlapping runs on one store, the second is refused."""
        store = InMemoryStateStore()
        first, provider = make_engine(tmp_path, store=store)
        second, _ = make_engine(tmp_path, store=store.shared())
        provider.latency = 0.05

        running = asyncio.create_task(first.apply(DESIRED))
        await asyncio.sleep(0.01)

        with pytest.raises(LockHeldError):
            await second.apply(DESIRED)

        summary = await running
        assert summary.success


class TestDrift:
    """Refresh detects out-of-band changes."""

    @pytest.mark.asyncio
    async def test_modified_attribute_is_corrected(self, tmp_path):
        engine, provider = make_engine(tmp_path)
        await engine.apply(DESIRED)
        provider.drift(rid("logs"), tags=["z"])

        plan, drift = await engine.plan(DESIRED)
        assert plan.get(rid("logs")).action_type == ActionType.UPDATE
        assert [(i.resource_id, i.drift_type, i.attribute) for i in drift.items] == [
            ("memory_bucket.logs", "modified", "tags"),
        ]

        summary = await engine.apply(DESIRED)
        assert summary.result_for(rid("logs")).action_type == ActionType.UPDATE
        assert provider.objects[rid("logs")].attributes["tags"] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_missing_resource_is_recreated(self, tmp_path):
        engine, provider = make_engine(tmp_path)
        await engine.apply(DESIRED)
        provider.remove(rid("logs"))

        summary = await engine.apply(DESIRED)

        assert summary.result_for(rid("logs")).action_type == ActionType.CREATE
        assert summary.drift.items[0].drift_type == "missing"
        assert rid("logs") in provider.objects

    @pytest.mark.asyncio
    async def test_refresh_can_be_disabled(self, tmp_path):
        engine, provider = make_engine(tmp_path, refresh=False)
        await engine.apply(DESIRED)
        provider.remove(rid("logs"))

        plan, drift = await engine.plan(DESIRED)

        assert drift is None
        assert plan.no_change


class TestCancel:
    """Engine-level cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_without_run(self, tmp_path):
        engine, _ = make_engine(tmp_path)
        assert engine.cancel() is False

    @pytest.mark.asyncio
    async def test_cancel_stops_after_current_level(self, tmp_path):
        engine, provider = make_engine(tmp_path)
        provider.delay(rid("net"), 0.05)

        running = asyncio.create_task(engine.apply(DESIRED))
        await asyncio.sleep(0.01)
        assert engine.cancel() is True
        summary = await running

        assert summary.cancelled
        assert summary.result_for(rid("net")).status == ExecutionStatus.SUCCESS
        assert summary.result_for(rid("app")).reason == "run cancelled"
        assert engine.store.lock_info() is None


class TestReferences:
    """Dependents follow changes to the values they reference."""

    @pytest.mark.asyncio
    async def test_upstream_attribute_change_updates_dependent(self, tmp_path):
        engine, provider = make_engine(tmp_path)

        def declared(name):
            return [
                resource("a", name=name),
                resource("b", target="${memory_bucket.a.name}"),
            ]

        await engine.apply(declared("x"))
        assert provider.objects[rid("b")].attributes["target"] == "x"

        summary = await engine.apply(declared("y"))

        assert summary.success
        assert summary.result_for(rid("b")).action_type == ActionType.UPDATE
        assert provider.objects[rid("b")].attributes["target"] == "y"
        assert engine.store.read(rid("b")).resolved == {"target": "y"}

        plan, _ = await engine.plan(declared("y"))
        assert plan.no_change

    @pytest.mark.asyncio
    async def test_reference_drift_is_corrected(self, tmp_path):
        engine, provider = make_engine(tmp_path)
        await engine.apply(DESIRED)
        net_id = provider.objects[rid("net")].outputs["id"]
        provider.drift(rid("app"), net_id="stale")

        summary = await engine.apply(DESIRED)

        assert summary.result_for(rid("app")).action_type == ActionType.UPDATE
        assert provider.objects[rid("app")].attributes["net_id"] == net_id


class TestVanished:
    """Resources deleted out of band and no longer declared."""

    @pytest.mark.asyncio
    async def test_store_entry_is_cleared(self, tmp_path):
        engine, provider = make_engine(tmp_path)
        await engine.apply([resource("a", size=1)])
        provider.remove(rid("a"))

        summary = await engine.apply([])

        assert summary.success
        assert summary.result_for(rid("a")).action_type == ActionType.DELETE
        assert engine.store.read_all() == {}

        second = await engine.apply([])
        assert second.drift is None
        assert second.results == []
