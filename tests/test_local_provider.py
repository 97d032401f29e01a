"""Tests for the local filesystem provider."""
import errno
import os

import pytest
from mcp_convergence.config import EngineSettings
from mcp_convergence.engine import (
    Action,
    ActionType,
    ConvergenceEngine,
    PermanentProviderError,
    Resource,
    ResourceId,
    ResourceState,
    TransientProviderError,
)
from mcp_convergence.providers import LocalProvider, ProviderRegistry, create_provider
from mcp_convergence.providers.base import ProviderConfig
from mcp_convergence.providers.local import _provider_error
from mcp_convergence.state_store import FileStateStore

DIR = ResourceId("local_directory", "www")
INDEX = ResourceId("local_file", "index")


@pytest.fixture
def provider(tmp_path):
    return LocalProvider("local", ProviderConfig(type="local", name="local", options={"root": str(tmp_path)}))


def create(resource_id, **attributes):
    return Action(
        resource_id=resource_id,
        action_type=ActionType.CREATE,
        resource=Resource(id=resource_id, attributes=attributes),
    )


class TestLocalProvider:
    """Direct provider calls."""

    @pytest.mark.asyncio
    async def test_create_file(self, provider, tmp_path):
        state = await provider.apply(create(INDEX, path="site/index.html", content="hello", mode="0600"))

        target = tmp_path / "site" / "index.html"
        assert target.read_text() == "hello"
        assert oct(target.stat().st_mode & 0o777) == "0o600"
        assert state.outputs["absolute_path"] == str(target.resolve())
        assert state.outputs["size"] == 5
        assert len(state.outputs["sha256"]) == 64

    @pytest.mark.asyncio
    async def test_probe_file(self, provider, tmp_path):
        (tmp_path / "motd").write_text("hi")
        known = ResourceState(resource_id=INDEX, attributes={"path": "motd"})

        observed = await provider.probe(INDEX, known)

        assert observed.attributes["content"] == "hi"
        assert observed.attributes["path"] == "motd"

    @pytest.mark.asyncio
    async def test_probe_missing(self, provider):
        known = ResourceState(resource_id=INDEX, attributes={"path": "nope"})
        assert await provider.probe(INDEX, known) is None
        assert await provider.probe(INDEX, None) is None

    @pytest.mark.asyncio
    async def test_directory_lifecycle(self, provider, tmp_path):
        await provider.apply(create(DIR, path="www", mode="0750"))
        assert (tmp_path / "www").is_dir()

        observed = await provider.probe(DIR, ResourceState(resource_id=DIR, attributes={"path": "www"}))
        assert observed.attributes["mode"] == "0750"

        await provider.apply(Action(
            resource_id=DIR,
            action_type=ActionType.DELETE,
            prior=ResourceState(resource_id=DIR, attributes={"path": "www"}),
        ))
        assert not (tmp_path / "www").exists()

    @pytest.mark.asyncio
    async def test_non_empty_directory_delete_is_permanent(self, provider, tmp_path):
        (tmp_path / "www").mkdir()
        (tmp_path / "www" / "keep").write_text("x")

        with pytest.raises(PermanentProviderError):
            await provider.apply(Action(
                resource_id=DIR,
                action_type=ActionType.DELETE,
                prior=ResourceState(resource_id=DIR, attributes={"path": "www"}),
            ))

    @pytest.mark.asyncio
    async def test_moved_file_removes_old_path_on_retire(self, provider, tmp_path):
        (tmp_path / "old.txt").write_text("x")
        action = Action(
            resource_id=INDEX,
            action_type=ActionType.UPDATE,
            resource=Resource(id=INDEX, attributes={"path": "new.txt", "content": "x"}),
            prior=ResourceState(resource_id=INDEX, attributes={"path": "old.txt", "content": "x"}),
        )

        await provider.apply(action)
        assert (tmp_path / "old.txt").exists()
        assert (tmp_path / "new.txt").read_text() == "x"

        await provider.retire(action)
        assert not (tmp_path / "old.txt").exists()

    @pytest.mark.asyncio
    async def test_int_mode_is_permission_bits(self, provider, tmp_path):
        await provider.apply(create(INDEX, path="index.html", content="hi", mode=420))

        assert (tmp_path / "index.html").stat().st_mode & 0o7777 == 0o644
        known = ResourceState(resource_id=INDEX, attributes={"path": "index.html", "mode": 420})
        observed = await provider.probe(INDEX, known)
        assert observed.attributes["mode"] == 420

    @pytest.mark.asyncio
    async def test_probe_reports_octal_when_mode_differs(self, provider, tmp_path):
        await provider.apply(create(INDEX, path="index.html", content="hi", mode="0600"))

        known = ResourceState(resource_id=INDEX, attributes={"path": "index.html", "mode": 420})
        observed = await provider.probe(INDEX, known)

        assert observed.attributes["mode"] == "0600"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("attributes", [
        {"content": "no path"},
        {"path": "f", "content": 42},
        {"path": "f", "mode": "rwx"},
        {"path": "f", "mode": 0o10000},
        {"path": "f", "mode": True},
    ])
    async def test_bad_attributes_are_permanent(self, provider, attributes):
        with pytest.raises(PermanentProviderError):
            await provider.apply(create(INDEX, **attributes))

    @pytest.mark.asyncio
    async def test_unsupported_type(self, provider):
        with pytest.raises(PermanentProviderError):
            await provider.apply(create(ResourceId("local_socket", "s"), path="x"))

    def test_error_classification(self):
        busy = _provider_error(OSError(errno.EBUSY, "busy"), INDEX)
        denied = _provider_error(OSError(errno.EACCES, "denied"), INDEX)

        assert isinstance(busy, TransientProviderError)
        assert isinstance(denied, PermanentProviderError)

    def test_factory(self):
        provider = create_provider("files", {"type": "local", "root": "/srv"})
        assert isinstance(provider, LocalProvider)
        assert provider.name == "files"
        assert str(provider.root) == "/srv"


class TestLocalConvergence:
    """End to end through the engine and the file store."""

    def _engine(self, tmp_path):
        registry = ProviderRegistry.from_config({"local": {"root": str(tmp_path / "site")}})
        store = FileStateStore(tmp_path / "state")
        settings = EngineSettings(state_dir=tmp_path / "state", backoff_min=0.001, backoff_max=0.01)
        return ConvergenceEngine(store, registry, settings)

    def _desired(self, content="hello"):
        return [
            Resource(id=DIR, attributes={"path": "www"}),
            Resource(id=INDEX, attributes={
                "path": "${local_directory.www.absolute_path}/index.html",
                "content": content,
            }),
        ]

    @pytest.mark.asyncio
    async def test_converges_and_is_idempotent(self, tmp_path):
        engine = self._engine(tmp_path)

        first = await engine.apply(self._desired())
        second = await engine.apply(self._desired())

        assert first.success
        assert (tmp_path / "site" / "www" / "index.html").read_text() == "hello"
        assert second.success
        assert second.counts["no-op"] == 2
        assert second.drift.in_sync

    @pytest.mark.asyncio
    async def test_out_of_band_edit_is_reverted(self, tmp_path):
        engine = self._engine(tmp_path)
        await engine.apply(self._desired())
        target = tmp_path / "site" / "www" / "index.html"
        target.write_text("tampered")

        summary = await engine.apply(self._desired())

        assert summary.result_for(INDEX).action_type == ActionType.UPDATE
        assert target.read_text() == "hello"

    @pytest.mark.asyncio
    async def test_teardown_removes_file_before_directory(self, tmp_path):
        engine = self._engine(tmp_path)
        await engine.apply(self._desired())

        summary = await engine.apply([])

        assert summary.success
        assert not (tmp_path / "site" / "www").exists()
        assert os.listdir(tmp_path / "state" / "resources") == []

    @pytest.mark.asyncio
    async def test_int_mode_is_idempotent(self, tmp_path):
        engine = self._engine(tmp_path)
        desired = [Resource(id=INDEX, attributes={"path": "index.html", "content": "hi", "mode": 384})]

        await engine.apply(desired)
        second = await engine.apply(desired)

        assert (tmp_path / "site" / "index.html").stat().st_mode & 0o7777 == 0o600
        assert second.drift.in_sync
        assert second.counts["no-op"] == 1

    @pytest.mark.asyncio
    async def test_renamed_directory_takes_its_files_along(self, tmp_path):
        engine = self._engine(tmp_path)
        conf = ResourceId("local_directory", "conf")
        motd = ResourceId("local_file", "motd")

        def declared(path):
            return [
                Resource(id=conf, attributes={"path": path}),
                Resource(id=motd, attributes={
                    "path": "${local_directory.conf.path}/motd",
                    "content": "welcome",
                }),
            ]

        await engine.apply(declared("conf"))
        summary = await engine.apply(declared("etc"))

        site = tmp_path / "site"
        assert summary.success
        assert summary.result_for(motd).action_type == ActionType.UPDATE
        assert (site / "etc" / "motd").read_text() == "welcome"
        assert not (site / "conf").exists()

        again = await engine.apply(declared("etc"))
        assert again.drift.in_sync
        assert again.counts["no-op"] == 2
