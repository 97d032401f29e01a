"""Tests for declaration loading and settings."""
import pytest
import yaml
from mcp_convergence.config import ConfigLoader, EngineSettings, compute_checksum
from mcp_convergence.engine import ParseError, ResourceId

DECLARATION = """
providers:
  local:
    root: /srv
settings:
  pool_size: 2
resources:
  - type: local_directory
    name: www
    attributes:
      path: www
  - id: local_file.index
    depends_on: [local_directory.www]
    unordered: tags
    attributes:
      path: "${local_directory.www.path}/index.html"
      content: hello
      tags: [a, b]
"""


class TestConfigLoader:
    """Tests for the ConfigLoader."""

    def test_parse_list_form(self):
        loader = ConfigLoader(document=yaml.safe_load(DECLARATION))

        resources = {r.id: r for r in loader.load()}

        index = resources[ResourceId("local_file", "index")]
        assert index.depends_on == (ResourceId("local_directory", "www"),)
        assert index.unordered == frozenset({"tags"})
        assert index.attributes["content"] == "hello"
        assert resources[ResourceId("local_directory", "www")].attributes == {"path": "www"}

    def test_parse_mapping_form(self):
        """Resources may be keyed by id."""
        document = {
            "resources": {
                "memory_bucket.logs": {"attributes": {"size": 1}},
                "memory_bucket.data": None,
            }
        }
        resources = ConfigLoader(document=document).parse(document)

        assert [str(r.id) for r in resources] == ["memory_bucket.data", "memory_bucket.logs"]
        assert resources[1].attributes == {"size": 1}

    def test_providers_and_settings_sections(self):
        loader = ConfigLoader(document=yaml.safe_load(DECLARATION))
        assert loader.providers == {"local": {"root": "/srv"}}
        assert loader.settings == {"pool_size": 2}

    def test_load_file(self, tmp_path):
        path = tmp_path / "site.yaml"
        path.write_text(DECLARATION)

        assert len(ConfigLoader(path).load()) == 2

    def test_load_directory_merges_files(self, tmp_path):
        (tmp_path / "a.yaml").write_text("resources:\n  - id: memory_bucket.a\n")
        (tmp_path / "b.yml").write_text(
            "providers:\n  memory: {}\nresources:\n  - id: memory_bucket.b\n"
        )
        (tmp_path / "notes.txt").write_text("ignored")

        loader = ConfigLoader(tmp_path)

        assert {str(r.id) for r in loader.load()} == {"memory_bucket.a", "memory_bucket.b"}
        assert loader.providers == {"memory": {}}

    def test_missing_file(self, tmp_path):
        with pytest.raises(ParseError):
            ConfigLoader(tmp_path / "nope.yaml").load()

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("resources: [unclosed")
        with pytest.raises(ParseError):
            ConfigLoader(path).load()

    def test_duplicate_resource(self):
        document = {"resources": [{"id": "memory_bucket.a"}, {"type": "memory_bucket", "name": "a"}]}
        with pytest.raises(ParseError) as exc:
            ConfigLoader(document=document).load()
        assert "Duplicate" in str(exc.value)

    @pytest.mark.parametrize("entry", [
        {"type": "memory_bucket"},
        {"id": "no-dot"},
        {"id": "memory_bucket.a", "name": "b"},
        {"id": "memory_bucket.a", "attributes": ["x"]},
        {"id": "memory_bucket.a", "depends_on": {"x": 1}},
        {"id": "memory_bucket.a", "depends_on": ["not-an-id"]},
        {"id": "memory_bucket.a", "colour": "blue"},
        "memory_bucket.a",
    ])
    def test_malformed_entries(self, entry):
        with pytest.raises(ParseError):
            ConfigLoader(document={"resources": [entry]}).load()

    def test_checksum_is_stable(self):
        a = {"resources": [{"id": "memory_bucket.a"}], "settings": {"x": 1, "y": 2}}
        b = {"settings": {"y": 2, "x": 1}, "resources": [{"id": "memory_bucket.a"}]}

        assert compute_checksum(a) == compute_checksum(b)
        assert compute_checksum(a).startswith("sha256:")
        assert compute_checksum(a) != compute_checksum({"resources": []})


class TestEngineSettings:
    """Tests for engine settings."""

    def test_defaults(self):
        settings = EngineSettings()
        assert settings.pool_size == 4
        assert settings.max_attempts == 3
        assert settings.refresh is True

    def test_overrides_are_converted(self, tmp_path):
        settings = EngineSettings().with_overrides({
            "pool_size": "8",
            "operation_timeout": "2.5",
            "refresh": "no",
            "state_dir": str(tmp_path),
        })
        assert settings.pool_size == 8
        assert settings.operation_timeout == 2.5
        assert settings.refresh is False
        assert settings.state_dir == tmp_path

    def test_unknown_setting(self):
        with pytest.raises(ParseError):
            EngineSettings().with_overrides({"colour": "blue"})

    @pytest.mark.parametrize("overrides", [
        {"pool_size": 0},
        {"max_attempts": 0},
        {"operation_timeout": 0},
        {"backoff_min": 5, "backoff_max": 1},
        {"pool_size": "many"},
    ])
    def test_invalid_values(self, overrides):
        with pytest.raises(ParseError):
            EngineSettings().with_overrides(overrides)

    def test_environment_wins_over_declaration(self, monkeypatch):
        monkeypatch.setenv("CONVERGECRAFT_POOL_SIZE", "7")
        settings = EngineSettings.from_declaration({"pool_size": 2, "max_attempts": 5})
        assert settings.pool_size == 7
        assert settings.max_attempts == 5

    def test_from_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("CONVERGECRAFT_POOL_SIZE", raising=False)
        path = tmp_path / "settings.yaml"
        path.write_text("settings:\n  pool_size: 3\n")
        assert EngineSettings.from_file(path).pool_size == 3

    def test_execute_options(self):
        options = EngineSettings(pool_size=2, user="ops").execute_options()
        assert options.pool_size == 2
        assert options.user == "ops"
