"""Tests for pre-flight validation."""
from mcp_convergence.engine import Resource, ResourceId, ResourceValidator
from mcp_convergence.providers import InMemoryProvider, ProviderRegistry


def resource(type_, name, depends_on=(), unordered=(), **attributes):
    return Resource(
        id=ResourceId(type_, name),
        attributes=attributes,
        depends_on=tuple(ResourceId.parse(d) for d in depends_on),
        unordered=frozenset(unordered),
    )


class TestResourceValidator:
    """Tests for the ResourceValidator."""

    def test_valid_set(self):
        result = ResourceValidator().validate([
            resource("memory_bucket", "a"),
            resource("memory_bucket", "b", depends_on=["memory_bucket.a"], ref="${memory_bucket.a.id}"),
        ])

        assert result.valid
        assert result.errors == []

    def test_bad_type_and_name(self):
        result = ResourceValidator().validate([
            resource("bucket", "a"),
            resource("memory_bucket", "has space"),
        ])

        assert not result.valid
        assert any("Invalid resource type 'bucket'" in e for e in result.errors)
        assert any("Invalid resource name 'has space'" in e for e in result.errors)

    def test_undeclared_dependency(self):
        result = ResourceValidator().validate([
            resource("memory_bucket", "a", depends_on=["memory_bucket.ghost"]),
        ])

        assert not result.valid
        assert "memory_bucket.ghost" in result.errors[0]

    def test_undeclared_interpolation_target(self):
        result = ResourceValidator().validate([
            resource("memory_bucket", "a", ref="${memory_bucket.ghost.id}"),
        ])

        assert not result.valid
        assert "${memory_bucket.ghost.id}" in result.errors[0]

    def test_unknown_unordered_attribute_warns(self):
        result = ResourceValidator().validate([
            resource("memory_bucket", "a", unordered=["tags"]),
        ])

        assert result.valid
        assert "tags" in result.warnings[0]

    def test_missing_provider(self):
        registry = ProviderRegistry({"memory": InMemoryProvider()})
        result = ResourceValidator(registry).validate([
            resource("memory_bucket", "a"),
            resource("local_file", "f", path="x"),
            resource("cloud_vm", "web"),
        ])

        assert not result.valid
        assert result.errors == ["No provider serves resource type 'cloud_vm'"]

    def test_large_set_warns(self):
        result = ResourceValidator().validate(
            [resource("memory_bucket", f"r{i}") for i in range(501)]
        )

        assert result.valid
        assert any("Large resource set" in w for w in result.warnings)
