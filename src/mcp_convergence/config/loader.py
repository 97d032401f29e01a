"""Loader for resource declarations.

Converts YAML documents (or already-parsed dicts) into Resource objects.
"""
import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Optional

import yaml

from ..engine.errors import ParseError
from ..engine.schema import Resource, ResourceId

logger = logging.getLogger(__name__)

DECLARATION_SUFFIXES = (".yaml", ".yml")


class ConfigLoader:
    """Load a declaration from a YAML file, a directory of YAML files, or a dict."""

    def __init__(self, path: Optional[str | Path] = None, document: Optional[dict] = None):
        """
        Args:
            path: Declaration file, or directory whose *.yaml/*.yml files are merged
            document: Already-parsed declaration (takes precedence over path)
        """
        self.path = Path(path) if path else None
        self._document = document

    @property
    def document(self) -> dict[str, Any]:
        """The raw (merged) declaration."""
        if self._document is None:
            self._document = self._read()
        return self._document

    @property
    def providers(self) -> dict[str, Any]:
        """The declaration's ``providers:`` section."""
        providers = self.document.get("providers") or {}
        if not isinstance(providers, dict):
            raise ParseError("'providers' must be a mapping of provider name to options")
        return providers

    @property
    def settings(self) -> dict[str, Any]:
        """The declaration's ``settings:`` section."""
        settings = self.document.get("settings") or {}
        if not isinstance(settings, dict):
            raise ParseError("'settings' must be a mapping")
        return settings

    def load(self) -> set[Resource]:
        """
        Parse every declared resource.

        Returns:
            Set of Resource objects

        Raises:
            ParseError: If the declaration is malformed
        """
        return set(self.parse(self.document))

    def checksum(self) -> str:
        """Checksum of the declaration."""
        return compute_checksum(self.document)

    def _read(self) -> dict[str, Any]:
        if self.path is None:
            raise ParseError("No declaration path or document given")
        if not self.path.exists():
            raise ParseError(f"Declaration not found: {self.path}")

        if self.path.is_dir():
            files = sorted(
                p for p in self.path.iterdir()
                if p.is_file() and p.suffix in DECLARATION_SUFFIXES
            )
            if not files:
                raise ParseError(f"No *.yaml declarations in {self.path}")
        else:
            files = [self.path]

        merged: dict[str, Any] = {"resources": [], "providers": {}, "settings": {}}
        for file in files:
            document = self._read_file(file)
            resources = document.get("resources") or []
            if isinstance(resources, dict):
                resources = [
                    {"id": key, **(value or {})} for key, value in resources.items()
                ]
            if not isinstance(resources, list):
                raise ParseError(f"{file}: 'resources' must be a list or mapping")
            merged["resources"].extend(resources)
            merged["providers"].update(document.get("providers") or {})
            merged["settings"].update(document.get("settings") or {})
            logger.debug(f"Read {len(resources)} resources from {file}")

        return merged

    def _read_file(self, file: Path) -> dict[str, Any]:
        try:
            with open(file, encoding="utf-8") as f:
                document = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ParseError(f"{file}: invalid YAML: {e}") from e

        if document is None:
            return {}
        if not isinstance(document, dict):
            raise ParseError(f"{file}: top level must be a mapping")
        return document

    # === Parsing ===

    def parse(self, document: dict[str, Any]) -> list[Resource]:
        """Parse a declaration dict into resources (sorted by id)."""
        raw = document.get("resources") or []
        if isinstance(raw, dict):
            raw = [{"id": key, **(value or {})} for key, value in raw.items()]
        if not isinstance(raw, list):
            raise ParseError("'resources' must be a list or mapping")

        resources: dict[ResourceId, Resource] = {}
        for index, entry in enumerate(raw):
            resource = self._parse_resource(index, entry)
            if resource.id in resources:
                raise ParseError(f"Duplicate resource: {resource.id}")
            resources[resource.id] = resource

        return [resources[rid] for rid in sorted(resources)]

    def _parse_resource(self, index: int, entry: Any) -> Resource:
        """Parse a single resource entry."""
        if not isinstance(entry, dict):
            raise ParseError(f"Resource #{index} must be a mapping")

        resource_id = self._parse_id(index, entry)

        attributes = entry.get("attributes") or {}
        if not isinstance(attributes, dict):
            raise ParseError(f"{resource_id}: 'attributes' must be a mapping")
        for key in attributes:
            if not isinstance(key, str):
                raise ParseError(f"{resource_id}: attribute names must be strings, got {key!r}")

        depends_on = entry.get("depends_on") or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        if not isinstance(depends_on, list):
            raise ParseError(f"{resource_id}: 'depends_on' must be a list")
        try:
            deps = tuple(ResourceId.parse(d) for d in depends_on)
        except ValueError as e:
            raise ParseError(f"{resource_id}: {e}") from None

        unordered = entry.get("unordered") or []
        if isinstance(unordered, str):
            unordered = [unordered]
        if not isinstance(unordered, list):
            raise ParseError(f"{resource_id}: 'unordered' must be a list of attribute names")

        unknown = set(entry) - {"id", "type", "name", "attributes", "depends_on", "unordered"}
        if unknown:
            raise ParseError(f"{resource_id}: unknown keys {sorted(unknown)}")

        return Resource(
            id=resource_id,
            attributes=dict(attributes),
            depends_on=deps,
            unordered=frozenset(str(u) for u in unordered),
        )

    def _parse_id(self, index: int, entry: dict[str, Any]) -> ResourceId:
        if "id" in entry:
            try:
                resource_id = ResourceId.parse(entry["id"])
            except ValueError as e:
                raise ParseError(f"Resource #{index}: {e}") from None
            declared_type = entry.get("type", resource_id.type)
            declared_name = entry.get("name", resource_id.name)
            if (declared_type, declared_name) != (resource_id.type, resource_id.name):
                raise ParseError(
                    f"Resource #{index}: id {resource_id} disagrees with type/name fields"
                )
            return resource_id

        resource_type = entry.get("type")
        name = entry.get("name")
        if not resource_type or not name:
            raise ParseError(f"Resource #{index}: missing required field 'type' or 'name'")
        return ResourceId(type=str(resource_type), name=str(name))


def compute_checksum(config: dict[str, Any]) -> str:
    """
    Compute SHA256 checksum of a declaration dict.

    Useful for tying a run summary to the exact input it converged.
    """
    config_str = json.dumps(config, sort_keys=True, separators=(",", ":"), default=_json_default)
    hash_bytes = hashlib.sha256(config_str.encode()).hexdigest()
    return f"sha256:{hash_bytes[:16]}"


def _json_default(value: Any) -> Any:
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    return str(value)
