"""Pre-flight validation for resource sets.

Catches declaration errors before the state lock is taken or any provider is
contacted.
"""
from __future__ import annotations

import re
from typing import TYPE_CHECKING, Iterable, Optional

from .interpolation import find_references
from .schema import Resource, ValidationResult

if TYPE_CHECKING:
    from ..providers import ProviderRegistry

TYPE_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9]*_[A-Za-z0-9_]+$")
NAME_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+$")

# Plans larger than this get a warning
LARGE_PLAN_THRESHOLD = 500


class ResourceValidator:
    """Validate a desired resource set for logical errors before planning."""

    def __init__(self, providers: Optional[ProviderRegistry] = None):
        """
        Initialize validator.

        Args:
            providers: Optional registry; when given, every resource type must
                have a provider
        """
        self.providers = providers

    def validate(self, resources: Iterable[Resource]) -> ValidationResult:
        """
        Validate a resource set.

        Performs pre-flight checks:
        - Resource type and name formats
        - Explicit dependencies name declared resources
        - Interpolations reference declared resources
        - A provider serves every resource type

        Returns:
            ValidationResult with valid flag, errors, and warnings
        """
        resources = sorted(resources, key=lambda r: r.id)
        errors: list[str] = []
        warnings: list[str] = []

        self._validate_identifiers(resources, errors)
        self._validate_references(resources, errors, warnings)
        self._validate_providers(resources, errors)

        if len(resources) > LARGE_PLAN_THRESHOLD:
            warnings.append(
                f"Large resource set ({len(resources)} resources). "
                f"Consider splitting the declaration."
            )

        return ValidationResult(
            valid=len(errors) == 0,
            errors=errors,
            warnings=warnings,
        )

    def _validate_identifiers(self, resources: list[Resource], errors: list[str]) -> None:
        for resource in resources:
            if not TYPE_PATTERN.match(resource.type):
                errors.append(
                    f"Invalid resource type '{resource.type}': expected '<provider>_<kind>'"
                )
            if not NAME_PATTERN.match(resource.name):
                errors.append(
                    f"Invalid resource name '{resource.name}' for {resource.id}: "
                    f"use letters, digits, '_' and '-'"
                )

    def _validate_references(
        self,
        resources: list[Resource],
        errors: list[str],
        warnings: list[str],
    ) -> None:
        declared = {r.id for r in resources}

        for resource in resources:
            for dep in resource.depends_on:
                if dep not in declared:
                    errors.append(f"{resource.id} depends on undeclared resource {dep}")

            for ref, attribute in sorted(find_references(resource.attributes)):
                if ref not in declared:
                    errors.append(
                        f"{resource.id} references undeclared resource in ${{{ref}.{attribute}}}"
                    )

            for name in resource.unordered:
                if name not in resource.attributes:
                    warnings.append(
                        f"{resource.id}: unordered attribute '{name}' is not declared"
                    )

    def _validate_providers(self, resources: list[Resource], errors: list[str]) -> None:
        if self.providers is None:
            return

        missing = sorted({
            r.type for r in resources if self.providers.for_resource(r.id) is None
        })
        for resource_type in missing:
            errors.append(f"No provider serves resource type '{resource_type}'")
