"""Error taxonomy for the convergence engine.

Fatal errors (ParseError, ValidationError, CycleError, LockHeldError) abort a
run before any mutation. Provider and interpolation errors are contained to
the resource that raised them.
"""
from datetime import datetime
from typing import Optional


class ConvergeError(Exception):
    """Base class for all engine errors."""
    pass


class ParseError(ConvergeError):
    """Error parsing a resource declaration."""
    pass


class ValidationError(ConvergeError):
    """Resource set failed pre-flight validation."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("Validation failed: " + "; ".join(errors))


class CycleError(ConvergeError):
    """Dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle + cycle[:1])}")

    @property
    def members(self) -> set[str]:
        return set(self.cycle)


class StateStoreError(ConvergeError):
    """State store misuse or unreadable stored state."""
    pass


class LockHeldError(StateStoreError):
    """Another run holds the state lock."""

    def __init__(
        self,
        run_id: str,
        owner: str = "",
        acquired_at: Optional[datetime] = None,
    ):
        self.run_id = run_id
        self.owner = owner
        self.acquired_at = acquired_at
        since = f" since {acquired_at.isoformat()}" if acquired_at else ""
        by = f" by {owner}" if owner else ""
        super().__init__(f"State is locked by run {run_id}{by}{since}")


class ProviderError(ConvergeError):
    """Error reported by a provider while probing or applying."""

    def __init__(self, message: str, transient: bool = False, resource_id: str = ""):
        self.message = message
        self.transient = transient
        self.resource_id = resource_id
        kind = "transient" if transient else "permanent"
        prefix = f"{resource_id}: " if resource_id else ""
        super().__init__(f"{prefix}{message} ({kind})")


class TransientProviderError(ProviderError):
    """Provider failure worth retrying (timeouts, throttling, busy targets)."""

    def __init__(self, message: str, resource_id: str = ""):
        super().__init__(message, transient=True, resource_id=resource_id)


class PermanentProviderError(ProviderError):
    """Provider failure that retrying cannot fix."""

    def __init__(self, message: str, resource_id: str = ""):
        super().__init__(message, transient=False, resource_id=resource_id)


class InterpolationError(ConvergeError):
    """An attribute references a value that cannot be resolved."""
    pass


def is_transient(exc: BaseException) -> bool:
    """Check if an exception should be retried."""
    return isinstance(exc, ProviderError) and exc.transient
