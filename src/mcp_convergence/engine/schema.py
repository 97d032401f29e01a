"""Schema definitions for the convergence engine.

Defines the desired state model, stored state, change plans and run results.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class ActionType(str, Enum):
    """Kind of change planned for a resource."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "no-op"


class ExecutionStatus(str, Enum):
    """Terminal outcome of a resource operation."""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


# --- Desired State ---

@dataclass(frozen=True, order=True)
class ResourceId:
    """Unique identifier of a resource: type + name."""
    type: str
    name: str

    def __str__(self) -> str:
        return f"{self.type}.{self.name}"

    @property
    def provider_name(self) -> str:
        """Provider serving this resource (type prefix before the first '_')."""
        return self.type.split("_", 1)[0]

    @classmethod
    def parse(cls, value: "str | ResourceId") -> "ResourceId":
        """Parse 'type.name' into a ResourceId."""
        if isinstance(value, ResourceId):
            return value
        resource_type, sep, name = str(value).partition(".")
        if not sep or not resource_type or not name:
            raise ValueError(f"Invalid resource id '{value}': expected 'type.name'")
        return cls(type=resource_type, name=name)


@dataclass(frozen=True)
class Resource:
    """A declared unit of desired state. Immutable for the duration of a run."""
    id: ResourceId
    attributes: dict[str, Any] = field(default_factory=dict, hash=False)
    depends_on: tuple[ResourceId, ...] = ()
    unordered: frozenset[str] = frozenset()  # list attributes compared as sets

    @property
    def type(self) -> str:
        return self.id.type

    @property
    def name(self) -> str:
        return self.id.name


# --- Stored State ---

@dataclass
class ResourceState:
    """Last-applied (or observed) state of a resource.

    ``attributes`` keep their declared form, references included.
    ``resolved`` holds the concrete value each referencing attribute was
    applied with.
    """
    resource_id: ResourceId
    attributes: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)  # computed, never diffed
    dependencies: list[ResourceId] = field(default_factory=list)
    applied_at: Optional[datetime] = None
    revision: int = 0
    resolved: dict[str, Any] = field(default_factory=dict)

    def lookup(self, attribute: str) -> Any:
        """Get an attribute or output value.

        Outputs take precedence, then applied values of referencing
        attributes, then declared attributes.
        """
        if attribute in self.outputs:
            return self.outputs[attribute]
        if attribute in self.resolved:
            return self.resolved[attribute]
        if attribute in self.attributes:
            return self.attributes[attribute]
        raise KeyError(attribute)

    def to_dict(self) -> dict:
        """Convert to a plain dict for serialization."""
        return {
            "resource_id": str(self.resource_id),
            "attributes": self.attributes,
            "outputs": self.outputs,
            "resolved": self.resolved,
            "dependencies": [str(d) for d in self.dependencies],
            "applied_at": self.applied_at.isoformat() if self.applied_at else None,
            "revision": self.revision,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ResourceState":
        """Build from a dict produced by to_dict()."""
        applied_at = data.get("applied_at")
        if isinstance(applied_at, str):
            applied_at = datetime.fromisoformat(applied_at)

        return cls(
            resource_id=ResourceId.parse(data["resource_id"]),
            attributes=dict(data.get("attributes") or {}),
            outputs=dict(data.get("outputs") or {}),
            resolved=dict(data.get("resolved") or {}),
            dependencies=[ResourceId.parse(d) for d in data.get("dependencies") or []],
            applied_at=applied_at,
            revision=int(data.get("revision", 0)),
        )


# --- Validation Results ---

@dataclass
class ValidationResult:
    """Result of validating a resource set."""
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


# --- Change Plan ---

@dataclass
class AttributeChange:
    """A single attribute-level difference."""
    name: str
    old: Any = None
    new: Any = None


@dataclass
class Action:
    """A planned change for one resource."""
    resource_id: ResourceId
    action_type: ActionType
    resource: Optional[Resource] = None  # desired, None for deletes
    prior: Optional[ResourceState] = None  # baseline, None for creates
    changes: dict[str, AttributeChange] = field(default_factory=dict)

    @property
    def changed_attributes(self) -> list[str]:
        return sorted(self.changes)


@dataclass
class ChangePlan:
    """Ordered sequence of actions for a run."""
    actions: list[Action] = field(default_factory=list)

    def get(self, resource_id: ResourceId) -> Optional[Action]:
        for action in self.actions:
            if action.resource_id == resource_id:
                return action
        return None

    def counts(self) -> dict[str, int]:
        """Number of actions per action type."""
        counts = {a.value: 0 for a in ActionType}
        for action in self.actions:
            counts[action.action_type.value] += 1
        return counts

    @property
    def no_change(self) -> bool:
        """Check if every action is a no-op."""
        return all(a.action_type == ActionType.NOOP for a in self.actions)

    @property
    def total_changes(self) -> int:
        return sum(1 for a in self.actions if a.action_type != ActionType.NOOP)

    def to_dict(self) -> dict:
        return {
            "counts": self.counts(),
            "actions": [
                {
                    "resource_id": str(a.resource_id),
                    "action": a.action_type.value,
                    "changes": {
                        c.name: {"old": c.old, "new": c.new} for c in a.changes.values()
                    },
                }
                for a in self.actions
            ],
        }


# --- Drift ---

@dataclass
class DriftItem:
    """A single divergence between stored and observed state."""
    resource_id: str
    drift_type: str  # 'missing', 'modified', 'unknown'
    attribute: Optional[str] = None
    expected: Any = None
    actual: Any = None
    details: str = ""


@dataclass
class DriftReport:
    """Drift found while refreshing stored state from providers."""
    checked_at: datetime
    items: list[DriftItem] = field(default_factory=list)

    @property
    def in_sync(self) -> bool:
        return not self.items

    @property
    def drift_count(self) -> int:
        return len(self.items)

    def summary(self) -> str:
        """Human-readable summary."""
        if self.in_sync:
            return "IN SYNC: stored state matches observed state"

        lines = [f"DRIFT ({self.drift_count} issues)"]
        for item in self.items[:10]:
            target = item.resource_id
            if item.attribute:
                target += f".{item.attribute}"
            lines.append(f"  - {target}: {item.drift_type}")
        if self.drift_count > 10:
            lines.append(f"  ... and {self.drift_count - 10} more")
        return "\n".join(lines)

    def to_dict(self) -> dict:
        return {
            "checked_at": self.checked_at.isoformat(),
            "in_sync": self.in_sync,
            "items": [
                {
                    "resource_id": i.resource_id,
                    "drift_type": i.drift_type,
                    "attribute": i.attribute,
                    "details": i.details,
                }
                for i in self.items
            ],
        }


# --- Execution Results ---

@dataclass
class ExecuteOptions:
    """Options controlling how a plan is executed."""
    pool_size: int = 4
    max_attempts: int = 3
    backoff_multiplier: float = 1.0
    backoff_min: float = 1.0
    backoff_max: float = 10.0
    operation_timeout: float = 300.0
    user: Optional[str] = None


@dataclass
class ExecutionResult:
    """Outcome of one resource operation."""
    resource_id: ResourceId
    action_type: ActionType
    status: ExecutionStatus
    reason: Optional[str] = None
    attempts: int = 0
    started_at: Optional[float] = None  # time.monotonic()
    finished_at: Optional[float] = None

    @property
    def duration_ms(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at) * 1000

    def to_dict(self) -> dict:
        return {
            "resource_id": str(self.resource_id),
            "action": self.action_type.value,
            "status": self.status.value,
            "reason": self.reason,
            "attempts": self.attempts,
            "duration_ms": round(self.duration_ms, 2),
        }


@dataclass
class RunSummary:
    """Structured report of a run."""
    run_id: str
    dry_run: bool = False
    cancelled: bool = False
    plan: Optional[ChangePlan] = None
    drift: Optional[DriftReport] = None
    results: list[ExecutionResult] = field(default_factory=list)
    config_checksum: Optional[str] = None

    def result_for(self, resource_id: ResourceId) -> Optional[ExecutionResult]:
        for result in self.results:
            if result.resource_id == resource_id:
                return result
        return None

    @property
    def counts(self) -> dict[str, int]:
        """Counts of successful creates/updates/deletes/no-ops plus failures and skips."""
        counts = {
            "create": 0,
            "update": 0,
            "delete": 0,
            "no-op": 0,
            "failed": 0,
            "skipped": 0,
        }
        if self.dry_run and self.plan is not None:
            counts.update(self.plan.counts())
            return counts

        for result in self.results:
            if result.status == ExecutionStatus.SUCCESS:
                counts[result.action_type.value] += 1
            else:
                counts[result.status.value] += 1
        return counts

    @property
    def success(self) -> bool:
        """True when nothing failed and the run was not cancelled."""
        if self.cancelled:
            return False
        return all(r.status == ExecutionStatus.SUCCESS for r in self.results)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        data = {
            "run_id": self.run_id,
            "success": self.success,
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
            "counts": self.counts,
            "results": [r.to_dict() for r in self.results],
        }
        if self.config_checksum:
            data["config_checksum"] = self.config_checksum
        if self.drift is not None:
            data["drift"] = self.drift.to_dict()
        if self.dry_run and self.plan is not None:
            data["plan"] = self.plan.to_dict()
        return data
