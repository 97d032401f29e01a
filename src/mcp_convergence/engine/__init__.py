"""Convergence Engine - Declarative infrastructure convergence.

The engine drives real systems toward a declared resource set:
- Declare resources, not steps
- Stored state is refreshed against providers and drift reported
- Changes are planned, ordered by dependency, and applied level by level
- A failed resource skips its dependents; independent branches keep going

Usage:
    from mcp_convergence.engine import ConvergenceEngine, Resource, ResourceId
    from mcp_convergence.providers import ProviderRegistry
    from mcp_convergence.state_store import FileStateStore

    engine = ConvergenceEngine(FileStateStore(), ProviderRegistry())
    summary = await engine.apply({
        Resource(
            id=ResourceId("local_directory", "www"),
            attributes={"path": "www"},
        ),
        Resource(
            id=ResourceId("local_file", "index"),
            attributes={"path": "${local_directory.www.path}/index.html", "content": "hi"},
        ),
    }, dry_run=True)
"""

from .engine import ConvergenceEngine, new_run_id
from .schema import (
    Action,
    ActionType,
    AttributeChange,
    ChangePlan,
    DriftItem,
    DriftReport,
    ExecuteOptions,
    ExecutionResult,
    ExecutionStatus,
    Resource,
    ResourceId,
    ResourceState,
    RunSummary,
    ValidationResult,
)
from .errors import (
    ConvergeError,
    CycleError,
    InterpolationError,
    LockHeldError,
    ParseError,
    PermanentProviderError,
    ProviderError,
    StateStoreError,
    TransientProviderError,
    ValidationError,
)
from .validator import ResourceValidator
from .diff import DiffEngine, summarize_plan, values_equal
from .graph import DependencyGraph, GraphBuilder
from .prober import StateProber
from .executor import ConvergenceExecutor

__all__ = [
    # Main engine
    "ConvergenceEngine",
    "new_run_id",
    # Schema classes
    "Action",
    "ActionType",
    "AttributeChange",
    "ChangePlan",
    "DriftItem",
    "DriftReport",
    "ExecuteOptions",
    "ExecutionResult",
    "ExecutionStatus",
    "Resource",
    "ResourceId",
    "ResourceState",
    "RunSummary",
    "ValidationResult",
    # Errors
    "ConvergeError",
    "CycleError",
    "InterpolationError",
    "LockHeldError",
    "ParseError",
    "PermanentProviderError",
    "ProviderError",
    "StateStoreError",
    "TransientProviderError",
    "ValidationError",
    # Components (for advanced use)
    "ResourceValidator",
    "DiffEngine",
    "summarize_plan",
    "values_equal",
    "DependencyGraph",
    "GraphBuilder",
    "StateProber",
    "ConvergenceExecutor",
]
