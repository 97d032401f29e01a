"""MCP Server for declarative infrastructure convergence.

Drives local and in-memory resources toward a declared set:
- Declarations are YAML files (or inline documents) listing resources
- Every run refreshes stored state, plans, and applies in dependency order
- State lives in a lock-protected store (~/.convergecraft/state)

Tools exposed:
- plan: Show the change plan for a declaration (no changes made)
- apply: Converge on a declaration (supports dry_run)
- show_state: Show stored state for all or one resource
- lock_status: Show who holds the state lock
- force_unlock: Break a stale state lock
- get_audit_log: Show recent resource operations
"""
import asyncio
import json
import logging
import os
from typing import Any, Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import (
    TextContent,
    Tool,
    Resource,
)
from pydantic import AnyUrl

from .config import ConfigLoader, EngineSettings
from .engine import ConvergeError, ConvergenceEngine, ResourceId
from .providers import ProviderRegistry
from .state_store import FileStateStore, StateStore
from .utils.audit_log import get_recent_changes, setup_audit_logging
from .utils.logging_config import setup_logging, timed_section

logger = logging.getLogger(__name__)

STATE_URI = "convergecraft://state"

# Globals (initialized on first use)
settings: Optional[EngineSettings] = None
state_store: Optional[StateStore] = None


def get_settings() -> EngineSettings:
    """Get or load engine settings from the environment."""
    global settings
    if settings is None:
        settings = EngineSettings.from_env()
    return settings


def get_state_store() -> StateStore:
    """Get or create the state store."""
    global state_store
    if state_store is None:
        state_store = FileStateStore(get_settings().state_dir)
    return state_store


def load_declaration(arguments: dict) -> ConfigLoader:
    """Loader for an inline ``config`` document or a ``config_path``."""
    if arguments.get("config") is not None:
        return ConfigLoader(document=arguments["config"])
    path = arguments.get("config_path") or os.environ.get("CONVERGECRAFT_CONFIG")
    if not path:
        raise ConvergeError("Provide 'config' or 'config_path' (or set CONVERGECRAFT_CONFIG)")
    return ConfigLoader(path)


# Create MCP server
server = Server("mcp-convergecraft")

_DECLARATION_PROPERTIES = {
    "config": {
        "type": "object",
        "description": "Inline declaration: {resources: [...], providers: {...}, settings: {...}}",
    },
    "config_path": {
        "type": "string",
        "description": "Path to a declaration file or directory of YAML files",
    },
}


# === TOOLS ===

@server.list_tools()
async def list_tools() -> list[Tool]:
    """List all available tools."""
    return [
        Tool(
            name="plan",
            description=(
                "Show what a run would change: creates, updates, deletes and no-ops, "
                "plus any drift between stored state and the real resources"
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    **_DECLARATION_PROPERTIES,
                    "refresh": {
                        "type": "boolean",
                        "description": "Probe providers for drift before planning",
                        "default": True,
                    },
                },
                "required": [],
            },
        ),
        Tool(
            name="apply",
            description=(
                "Converge on a declaration. Applies changes in dependency order; "
                "a failed resource skips its dependents. Use dry_run to preview."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    **_DECLARATION_PROPERTIES,
                    "dry_run": {
                        "type": "boolean",
                        "description": "Report the plan without making changes",
                        "default": False,
                    },
                },
                "required": [],
            },
        ),
        Tool(
            name="show_state",
            description="Show the last-applied state of all resources, or of one",
            inputSchema={
                "type": "object",
                "properties": {
                    "resource_id": {
                        "type": "string",
                        "description": "Resource id (e.g., 'local_file.index')",
                    },
                },
                "required": [],
            },
        ),
        Tool(
            name="lock_status",
            description="Show whether a run holds the state lock",
            inputSchema={
                "type": "object",
                "properties": {},
                "required": [],
            },
        ),
        Tool(
            name="force_unlock",
            description=(
                "Break the state lock left behind by a crashed run. "
                "Only use when no run is in progress."
            ),
            inputSchema={
                "type": "object",
                "properties": {},
                "required": [],
            },
        ),
        Tool(
            name="get_audit_log",
            description="Get recent resource operations from the audit log",
            inputSchema={
                "type": "object",
                "properties": {
                    "resource_id": {
                        "type": "string",
                        "description": "Filter by resource id",
                    },
                    "run_id": {
                        "type": "string",
                        "description": "Filter by run id",
                    },
                    "limit": {
                        "type": "integer",
                        "description": "Maximum records to return",
                        "default": 20,
                    },
                },
                "required": [],
            },
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    """Handle tool calls."""
    arguments = arguments or {}

    async with timed_section(f"tool:{name}"):
        try:
            if name == "plan":
                return await handle_plan(arguments, arguments.get("refresh"))

            elif name == "apply":
                return await handle_apply(arguments, arguments.get("dry_run", False))

            elif name == "show_state":
                return await handle_show_state(get_state_store(), arguments.get("resource_id"))

            elif name == "lock_status":
                return await handle_lock_status(get_state_store())

            elif name == "force_unlock":
                return await handle_force_unlock(get_state_store())

            elif name == "get_audit_log":
                return await handle_get_audit_log(
                    arguments.get("resource_id"),
                    arguments.get("run_id"),
                    arguments.get("limit", 20),
                )

            else:
                return [TextContent(type="text", text=f"Unknown tool: {name}")]

        except ConvergeError as e:
            logger.error(f"Tool {name} failed: {e}")
            return _json({"success": False, "error": str(e), "error_type": type(e).__name__})

        except Exception as e:
            logger.exception(f"Tool {name} failed")
            return [TextContent(type="text", text=f"Error: {str(e)}")]


# === TOOL HANDLERS ===

def _json(data: Any) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(data, indent=2, default=str))]


def _engine_for(loader: ConfigLoader) -> ConvergenceEngine:
    run_settings = EngineSettings.from_declaration(loader.settings)
    providers = ProviderRegistry.from_config(loader.providers)
    return ConvergenceEngine(get_state_store(), providers, run_settings)


async def handle_plan(arguments: dict, refresh: Optional[bool] = None) -> list[TextContent]:
    """
    Calculate the change plan for a declaration.

    Nothing is changed and the state lock is not taken.
    """
    loader = load_declaration(arguments)
    resources = loader.load()
    engine = _engine_for(loader)

    try:
        plan, drift = await engine.plan(resources, refresh=refresh)
    finally:
        await engine.providers.close_all()

    response = {
        "no_change": plan.no_change,
        "config_checksum": loader.checksum(),
        **plan.to_dict(),
    }
    if drift is not None:
        response["drift"] = drift.to_dict()
    return _json(response)


async def handle_apply(arguments: dict, dry_run: bool) -> list[TextContent]:
    """
    Converge on a declaration.

    This is the primary tool for making changes. It:
    1. Validates the declaration
    2. Takes the state lock
    3. Refreshes stored state and calculates the plan
    4. Applies changes level by level
    5. Returns a per-resource summary

    Use dry_run=True to preview changes without applying.
    """
    loader = load_declaration(arguments)
    resources = loader.load()
    engine = _engine_for(loader)

    try:
        summary = await engine.apply(
            resources,
            dry_run=dry_run,
            config_checksum=loader.checksum(),
        )
    finally:
        await engine.providers.close_all()

    return _json(summary.to_dict())


async def handle_show_state(store: StateStore, resource_id: Optional[str]) -> list[TextContent]:
    """Show stored resource state."""
    if resource_id:
        try:
            parsed = ResourceId.parse(resource_id)
        except ValueError as e:
            return _json({"success": False, "error": str(e), "error_type": "ParseError"})
        state = store.read(parsed)
        if state is None:
            return _json({"error": f"No stored state for {resource_id}"})
        return _json(state.to_dict())

    states = store.read_all()
    return _json({
        "total_resources": len(states),
        "resources": [states[rid].to_dict() for rid in sorted(states)],
    })


async def handle_lock_status(store: StateStore) -> list[TextContent]:
    """Show the state lock holder."""
    info = store.lock_info()
    if info is None:
        return _json({"locked": False})
    return _json({"locked": True, **info.to_dict()})


async def handle_force_unlock(store: StateStore) -> list[TextContent]:
    """Break the state lock."""
    info = store.force_unlock()
    if info is None:
        return _json({"success": True, "message": "State was not locked"})

    logger.warning(f"Force-unlocked state held by run {info.run_id} ({info.owner})")
    return _json({"success": True, "broken_lock": info.to_dict()})


async def handle_get_audit_log(
    resource_id: Optional[str] = None,
    run_id: Optional[str] = None,
    limit: int = 20
) -> list[TextContent]:
    """Get recent resource operations from the audit log."""
    records = get_recent_changes(
        resource_id=resource_id,
        run_id=run_id,
        limit=limit
    )

    formatted_records = []
    for r in records:
        formatted_records.append({
            "timestamp": r.timestamp,
            "run_id": r.run_id,
            "resource_id": r.resource_id,
            "action": r.action,
            "success": r.success,
            "attempts": r.attempts,
            "error": r.error,
        })

    return _json({
        "total_records": len(formatted_records),
        "filters": {
            "resource_id": resource_id,
            "run_id": run_id,
            "limit": limit,
        },
        "records": formatted_records,
    })


# === RESOURCES ===

@server.list_resources()
async def list_resources() -> list[Resource]:
    """List available resources."""
    return [
        Resource(
            uri=AnyUrl(STATE_URI),
            name="Stored State",
            description="Last-applied state of every managed resource",
            mimeType="application/json",
        )
    ]


@server.read_resource()
async def read_resource(uri: AnyUrl) -> str:
    """Read a resource."""
    if str(uri) == STATE_URI:
        result = await handle_show_state(get_state_store(), None)
        return result[0].text

    return json.dumps({"error": f"Unknown resource: {uri}"})


def main():
    """Run the MCP server."""
    setup_logging(console=False)
    setup_audit_logging()

    async def run():
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options()
            )

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
