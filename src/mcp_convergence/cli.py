#!/usr/bin/env python3
"""Command line interface.

Usage:
    convergecraft plan  [--config PATH] [--no-refresh]
    convergecraft apply [--config PATH] [--dry-run]
    convergecraft state [RESOURCE_ID]
    convergecraft unlock [--force]

Environment variables:
    CONVERGECRAFT_CONFIG=path       Declaration file or directory (default: convergecraft.yaml)
    CONVERGECRAFT_STATE_DIR=path    State store directory
    CONVERGECRAFT_AUDIT_DIR=path    Audit log directory
"""
import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

from .config import ConfigLoader, EngineSettings
from .engine import ConvergeError, ConvergenceEngine, ResourceId, RunSummary, summarize_plan
from .providers import ProviderRegistry
from .state_store import FileStateStore
from .utils.audit_log import setup_audit_logging

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "convergecraft.yaml"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="convergecraft",
        description="Converge local resources on a declared state",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Preview what would change
    convergecraft plan --config site.yaml

    # Apply it
    convergecraft apply --config site.yaml

    # Break the lock left by a crashed run
    convergecraft unlock --force
""",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(os.environ.get("CONVERGECRAFT_CONFIG", DEFAULT_CONFIG)),
        help="Declaration file or directory of YAML files",
    )
    parser.add_argument(
        "--state-dir",
        type=Path,
        help="State store directory (default: ~/.convergecraft/state)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    plan = commands.add_parser("plan", help="Show the change plan")
    plan.add_argument("--no-refresh", action="store_true", help="Skip probing providers for drift")
    plan.add_argument("--json", action="store_true", help="Print the plan as JSON")

    apply = commands.add_parser("apply", help="Converge on the declaration")
    apply.add_argument("--dry-run", action="store_true", help="Report the plan without making changes")
    apply.add_argument("--json", action="store_true", help="Print the run summary as JSON")

    state = commands.add_parser("state", help="Show stored state")
    state.add_argument("resource_id", nargs="?", help="Only this resource (type.name)")

    unlock = commands.add_parser("unlock", help="Show or break the state lock")
    unlock.add_argument("--force", action="store_true", help="Break the lock")

    return parser


def load_settings(loader: Optional[ConfigLoader], state_dir: Optional[Path]) -> EngineSettings:
    """Declaration settings, then the environment, then command line flags."""
    settings = EngineSettings.from_declaration(loader.settings if loader is not None else None)
    if state_dir is not None:
        settings = settings.with_overrides({"state_dir": state_dir})
    return settings


def print_summary(summary: RunSummary) -> None:
    if summary.dry_run:
        print(summarize_plan(summary.plan))
    else:
        for result in summary.results:
            line = f"  {result.status.value:8s} {result.action_type.value:7s} {result.resource_id}"
            if result.reason:
                line += f"  ({result.reason})"
            print(line)

    if summary.drift is not None and not summary.drift.in_sync:
        print()
        print(summary.drift.summary())

    counts = summary.counts
    print()
    print(
        f"Run {summary.run_id}: {counts['create']} created, {counts['update']} updated, "
        f"{counts['delete']} deleted, {counts['no-op']} unchanged, "
        f"{counts['failed']} failed, {counts['skipped']} skipped"
        + (" (dry run)" if summary.dry_run else "")
        + (" (cancelled)" if summary.cancelled else "")
    )


async def run_plan(engine: ConvergenceEngine, loader: ConfigLoader, args) -> int:
    resources = loader.load()
    try:
        plan, drift = await engine.plan(resources, refresh=not args.no_refresh)
    finally:
        await engine.providers.close_all()

    if args.json:
        data = plan.to_dict()
        if drift is not None:
            data["drift"] = drift.to_dict()
        print(json.dumps(data, indent=2, default=str))
    else:
        print(summarize_plan(plan))
        if drift is not None and not drift.in_sync:
            print()
            print(drift.summary())
    return 0


async def run_apply(engine: ConvergenceEngine, loader: ConfigLoader, args) -> int:
    resources = loader.load()

    # First Ctrl-C stops the run after the current level
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, engine.cancel)
    except (NotImplementedError, RuntimeError):
        pass

    try:
        summary = await engine.apply(
            resources,
            dry_run=args.dry_run,
            config_checksum=loader.checksum(),
        )
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
        await engine.providers.close_all()

    if args.json:
        print(json.dumps(summary.to_dict(), indent=2, default=str))
    else:
        print_summary(summary)

    if summary.cancelled:
        return 130
    return 0 if summary.success else 1


def run_state(store: FileStateStore, args) -> int:
    if args.resource_id:
        try:
            resource_id = ResourceId.parse(args.resource_id)
        except ValueError as e:
            logger.error(str(e))
            return 1
        state = store.read(resource_id)
        if state is None:
            logger.error(f"No stored state for {args.resource_id}")
            return 1
        print(json.dumps(state.to_dict(), indent=2, default=str))
        return 0

    states = store.read_all()
    for resource_id in sorted(states):
        state = states[resource_id]
        print(f"{resource_id}  (revision {state.revision})")
    print(f"{len(states)} resources in {store.state_dir}")
    return 0


def run_unlock(store: FileStateStore, args) -> int:
    info = store.lock_info()
    if info is None:
        print("State is not locked")
        return 0

    if not args.force:
        print(f"Locked by run {info.run_id} ({info.owner}) since {info.acquired_at}")
        print("Use --force to break the lock if that run is no longer alive")
        return 1

    store.force_unlock()
    print(f"Broke lock held by run {info.run_id} ({info.owner})")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the CLI."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s | %(levelname)-5s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        loader = ConfigLoader(args.config) if args.command in ("plan", "apply") else None
        settings = load_settings(loader, args.state_dir)
        store = FileStateStore(settings.state_dir)

        if args.command == "state":
            return run_state(store, args)

        if args.command == "unlock":
            return run_unlock(store, args)

        providers = ProviderRegistry.from_config(loader.providers)
        engine = ConvergenceEngine(store, providers, settings)

        if args.command == "plan":
            return asyncio.run(run_plan(engine, loader, args))

        setup_audit_logging()
        return asyncio.run(run_apply(engine, loader, args))

    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    except ConvergeError as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
