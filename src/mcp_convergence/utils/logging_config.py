"""Logging configuration for convergecraft.

Provides configurable logging with:
- File-based logging with rotation
- Console output for real-time debugging
- Performance timing helpers for per-resource operations

Environment Variables:
    CONVERGECRAFT_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
    CONVERGECRAFT_LOG_FILE: Path to log file (default: ~/.convergecraft/convergecraft.log)
    CONVERGECRAFT_LOG_MAX_SIZE: Max log file size in MB (default: 10)
    CONVERGECRAFT_LOG_BACKUPS: Number of backup files to keep (default: 5)

Usage:
    from mcp_convergence.utils.logging_config import setup_logging, timed_section

    setup_logging()  # Call once at startup

    async with timed_section("apply", target="local_file.motd", action="create"):
        ...
"""
import asyncio
import functools
import logging
import os
import time
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Optional

# Performance logger - separate from main logger for easy filtering
perf_logger = logging.getLogger("convergecraft.perf")

_configured = False


def get_log_level() -> int:
    """Get log level from environment."""
    level_str = os.environ.get("CONVERGECRAFT_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_str, logging.INFO)


def get_log_file() -> Path:
    """Get log file path from environment."""
    default_path = Path.home() / ".convergecraft" / "convergecraft.log"
    path_str = os.environ.get("CONVERGECRAFT_LOG_FILE", str(default_path))
    return Path(path_str)


def setup_logging(console: bool = True) -> None:
    """Configure logging for the application.

    Sets up:
    - Console handler (respects CONVERGECRAFT_LOG_LEVEL)
    - File handler with rotation (DEBUG level - captures everything)
    - Performance logger for timing metrics

    Calling it again is a no-op.
    """
    global _configured
    if _configured:
        return

    log_level = get_log_level()
    log_file = get_log_file()
    max_size_mb = int(os.environ.get("CONVERGECRAFT_LOG_MAX_SIZE", "10"))
    backup_count = int(os.environ.get("CONVERGECRAFT_LOG_BACKUPS", "5"))

    log_file.parent.mkdir(parents=True, exist_ok=True)

    main_format = logging.Formatter(
        "%(asctime)s.%(msecs)03d | %(name)-30s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    perf_format = logging.Formatter(
        "%(asctime)s.%(msecs)03d | PERF | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8"
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(main_format)

    perf_log_file = log_file.parent / "convergecraft-perf.log"
    perf_handler = RotatingFileHandler(
        perf_log_file,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8"
    )
    perf_handler.setLevel(logging.DEBUG)
    perf_handler.setFormatter(perf_format)

    handlers: list[logging.Handler] = [file_handler]
    if console:
        # stderr, so stdout stays clean for the stdio MCP transport
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(main_format)
        handlers.append(console_handler)

    pkg_logger = logging.getLogger("mcp_convergence")
    pkg_logger.setLevel(logging.DEBUG)  # Capture all, handlers filter
    for handler in handlers:
        pkg_logger.addHandler(handler)

    perf_logger.setLevel(logging.DEBUG)
    perf_logger.addHandler(perf_handler)
    perf_logger.propagate = False

    _configured = True

    pkg_logger.info(f"Logging initialized: level={logging.getLevelName(log_level)}, file={log_file}")
    perf_logger.info(f"Performance logging to: {perf_log_file}")


def _format_perf(
    operation: str,
    target: Optional[str],
    elapsed_ms: float,
    outcome: str,
    extra: dict,
) -> str:
    msg = f"{operation:20s} | {target or 'N/A':30s} | {elapsed_ms:8.2f}ms | {outcome}"
    if extra:
        msg += " | " + " | ".join(f"{k}={v}" for k, v in extra.items())
    return msg


def timed(operation: str):
    """Decorator to log execution time of sync/async functions.

    Usage:
        @timed("plan")
        async def plan(self, resources):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs) -> Any:
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.warning(_format_perf(operation, None, elapsed, f"FAIL: {e}", {}))
                raise
            elapsed = (time.perf_counter() - start) * 1000
            perf_logger.info(_format_perf(operation, None, elapsed, "OK", {}))
            return result

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs) -> Any:
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.warning(_format_perf(operation, None, elapsed, f"FAIL: {e}", {}))
                raise
            elapsed = (time.perf_counter() - start) * 1000
            perf_logger.info(_format_perf(operation, None, elapsed, "OK", {}))
            return result

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


@asynccontextmanager
async def timed_section(operation: str, target: Optional[str] = None, **extra):
    """Async context manager for timing code sections.

    Args:
        operation: Name of the operation
        target: Resource id or other subject of the operation
        **extra: Additional context to log
    """
    start = time.perf_counter()

    try:
        yield
    except Exception as e:
        elapsed = (time.perf_counter() - start) * 1000
        perf_logger.warning(_format_perf(operation, target, elapsed, f"FAIL: {e}", extra))
        raise

    elapsed = (time.perf_counter() - start) * 1000
    perf_logger.info(_format_perf(operation, target, elapsed, "OK", extra))
