"""Utility modules for logging, auditing and retries."""
from .audit_log import AuditTrail, ChangeRecord, get_recent_changes, setup_audit_logging
from .logging_config import (
    setup_logging,
    timed,
    timed_section,
    perf_logger,
)
from .retry import async_retrying

__all__ = [
    "AuditTrail",
    "ChangeRecord",
    "get_recent_changes",
    "setup_audit_logging",
    "setup_logging",
    "timed",
    "timed_section",
    "perf_logger",
    "async_retrying",
]
