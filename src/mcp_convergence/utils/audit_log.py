"""Audit logging for applied changes.

Every resource operation attempted by the executor is recorded as one JSON
line with:
- Timestamp, run id and acting user
- Action and outcome (attempts, error)
- Before/after state
"""
import json
import logging
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

# Dedicated audit logger
audit_logger = logging.getLogger("convergecraft.audit")

DEFAULT_AUDIT_DIR = os.path.expanduser("~/.convergecraft")


def setup_audit_logging(log_dir: Optional[str] = None) -> Path:
    """Configure audit logging to file.

    Args:
        log_dir: Directory for audit logs. Defaults to ~/.convergecraft/

    Returns:
        Path of the audit log file
    """
    if log_dir is None:
        log_dir = os.environ.get("CONVERGECRAFT_AUDIT_DIR", DEFAULT_AUDIT_DIR)

    Path(log_dir).mkdir(parents=True, exist_ok=True)
    audit_file = Path(log_dir) / "audit.log"

    audit_logger.setLevel(logging.INFO)
    for handler in list(audit_logger.handlers):
        audit_logger.removeHandler(handler)
        handler.close()

    handler = RotatingFileHandler(
        audit_file,
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=10,
        encoding="utf-8",
    )
    # Bare JSON lines
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)
    audit_logger.propagate = False

    return audit_file


@dataclass
class ChangeRecord:
    """Record of one resource operation."""
    timestamp: str
    run_id: str
    resource_id: str
    action: str  # create, update, delete
    user: str
    dry_run: bool
    success: bool
    attempts: int = 0
    before_state: Optional[dict] = None
    after_state: Optional[dict] = None
    error: Optional[str] = None

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, json_str: str) -> "ChangeRecord":
        """Parse from JSON string."""
        data = json.loads(json_str)
        return cls(**data)


class AuditTrail:
    """Record the operations of one run."""

    def __init__(self, run_id: str, user: Optional[str] = None, dry_run: bool = False):
        self.run_id = run_id
        self.user = user or os.environ.get("USER", "system")
        self.dry_run = dry_run
        self.records: list[ChangeRecord] = []

    def log_change(
        self,
        resource_id: str,
        action: str,
        success: bool,
        attempts: int = 0,
        error: Optional[str] = None,
        before_state: Optional[dict] = None,
        after_state: Optional[dict] = None,
    ) -> ChangeRecord:
        """Log a resource operation.

        Args:
            resource_id: The resource operated on (type.name)
            action: The action performed (create, update, delete)
            success: Whether the operation succeeded
            attempts: Number of provider calls made
            error: Error message if failed
            before_state: Stored state before the change
            after_state: Stored state after the change

        Returns:
            The ChangeRecord that was logged
        """
        record = ChangeRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            run_id=self.run_id,
            resource_id=resource_id,
            action=action,
            user=self.user,
            dry_run=self.dry_run,
            success=success,
            attempts=attempts,
            before_state=before_state,
            after_state=after_state,
            error=error,
        )

        audit_logger.info(record.to_json())
        self.records.append(record)

        return record


def get_recent_changes(
    log_file: Optional[str] = None,
    resource_id: Optional[str] = None,
    run_id: Optional[str] = None,
    limit: int = 100,
) -> list[ChangeRecord]:
    """Read recent changes from the audit log.

    Args:
        log_file: Path to audit log. Defaults to ~/.convergecraft/audit.log
        resource_id: Filter by resource id
        run_id: Filter by run id
        limit: Maximum number of records to return

    Returns:
        List of ChangeRecords, most recent first
    """
    if log_file is None:
        log_file = os.path.join(
            os.environ.get("CONVERGECRAFT_AUDIT_DIR", DEFAULT_AUDIT_DIR), "audit.log"
        )

    if not os.path.exists(log_file):
        return []

    records = []
    with open(log_file, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                record = ChangeRecord.from_json(line)
            except (json.JSONDecodeError, TypeError):
                continue  # Skip malformed lines

            if resource_id and record.resource_id != resource_id:
                continue
            if run_id and record.run_id != run_id:
                continue

            records.append(record)

    return list(reversed(records[-limit:]))
