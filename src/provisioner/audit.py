"""Run audit records.

Every plan, apply and destroy run is stamped with one structured record
that answers:
- "What changed, and what failed?"
- "Which commit of the declarations was applied?"
- "Which version of the provisioner ran it?"

Records go to the structured logger (stderr, picked up by the CI log
pipeline) as JSON, so they can be queried alongside the run's other logs.
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .models import ExecutionReport, OperationKind, OperationStatus, Plan

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
PROVISIONER_VERSION = os.environ.get("PROVISIONER_VERSION", "dev")


@dataclass
class ChangeSummary:
    """Operation counts per kind."""

    create_count: int = 0
    update_count: int = 0
    delete_count: int = 0
    noop_count: int = 0

    @property
    def total_significant(self) -> int:
        return self.create_count + self.update_count + self.delete_count


@dataclass
class OutcomeSummary:
    """Operation counts per final status."""

    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


@dataclass
class RunAudit:
    """Audit record for one CLI run."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    command: str = ""
    mode: str = ""
    provisioner_version: str = PROVISIONER_VERSION

    # Source of truth
    git_commit_sha: str = ""
    git_branch: str = ""
    declaration_file: str = ""
    declaration_file_hash: str = ""

    state_fingerprint: str = ""
    changes: ChangeSummary = field(default_factory=ChangeSummary)
    outcome: OutcomeSummary | None = None
    status: str = ""
    failed_operations: list[str] = field(default_factory=list)

    duration_seconds: float = 0.0

    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


def file_hash(path: Path) -> str:
    """SHA256 of a file's content, or "" when it cannot be read."""
    try:
        return hashlib.sha256(Path(path).read_bytes()).hexdigest()
    except OSError:
        return ""


class AuditLogger:
    """Builds and emits run audit records."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._git_branch = os.environ.get("GIT_BRANCH", "")

    def create_audit(self, command: str, declaration_file: Path | None = None) -> RunAudit:
        """Start an audit record for ``command``."""
        return RunAudit(
            command=command,
            git_commit_sha=self._git_commit_sha,
            git_branch=self._git_branch,
            declaration_file=str(declaration_file) if declaration_file else "",
            declaration_file_hash=file_hash(declaration_file) if declaration_file else "",
        )

    def record_plan(self, audit: RunAudit, plan: Plan) -> None:
        audit.mode = plan.mode.value
        audit.state_fingerprint = plan.state_fingerprint
        audit.changes = ChangeSummary(
            create_count=plan.count(OperationKind.CREATE),
            update_count=plan.count(OperationKind.UPDATE),
            delete_count=plan.count(OperationKind.DELETE),
            noop_count=plan.count(OperationKind.NOOP),
        )

    def record_report(self, audit: RunAudit, report: ExecutionReport) -> None:
        audit.status = report.status.value
        audit.outcome = OutcomeSummary(
            succeeded=report.count(OperationStatus.SUCCEEDED),
            failed=report.count(OperationStatus.FAILED),
            skipped=report.count(OperationStatus.SKIPPED),
        )
        audit.failed_operations = [
            r.identifier for r in report.results if r.status == OperationStatus.FAILED
        ]

    def record_error(self, audit: RunAudit, error: Exception) -> None:
        audit.error = str(error)
        audit.error_type = type(error).__name__

    def log_audit(self, audit: RunAudit) -> None:
        """Emit the completed record.

        The level reflects the outcome: ERROR on an aborted run, WARNING when
        some operations failed, INFO otherwise.
        """
        audit.duration_seconds = (datetime.now(UTC) - audit.timestamp).total_seconds()

        log_level = logging.INFO
        if audit.error:
            log_level = logging.ERROR
        elif audit.failed_operations or (audit.outcome and audit.outcome.skipped):
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Run audit",
            extra={
                "audit": audit.to_dict(),
                # Flatten key fields for easier querying
                "command": audit.command,
                "mode": audit.mode,
                "status": audit.status,
                "changes": audit.changes.total_significant,
                "git_commit": audit.git_commit_sha,
                "provisioner_version": audit.provisioner_version,
                "duration_seconds": audit.duration_seconds,
            },
        )


# Global singleton for audit logging
_audit_logger: AuditLogger | None = None


def get_audit_logger() -> AuditLogger:
    """Get the global audit logger instance."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger
