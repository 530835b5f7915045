"""Tests for run audit records."""

from __future__ import annotations

import hashlib
import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from unittest import mock

import pytest

from provisioner.audit import AuditLogger, RunAudit, file_hash
from provisioner.models import (
    ExecutionReport,
    ExecutionStatus,
    Operation,
    OperationKind,
    OperationResult,
    OperationStatus,
    Plan,
    PlanMode,
)


def make_plan() -> Plan:
    kinds = [OperationKind.CREATE, OperationKind.CREATE, OperationKind.UPDATE, OperationKind.NOOP]
    return Plan(
        mode=PlanMode.APPLY,
        operations=tuple(
            Operation(identifier=f"x.r{i}", resource_type="x", kind=kind)
            for i, kind in enumerate(kinds)
        ),
        state_fingerprint="fp-1",
    )


def make_report() -> ExecutionReport:
    now = datetime.now(UTC)
    return ExecutionReport(
        mode=PlanMode.APPLY,
        status=ExecutionStatus.PARTIAL_FAILURE,
        results=[
            OperationResult(identifier="x.r0", kind=OperationKind.CREATE, status=OperationStatus.SUCCEEDED),
            OperationResult(identifier="x.r1", kind=OperationKind.CREATE, status=OperationStatus.FAILED),
            OperationResult(identifier="x.r2", kind=OperationKind.UPDATE, status=OperationStatus.SKIPPED),
            OperationResult(identifier="x.r3", kind=OperationKind.NOOP, status=OperationStatus.SUCCEEDED),
        ],
        start_time=now,
        end_time=now,
    )


class TestAuditLogger:
    """Tests for AuditLogger."""

    def test_create_audit_stamps_source(self, tmp_path: Path) -> None:
        """Test the record carries git metadata and the declaration hash."""
        declarations = tmp_path / "declarations.yaml"
        declarations.write_text("resources: []\n")
        env = {"GIT_COMMIT_SHA": "abc123", "GIT_BRANCH": "main"}

        with mock.patch.dict(os.environ, env, clear=True):
            audit = AuditLogger().create_audit("apply", declarations)

        assert audit.command == "apply"
        assert audit.git_commit_sha == "abc123"
        assert audit.git_branch == "main"
        assert audit.declaration_file == str(declarations)
        assert audit.declaration_file_hash == hashlib.sha256(b"resources: []\n").hexdigest()

    def test_record_plan_and_report(self) -> None:
        """Test counts per kind and per status are recorded."""
        audit_logger = AuditLogger()
        audit = audit_logger.create_audit("apply")

        audit_logger.record_plan(audit, make_plan())
        audit_logger.record_report(audit, make_report())

        assert audit.mode == "apply"
        assert audit.state_fingerprint == "fp-1"
        assert audit.changes.create_count == 2
        assert audit.changes.update_count == 1
        assert audit.changes.noop_count == 1
        assert audit.changes.total_significant == 3
        assert audit.status == "partial_failure"
        assert audit.outcome.succeeded == 2
        assert audit.outcome.failed == 1
        assert audit.outcome.skipped == 1
        assert audit.failed_operations == ["x.r1"]

    @pytest.mark.parametrize(
        ("setup", "level"),
        [
            ("clean", logging.INFO),
            ("failed", logging.WARNING),
            ("error", logging.ERROR),
        ],
    )
    def test_log_level_reflects_outcome(
        self, setup: str, level: int, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test the audit record's level follows the run outcome."""
        audit_logger = AuditLogger()
        audit = audit_logger.create_audit("apply")
        if setup == "failed":
            audit_logger.record_report(audit, make_report())
        elif setup == "error":
            audit_logger.record_error(audit, ValueError("bad"))

        with caplog.at_level(logging.DEBUG, logger="provisioner.audit"):
            audit_logger.log_audit(audit)

        records = [r for r in caplog.records if r.getMessage() == "Run audit"]
        assert len(records) == 1
        assert records[0].levelno == level
        assert records[0].audit["command"] == "apply"

    def test_error_recorded(self) -> None:
        """Test errors keep message and type."""
        audit_logger = AuditLogger()
        audit = audit_logger.create_audit("destroy")
        audit_logger.record_error(audit, KeyError("x"))

        assert audit.error_type == "KeyError"


class TestRunAudit:
    """Tests for RunAudit serialization."""

    def test_to_dict(self) -> None:
        """Test the record serializes with an ISO timestamp."""
        data = RunAudit(command="plan").to_dict()
        assert data["command"] == "plan"
        assert isinstance(data["timestamp"], str)
        assert data["changes"]["create_count"] == 0


class TestFileHash:
    """Tests for file_hash()."""

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test unreadable files hash to an empty string."""
        assert file_hash(tmp_path / "missing") == ""
