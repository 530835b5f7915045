"""Blast radius guardrails checked before a plan is executed.

Hard safety limits that stop an apply or destroy before any provider call:
- Kill switch: central control to halt every run that would change something
- Blast radius: caps on changes and deletions per run
- Protected resources: identifiers that must never be deleted

Fail closed: a violation aborts the whole run; nothing is partially applied.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field

from .models import OperationKind, Plan

logger = logging.getLogger(__name__)


class GuardrailViolation(Exception):
    """Raised when a guardrail check fails."""

    pass


class KillSwitchActive(GuardrailViolation):
    """Raised when kill switch is enabled."""

    pass


class BlastRadiusViolation(GuardrailViolation):
    """Raised when a plan changes or deletes more than allowed."""

    pass


class ProtectedResourceViolation(GuardrailViolation):
    """Raised when a plan deletes a protected resource."""

    pass


DEFAULT_MAX_CHANGES_PER_RUN = 100
DEFAULT_MAX_DELETES_PER_RUN = 25


@dataclass(frozen=True)
class GuardrailsConfig:
    """Configuration for blast radius guardrails.

    SECURITY: These limits cannot be raised from a declaration file, only by
    changing the environment of the run.
    """

    kill_switch_enabled: bool = False
    max_changes_per_run: int = DEFAULT_MAX_CHANGES_PER_RUN
    max_deletes_per_run: int = DEFAULT_MAX_DELETES_PER_RUN
    # Identifier patterns (exact, wildcard or ^regex) that must never be deleted
    protected_resources: list[str] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> GuardrailsConfig:
        """Load guardrails configuration from environment.

        Environment Variables:
            KILL_SWITCH: If "true", blocks every run that changes something
            MAX_CHANGES_PER_RUN: Max create/update/delete operations (default: 100)
            MAX_DELETES_PER_RUN: Max delete operations (default: 25)
            PROTECTED_RESOURCES: Comma-separated identifier patterns never deleted
        """

        def get_list(key: str) -> list[str]:
            value = os.environ.get(key, "")
            if not value:
                return []
            return [item.strip() for item in value.split(",") if item.strip()]

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError:
                return default

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            kill_switch_enabled=get_bool("KILL_SWITCH", False),
            max_changes_per_run=get_int("MAX_CHANGES_PER_RUN", DEFAULT_MAX_CHANGES_PER_RUN),
            max_deletes_per_run=get_int("MAX_DELETES_PER_RUN", DEFAULT_MAX_DELETES_PER_RUN),
            protected_resources=get_list("PROTECTED_RESOURCES"),
        )


class GuardrailEnforcer:
    """Enforces guardrails on a plan before it is executed.

    SECURITY: Every plan MUST pass through check_plan() before execution.

    Usage:
        enforcer = GuardrailEnforcer(GuardrailsConfig.from_env())
        enforcer.check_plan(plan)  # Raises GuardrailViolation
    """

    def __init__(self, config: GuardrailsConfig) -> None:
        self._config = config

    @property
    def config(self) -> GuardrailsConfig:
        return self._config

    def check_kill_switch(self) -> None:
        """Check if kill switch is active.

        Raises:
            KillSwitchActive: If kill switch is enabled.
        """
        # Check environment variable (allows dynamic control)
        env_kill_switch = os.environ.get("KILL_SWITCH", "").lower() in ("true", "1", "yes")

        if self._config.kill_switch_enabled or env_kill_switch:
            logger.warning(
                "KILL_SWITCH: Apply operations blocked",
                extra={
                    "config_enabled": self._config.kill_switch_enabled,
                    "env_enabled": env_kill_switch,
                },
            )
            raise KillSwitchActive(
                "Kill switch is active. All apply and destroy operations are blocked. "
                "Set KILL_SWITCH=false to resume."
            )

    def check_blast_radius(self, plan: Plan) -> None:
        """Check change and delete counts against the per-run limits.

        Raises:
            BlastRadiusViolation: If any limit is exceeded.
        """
        changes = plan.change_count
        deletes = plan.count(OperationKind.DELETE)
        violations = []

        if changes > self._config.max_changes_per_run:
            violations.append(
                f"changes ({changes}) exceed limit ({self._config.max_changes_per_run})"
            )
        if deletes > self._config.max_deletes_per_run:
            violations.append(
                f"deletes ({deletes}) exceed limit ({self._config.max_deletes_per_run})"
            )

        if violations:
            logger.error(
                "GUARDRAIL: Blast radius exceeded",
                extra={"violations": violations, "changes": changes, "deletes": deletes},
            )
            raise BlastRadiusViolation(f"Blast radius exceeded: {'; '.join(violations)}")

    def check_protected(self, plan: Plan) -> None:
        """Refuse to delete any resource matching a protected pattern.

        Raises:
            ProtectedResourceViolation: If a delete targets a protected resource.
        """
        blocked = [
            op.identifier
            for op in plan.operations
            if op.kind == OperationKind.DELETE
            and any(self._matches(op.identifier, p) for p in self._config.protected_resources)
        ]
        if blocked:
            logger.error("GUARDRAIL: Protected resource deletion", extra={"identifiers": blocked})
            raise ProtectedResourceViolation(f"Plan deletes protected resources: {blocked}")

    def check_plan(self, plan: Plan) -> None:
        """Run every guardrail against ``plan``.

        A plan without changes always passes, even with the kill switch on.

        Raises:
            GuardrailViolation: If any check fails.
        """
        if plan.is_empty:
            return
        self.check_kill_switch()
        self.check_blast_radius(plan)
        self.check_protected(plan)
        logger.debug("Guardrails passed", extra={"change_count": plan.change_count})

    def _matches(self, value: str, pattern: str) -> bool:
        """Match exactly (case-insensitive), by wildcard (*, ?) or by ^regex."""
        if pattern.startswith("^"):
            return bool(re.match(pattern, value, re.IGNORECASE))
        elif "*" in pattern or "?" in pattern:
            regex = pattern.replace(".", r"\.").replace("*", ".*").replace("?", ".")
            return bool(re.match(f"^{regex}$", value, re.IGNORECASE))
        else:
            return value.lower() == pattern.lower()
