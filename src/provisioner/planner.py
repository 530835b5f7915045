"""Plan computation: diff the desired graph against recorded state.

APPLY mode walks the graph in topological order and classifies every
resource as create, update or noop by comparing the content hash of its
resolved desired attributes with the hash stored at the last apply.

DESTROY mode walks the reverse order and deletes every recorded resource.

Reference values at plan time:
- A declared attribute of a dependency resolves to that dependency's
  resolved desired value.
- A computed attribute (or ``id``) resolves from the dependency's state
  record when the dependency is unchanged, and is deferred when the
  dependency is about to be created or updated. The executor finishes
  deferred resolutions once the dependency has committed.

The planner reads a state snapshot and never writes the store.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from .graph import ResourceGraph
from .models import (
    AttributeChange,
    Operation,
    OperationKind,
    Plan,
    PlanMode,
    Reference,
    StateRecord,
)
from .references import (
    UNKNOWN,
    Resolution,
    content_hash,
    diff_attributes,
    resolve_attributes,
)
from .state import fingerprint

logger = logging.getLogger(__name__)


class PlanError(Exception):
    """Raised when no valid plan can be computed or executed."""

    pass


class CycleDetectedError(PlanError):
    """Raised when the graph handed to the planner is not acyclic."""

    pass


class InconsistentStateError(PlanError):
    """Raised when state holds records for resources no longer declared."""

    def __init__(self, orphans: list[str]) -> None:
        super().__init__(
            f"State contains records for undeclared resources: {orphans}. "
            f"Restore their declarations (and destroy them) or remove the records."
        )
        self.orphans = orphans


class StalePlanError(PlanError):
    """Raised when execution would diverge from what the plan lists."""

    pass


def _lookup_factory(
    graph: ResourceGraph,
    current_state: Mapping[str, StateRecord],
    kinds: Mapping[str, OperationKind],
    resolved: Mapping[str, Resolution],
) -> Any:
    def lookup(ref: Reference) -> Any:
        target = graph.get(ref.resource)
        if ref.attribute in target.attributes:
            resolution = resolved[ref.resource]
            if ref.attribute in resolution.deferred_attributes:
                return UNKNOWN
            return resolution.values[ref.attribute]

        # Computed attribute or external id: only known from an unchanged record
        if kinds[ref.resource] != OperationKind.NOOP:
            return UNKNOWN
        record = current_state.get(ref.resource)
        if record is None:
            return UNKNOWN
        try:
            return record.value_of(ref.attribute)
        except KeyError:
            return UNKNOWN

    return lookup


def _plan_apply(
    graph: ResourceGraph,
    order: list[str],
    current_state: Mapping[str, StateRecord],
) -> list[Operation]:
    kinds: dict[str, OperationKind] = {}
    resolved: dict[str, Resolution] = {}
    lookup = _lookup_factory(graph, current_state, kinds, resolved)
    operations: list[Operation] = []

    for identifier in order:
        resource = graph.get(identifier)
        record = current_state.get(identifier)
        resolution = resolve_attributes(resource.attributes, lookup)
        resolved[identifier] = resolution

        desired_hash = content_hash(resolution.values) if resolution.complete else None
        changes: tuple[AttributeChange, ...] = ()

        if record is None:
            kind = OperationKind.CREATE
        elif resolution.complete:
            if desired_hash == record.content_hash:
                kind = OperationKind.NOOP
            else:
                kind = OperationKind.UPDATE
                changes = diff_attributes(record.applied, resolution.values)
        else:
            # Compare what is known; deferred attributes are settled at execution
            changes = diff_attributes(
                record.applied,
                resolution.values,
                ignore=resolution.deferred_attributes,
            )
            kind = OperationKind.UPDATE if changes else OperationKind.NOOP

        kinds[identifier] = kind
        operations.append(
            Operation(
                identifier=identifier,
                resource_type=resource.type,
                kind=kind,
                resource=resource,
                desired=resolution.values,
                desired_hash=desired_hash,
                changes=changes,
                deferred=resolution.deferred,
                wait_for=tuple(graph.dependencies_of(identifier)),
                external_id=record.external_id if record is not None else None,
            )
        )

    return operations


def _plan_destroy(
    graph: ResourceGraph,
    order: list[str],
    current_state: Mapping[str, StateRecord],
) -> list[Operation]:
    operations: list[Operation] = []

    for identifier in reversed(order):
        record = current_state.get(identifier)
        if record is None:
            logger.debug("Resource not in state, nothing to destroy", extra={"identifier": identifier})
            continue

        # Dependents must be gone first; only those that exist have an operation
        wait_for = tuple(d for d in graph.dependents_of(identifier) if d in current_state)
        operations.append(
            Operation(
                identifier=identifier,
                resource_type=record.resource_type,
                kind=OperationKind.DELETE,
                wait_for=wait_for,
                external_id=record.external_id,
            )
        )

    return operations


def plan(
    graph: ResourceGraph,
    current_state: Mapping[str, StateRecord],
    mode: PlanMode = PlanMode.APPLY,
) -> Plan:
    """Compute the ordered operations converging state to the graph.

    Args:
        graph: Validated resource graph.
        current_state: Snapshot from StateStore.load().
        mode: APPLY or DESTROY.

    Returns:
        Immutable Plan.

    Raises:
        CycleDetectedError: If the graph is not acyclic.
        InconsistentStateError: If state holds undeclared identifiers.
    """
    order = graph.topological_order()
    if order is None:
        raise CycleDetectedError("Resource graph contains a cycle; no order exists")

    orphans = sorted(set(current_state) - set(graph.index))
    if orphans:
        logger.error("Orphaned state records", extra={"orphans": orphans})
        raise InconsistentStateError(orphans)

    match mode:
        case PlanMode.APPLY:
            operations = _plan_apply(graph, order, current_state)
        case PlanMode.DESTROY:
            operations = _plan_destroy(graph, order, current_state)
        case _:
            raise ValueError(f"Unsupported plan mode: {mode}")

    result = Plan(
        mode=mode,
        operations=tuple(operations),
        state_fingerprint=fingerprint(current_state),
    )

    logger.info(
        "Plan computed",
        extra={
            "mode": mode.value,
            "create_count": result.count(OperationKind.CREATE),
            "update_count": result.count(OperationKind.UPDATE),
            "delete_count": result.count(OperationKind.DELETE),
            "noop_count": result.count(OperationKind.NOOP),
            "deferred_count": sum(1 for op in operations if op.is_deferred),
        },
    )
    return result
