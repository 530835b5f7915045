"""Resource graph construction and validation.

This module turns a flat, ordered list of resource declarations into a
validated dependency graph:
1. Identifier uniqueness
2. Reference resolution (target resource and attribute must exist)
3. Cycle detection (depth-first, unvisited / in-progress / done)
4. Deterministic topological ordering (ties broken by declaration order)

The graph is an arena: resources live in a tuple in declaration order and
edges are tuples of indices into it, so iteration order never depends on
object identity or hashing.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from .models import Resource, ResourceDeclaration
from .references import extract_references

logger = logging.getLogger(__name__)


class GraphError(Exception):
    """Raised when declarations cannot form a valid resource graph."""

    pass


class DuplicateResourceError(GraphError):
    """Raised when two declarations share an identifier."""

    def __init__(self, identifier: str) -> None:
        super().__init__(f"Duplicate resource identifier: {identifier}")
        self.identifier = identifier


class UnresolvedReferenceError(GraphError):
    """Raised when a reference points to an unknown resource or attribute."""

    def __init__(self, identifier: str, target: str, attribute: str, reason: str) -> None:
        super().__init__(
            f"Unresolved reference in {identifier}: ${{{target}.{attribute}}} ({reason})"
        )
        self.identifier = identifier
        self.target = target
        self.attribute = attribute


class CyclicDependencyError(GraphError):
    """Raised when references form a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        path = " -> ".join([*cycle, cycle[0]])
        super().__init__(f"Circular dependency detected: {path}")
        self.cycle = cycle


class _Mark(Enum):
    UNVISITED = 0
    IN_PROGRESS = 1
    DONE = 2


@dataclass(frozen=True)
class ResourceGraph:
    """Validated directed acyclic graph of resources."""

    resources: tuple[Resource, ...] = ()
    index: dict[str, int] = field(default_factory=dict)
    # dependencies[i]: indices resource i references
    dependencies: tuple[tuple[int, ...], ...] = ()
    # dependents[i]: indices referencing resource i
    dependents: tuple[tuple[int, ...], ...] = ()

    def __len__(self) -> int:
        return len(self.resources)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self.index

    def get(self, identifier: str) -> Resource:
        """Return the resource with ``identifier``.

        Raises:
            KeyError: If the identifier is not in the graph.
        """
        return self.resources[self.index[identifier]]

    def identifiers(self) -> list[str]:
        return [r.identifier for r in self.resources]

    def dependencies_of(self, identifier: str) -> list[str]:
        """Direct dependencies of a resource."""
        return [self.resources[i].identifier for i in self.dependencies[self.index[identifier]]]

    def dependents_of(self, identifier: str) -> list[str]:
        """Direct dependents of a resource."""
        return [self.resources[i].identifier for i in self.dependents[self.index[identifier]]]

    def topological_order(self) -> list[str] | None:
        """Return identifiers with every dependency before its dependents.

        Uses Kahn's algorithm with a min-heap on declaration index, so
        resources without an ordering constraint keep declaration order.

        Returns:
            Identifiers in execution order, or None if a cycle exists.
        """
        in_degree = [len(deps) for deps in self.dependencies]
        ready = [i for i, degree in enumerate(in_degree) if degree == 0]
        heapq.heapify(ready)

        order: list[str] = []
        while ready:
            current = heapq.heappop(ready)
            order.append(self.resources[current].identifier)
            for dependent in self.dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(order) != len(self.resources):
            return None
        return order


def _to_resource(declaration: ResourceDeclaration) -> Resource:
    return Resource(
        identifier=declaration.identifier,
        type=declaration.type,
        name=declaration.name,
        attributes=dict(declaration.attributes),
        computed=tuple(declaration.computed),
        references=tuple(extract_references(declaration.attributes)),
    )


def _find_cycle(resources: Sequence[Resource], dependencies: Sequence[Sequence[int]]) -> list[str] | None:
    """Depth-first search for a cycle.

    Roots are visited in declaration order and edges in reference order.
    Reaching an in-progress node closes a cycle; its members are the stack
    slice from that node, i.e. discovery order.
    """
    marks = [_Mark.UNVISITED] * len(resources)

    for root in range(len(resources)):
        if marks[root] is not _Mark.UNVISITED:
            continue

        # Iterative DFS: stack of (node, next edge position)
        stack: list[tuple[int, int]] = [(root, 0)]
        path: list[int] = [root]
        marks[root] = _Mark.IN_PROGRESS

        while stack:
            node, position = stack[-1]
            edges = dependencies[node]
            if position < len(edges):
                stack[-1] = (node, position + 1)
                target = edges[position]
                if marks[target] is _Mark.IN_PROGRESS:
                    start = path.index(target)
                    return [resources[i].identifier for i in path[start:]]
                if marks[target] is _Mark.UNVISITED:
                    marks[target] = _Mark.IN_PROGRESS
                    stack.append((target, 0))
                    path.append(target)
            else:
                marks[node] = _Mark.DONE
                stack.pop()
                path.pop()

    return None


def build(declarations: Iterable[ResourceDeclaration]) -> ResourceGraph:
    """Build and validate the resource graph.

    Pure function of its input.

    Args:
        declarations: Resource declarations in declaration order.

    Returns:
        Validated ResourceGraph.

    Raises:
        DuplicateResourceError: If two declarations share an identifier.
        UnresolvedReferenceError: If a reference target does not exist.
        CyclicDependencyError: If references form a cycle (including self).
    """
    resources: list[Resource] = []
    index: dict[str, int] = {}

    for declaration in declarations:
        resource = _to_resource(declaration)
        if resource.identifier in index:
            raise DuplicateResourceError(resource.identifier)
        index[resource.identifier] = len(resources)
        resources.append(resource)

    dependencies: list[tuple[int, ...]] = []
    for resource in resources:
        for ref in resource.references:
            target_index = index.get(ref.resource)
            if target_index is None:
                raise UnresolvedReferenceError(
                    resource.identifier, ref.resource, ref.attribute, "no such resource"
                )
            if not resources[target_index].has_attribute(ref.attribute):
                raise UnresolvedReferenceError(
                    resource.identifier, ref.resource, ref.attribute, "no such attribute"
                )
        dependencies.append(tuple(index[dep] for dep in resource.dependency_identifiers()))

    cycle = _find_cycle(resources, dependencies)
    if cycle is not None:
        logger.error("Cyclic dependency in declarations", extra={"cycle": cycle})
        raise CyclicDependencyError(cycle)

    dependents: list[list[int]] = [[] for _ in resources]
    for i, deps in enumerate(dependencies):
        for dep in deps:
            dependents[dep].append(i)

    graph = ResourceGraph(
        resources=tuple(resources),
        index=index,
        dependencies=tuple(dependencies),
        dependents=tuple(tuple(d) for d in dependents),
    )
    logger.debug(
        "Resource graph built",
        extra={
            "resource_count": len(resources),
            "edge_count": sum(len(d) for d in dependencies),
        },
    )
    return graph
