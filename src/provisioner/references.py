"""Reference expressions embedded in attribute values.

A reference is written inside any string value as ``${<type>.<name>.<attribute>}``:

```yaml
- type: web-app
  name: app
  attributes:
    location: ${resource-group.rg.location}          # raw value substituted
    connectionString: "Server=${sql-server.db.fqdn};Database=${sql-database.main.name}"
```

A string that is exactly one reference resolves to the referenced value
unchanged (any JSON type). A composite string renders every reference into
text. Each occurrence is a discrete dependency edge.

Values that are only known once a dependency has executed resolve to
UNKNOWN; the enclosing string is kept verbatim and the reference is
reported as deferred so the executor can finish the resolution later.
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

from .models import AttributeChange, Reference, make_identifier

REFERENCE_PATTERN = re.compile(
    r"\$\{"
    r"(?P<type>[A-Za-z0-9][A-Za-z0-9_-]*)\."
    r"(?P<name>[A-Za-z0-9][A-Za-z0-9_-]*)\."
    r"(?P<attribute>[A-Za-z_][A-Za-z0-9_]*)"
    r"\}"
)


class _Unknown:
    """Marker for a value that is not yet known."""

    _instance: _Unknown | None = None

    def __new__(cls) -> _Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNKNOWN"


UNKNOWN = _Unknown()

# Returns the referenced value, or UNKNOWN when it is deferred
ReferenceLookup = Callable[[Reference], Any]


@dataclass(frozen=True)
class Resolution:
    """Attribute values after substituting references."""

    values: dict[str, Any]
    deferred: tuple[Reference, ...] = ()
    deferred_attributes: frozenset[str] = field(default_factory=frozenset)

    @property
    def complete(self) -> bool:
        return not self.deferred


def _iter_matches(text: str) -> Iterator[tuple[re.Match[str], Reference]]:
    for match in REFERENCE_PATTERN.finditer(text):
        ref = Reference(
            resource=make_identifier(match.group("type"), match.group("name")),
            attribute=match.group("attribute"),
        )
        yield match, ref


def extract_references(value: Any) -> list[Reference]:
    """Collect every reference in ``value`` in order of appearance.

    Nested mappings are walked in insertion order, lists in index order.
    Duplicate references are reported once.
    """
    found: list[Reference] = []

    def walk(node: Any) -> None:
        if isinstance(node, str):
            for _, ref in _iter_matches(node):
                if ref not in found:
                    found.append(ref)
        elif isinstance(node, dict):
            for item in node.values():
                walk(item)
        elif isinstance(node, (list, tuple)):
            for item in node:
                walk(item)

    walk(value)
    return found


def render(value: Any) -> str:
    """Render a referenced value into a composite string."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return canonical_json(value)
    return str(value)


def _resolve(node: Any, lookup: ReferenceLookup, deferred: list[Reference]) -> Any:
    if isinstance(node, str):
        matches = list(_iter_matches(node))
        if not matches:
            return node

        values = [(match, ref, lookup(ref)) for match, ref in matches]
        unknown = [ref for _, ref, value in values if value is UNKNOWN]
        if unknown:
            for ref in unknown:
                if ref not in deferred:
                    deferred.append(ref)
            return node

        # Whole-string reference keeps the referenced type
        if len(values) == 1 and values[0][0].group(0) == node:
            return values[0][2]

        parts: list[str] = []
        cursor = 0
        for match, _, value in values:
            parts.append(node[cursor : match.start()])
            parts.append(render(value))
            cursor = match.end()
        parts.append(node[cursor:])
        return "".join(parts)

    if isinstance(node, dict):
        return {key: _resolve(item, lookup, deferred) for key, item in node.items()}
    if isinstance(node, (list, tuple)):
        return [_resolve(item, lookup, deferred) for item in node]
    return node


def resolve_attributes(attributes: dict[str, Any], lookup: ReferenceLookup) -> Resolution:
    """Substitute every reference in ``attributes`` using ``lookup``.

    Args:
        attributes: Declared attribute values (may contain references).
        lookup: Returns a referenced value or UNKNOWN.

    Returns:
        Resolution with deferred references and the top-level attributes
        that still contain them.
    """
    values: dict[str, Any] = {}
    all_deferred: list[Reference] = []
    deferred_attributes: set[str] = set()

    for name, raw in attributes.items():
        deferred: list[Reference] = []
        values[name] = _resolve(raw, lookup, deferred)
        if deferred:
            deferred_attributes.add(name)
            for ref in deferred:
                if ref not in all_deferred:
                    all_deferred.append(ref)

    return Resolution(
        values=values,
        deferred=tuple(all_deferred),
        deferred_attributes=frozenset(deferred_attributes),
    )


def canonical_json(value: Any) -> str:
    """Serialize ``value`` deterministically (sorted keys, no whitespace)."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def content_hash(attributes: dict[str, Any]) -> str:
    """SHA256 of the canonical JSON form of resolved attributes."""
    return hashlib.sha256(canonical_json(attributes).encode("utf-8")).hexdigest()


def diff_attributes(
    before: dict[str, Any],
    after: dict[str, Any],
    ignore: frozenset[str] = frozenset(),
) -> tuple[AttributeChange, ...]:
    """List attribute-level differences, sorted by attribute name.

    Args:
        before: Previously applied attributes.
        after: Desired attributes.
        ignore: Attribute names excluded from comparison.

    Returns:
        One AttributeChange per added, removed or modified attribute.
    """
    changes: list[AttributeChange] = []
    for name in sorted(set(before) | set(after)):
        if name in ignore:
            continue
        old = before.get(name)
        new = after.get(name)
        if name not in after or name not in before or canonical_json(old) != canonical_json(new):
            changes.append(AttributeChange(attribute=name, before=old, after=new))
    return tuple(changes)
