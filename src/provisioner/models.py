"""Pydantic models for declarations, state records, plans and reports.

These models provide:
1. Type-safe parsing of declaration files (validation at the boundary)
2. A JSON round-trippable Plan so a saved plan can be applied later
3. Machine-readable ExecutionReport output for the CLI
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator
from pydantic_core import PydanticSerializationError

# Type tags and symbolic names become file names in the state directory
IDENTIFIER_PART_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_-]*$"

# Attribute that always resolves to the provider-assigned external identifier
EXTERNAL_ID_ATTRIBUTE = "id"


def make_identifier(resource_type: str, name: str) -> str:
    """Build the stable identifier of a resource (``<type>.<name>``)."""
    return f"{resource_type}.{name}"


_ANY_ADAPTER: TypeAdapter[Any] = TypeAdapter(Any)


def to_json_compatible(value: Any, path: str = "attributes") -> Any:
    """Convert a parsed YAML value to the form it takes after a JSON round trip.

    Mapping keys become strings and scalars such as timestamps become their
    JSON encoding, so hashing a value before and after it is stored agrees.

    Raises:
        ValueError: If two keys collide once stringified or a value has no
            JSON form.
    """
    if isinstance(value, dict):
        converted: dict[str, Any] = {}
        for key, item in value.items():
            str_key = str(key)
            if str_key in converted:
                raise ValueError(f"{path} has duplicate key {str_key!r} once keys are strings")
            converted[str_key] = to_json_compatible(item, f"{path}.{str_key}")
        return converted
    if isinstance(value, (list, tuple)):
        return [to_json_compatible(item, f"{path}[{i}]") for i, item in enumerate(value)]
    try:
        return _ANY_ADAPTER.dump_python(value, mode="json")
    except PydanticSerializationError as e:
        raise ValueError(f"{path} is not JSON-compatible: {e}") from e


# =============================================================================
# Declarations and the resource graph
# =============================================================================


class Reference(BaseModel):
    """A dependency of one attribute on another resource's attribute."""

    model_config = {"frozen": True}

    resource: str
    attribute: str

    def __str__(self) -> str:
        return f"${{{self.resource}.{self.attribute}}}"


class ResourceDeclaration(BaseModel):
    """A single resource as written in a declaration file."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    type: Annotated[str, Field(min_length=1, max_length=64, pattern=IDENTIFIER_PART_PATTERN)]
    name: Annotated[str, Field(min_length=1, max_length=90, pattern=IDENTIFIER_PART_PATTERN)]
    attributes: dict[str, Any] = Field(default_factory=dict)

    # Attribute names only the provider can assign (e.g. a generated host name)
    computed: list[str] = Field(default_factory=list)

    @field_validator("attributes", mode="before")
    @classmethod
    def normalize_attributes(cls, v: Any) -> Any:
        if not isinstance(v, dict):
            return v
        return to_json_compatible(v)

    @field_validator("computed")
    @classmethod
    def validate_computed(cls, v: list[str]) -> list[str]:
        if len(set(v)) != len(v):
            raise ValueError("computed attribute names must be unique")
        return v

    @model_validator(mode="after")
    def validate_computed_not_declared(self) -> ResourceDeclaration:
        overlap = sorted(set(self.computed) & set(self.attributes))
        if overlap:
            raise ValueError(f"attributes cannot be both declared and computed: {overlap}")
        return self

    @property
    def identifier(self) -> str:
        return make_identifier(self.type, self.name)


class Resource(BaseModel):
    """A validated graph node: a declaration plus its extracted references."""

    model_config = {"frozen": True}

    identifier: str
    type: str
    name: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    computed: tuple[str, ...] = ()
    references: tuple[Reference, ...] = ()

    def has_attribute(self, attribute: str) -> bool:
        """Check whether ``attribute`` can be the target of a reference."""
        return (
            attribute == EXTERNAL_ID_ATTRIBUTE
            or attribute in self.attributes
            or attribute in self.computed
        )

    def dependency_identifiers(self) -> list[str]:
        """Referenced identifiers in order of first appearance."""
        seen: list[str] = []
        for ref in self.references:
            if ref.resource not in seen:
                seen.append(ref.resource)
        return seen


class ProviderTypeMapping(BaseModel):
    """Maps a symbolic type tag to a provider resource type."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    provider_type: str = Field(alias="armType", min_length=3)
    api_version: str = Field(alias="apiVersion", min_length=1)

    @field_validator("provider_type")
    @classmethod
    def validate_provider_type(cls, v: str) -> str:
        if "/" not in v:
            raise ValueError("armType must look like Namespace/type (e.g. Microsoft.Web/sites)")
        return v


class DeclarationDocument(BaseModel):
    """The contents of a declaration file."""

    model_config = {"extra": "ignore"}

    resources: list[ResourceDeclaration] = Field(default_factory=list)
    types: dict[str, ProviderTypeMapping] = Field(default_factory=dict)


# =============================================================================
# State
# =============================================================================


class StateRecord(BaseModel):
    """Last-known actual state of one resource."""

    model_config = {"extra": "ignore"}

    identifier: str
    resource_type: str
    external_id: str
    # Resolved desired attributes as last applied (basis for diffing)
    applied: dict[str, Any] = Field(default_factory=dict)
    # Attributes reported back by the provider (basis for computed values)
    outputs: dict[str, Any] = Field(default_factory=dict)
    content_hash: str
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def value_of(self, attribute: str) -> Any:
        """Return the value a reference to ``attribute`` resolves to.

        Raises:
            KeyError: If the record holds no such attribute.
        """
        if attribute in self.applied:
            return self.applied[attribute]
        if attribute in self.outputs:
            return self.outputs[attribute]
        if attribute == EXTERNAL_ID_ATTRIBUTE:
            return self.external_id
        raise KeyError(attribute)


# =============================================================================
# Plans
# =============================================================================


class PlanMode(str, Enum):
    """What a plan converges towards."""

    APPLY = "apply"
    DESTROY = "destroy"


class OperationKind(str, Enum):
    """Kinds of planned operations."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "noop"


class AttributeChange(BaseModel):
    """A single attribute-level difference detected for an update."""

    model_config = {"frozen": True}

    attribute: str
    before: Any = None
    after: Any = None


class Operation(BaseModel):
    """One planned step against one resource."""

    model_config = {"frozen": True}

    identifier: str
    resource_type: str
    kind: OperationKind
    resource: Resource | None = None
    desired: dict[str, Any] = Field(default_factory=dict)
    # None when any desired value is only known after a dependency executes
    desired_hash: str | None = None
    changes: tuple[AttributeChange, ...] = ()
    deferred: tuple[Reference, ...] = ()
    # Operations that must reach a terminal state before this one starts
    wait_for: tuple[str, ...] = ()
    external_id: str | None = None

    @property
    def is_deferred(self) -> bool:
        return bool(self.deferred)


class Plan(BaseModel):
    """Ordered, immutable set of operations converging actual to desired state."""

    model_config = {"frozen": True}

    mode: PlanMode
    operations: tuple[Operation, ...] = ()
    state_fingerprint: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def change_count(self) -> int:
        """Number of operations that touch the provider."""
        return sum(1 for op in self.operations if op.kind != OperationKind.NOOP)

    @property
    def is_empty(self) -> bool:
        return self.change_count == 0

    def count(self, kind: OperationKind) -> int:
        return sum(1 for op in self.operations if op.kind == kind)

    def get(self, identifier: str) -> Operation | None:
        for op in self.operations:
            if op.identifier == identifier:
                return op
        return None


# =============================================================================
# Execution reports
# =============================================================================


class OperationStatus(str, Enum):
    """Lifecycle of a single operation during execution."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (
            OperationStatus.SUCCEEDED,
            OperationStatus.FAILED,
            OperationStatus.SKIPPED,
        )


class ExecutionStatus(str, Enum):
    """Overall outcome of executing a plan."""

    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    CANCELLED = "cancelled"


class OperationResult(BaseModel):
    """Final outcome of one operation."""

    identifier: str
    kind: OperationKind
    status: OperationStatus = OperationStatus.PENDING
    attempts: int = 0
    error: str | None = None
    error_type: str | None = None
    # State delta: the committed record, or removed=True for deletes
    record: StateRecord | None = None
    removed: bool = False
    duration_seconds: float = 0.0


class ExecutionReport(BaseModel):
    """Outcome of every operation in a plan."""

    mode: PlanMode
    status: ExecutionStatus
    results: list[OperationResult] = Field(default_factory=list)
    start_time: datetime
    end_time: datetime

    @property
    def duration_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS

    def result_for(self, identifier: str) -> OperationResult | None:
        for result in self.results:
            if result.identifier == identifier:
                return result
        return None

    def count(self, status: OperationStatus) -> int:
        return sum(1 for r in self.results if r.status == status)
