"""Core models for driftless."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .exceptions import ValidationError
from .naming import validate_name, validate_type
from .values import Reference, redact, seal, unseal

DEPOSED_SUFFIX = "~deposed"


@dataclass(frozen=True, order=True)
class ResourceId:
    """
    Unique identifier of a declared resource.

    Rendered as ``type/name`` (e.g., ``aws.rds.Instance/scorer-db``).

    Attributes:
        type: Dotted resource type; its prefix selects the provider
        name: Logical name, unique per type
    """

    type: str
    name: str

    def __str__(self) -> str:
        return f"{self.type}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> ResourceId:
        """Parse ``type/name``, validating both parts."""
        resource_type, sep, name = value.partition("/")
        if not sep:
            raise ValidationError("resource id", value, "Expected '<type>/<name>'")
        validate_type(resource_type)
        validate_name(name)
        return cls(resource_type, name)


def state_key(resource_id: ResourceId, deposed: bool = False) -> str:
    """Key of a resource's record in the state mapping."""
    return f"{resource_id}{DEPOSED_SUFFIX}" if deposed else str(resource_id)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Operation(Enum):
    """Operation computed by the diff engine for one resource."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    REPLACE = "replace"
    NOOP = "noop"

    @property
    def symbol(self) -> str:
        return {
            "create": "+",
            "update": "~",
            "delete": "-",
            "replace": "-/+",
            "noop": " ",
        }[self.value]


class NodeStatus(Enum):
    """Lifecycle state of a node during a run."""

    PLANNED = "planned"
    CREATING = "creating"
    CREATED = "created"
    UPDATING = "updating"
    UPDATED = "updated"
    DELETING = "deleting"
    DELETED = "deleted"
    UNCHANGED = "unchanged"
    FAILED = "failed"


class Outcome(Enum):
    """How a node ended a run, as shown in the run report."""

    PLANNED = "planned"
    SUCCEEDED = "succeeded"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Declarations and graph nodes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Timeouts:
    """Per-operation provider call timeouts in seconds (None = no timeout)."""

    create: float | None = None
    update: float | None = None
    delete: float | None = None


@dataclass(frozen=True)
class ResourceDeclaration:
    """
    One declared resource.

    Attributes:
        id: Resource identifier
        config: Property name to literal, Secret, Reference or Interpolation
        depends_on: Extra producers with no value flowing between them
        timeouts: Per-operation provider call timeouts
        protect: Refuse to delete the resource while set
    """

    id: ResourceId
    config: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[ResourceId, ...] = ()
    timeouts: Timeouts = field(default_factory=Timeouts)
    protect: bool = False


@dataclass(frozen=True)
class Edge:
    """Producer → consumer dependency, labeled with the consumed output path.

    Explicit ``depends_on`` edges have an empty path.
    """

    producer: ResourceId
    consumer: ResourceId
    path: str = ""


@dataclass
class ResourceNode:
    """A declared resource and its lifecycle state within one run."""

    declaration: ResourceDeclaration
    incoming: list[Edge] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    status: NodeStatus = NodeStatus.PLANNED

    @property
    def id(self) -> ResourceId:
        return self.declaration.id

    @property
    def config(self) -> dict[str, Any]:
        return self.declaration.config


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LockInfo:
    """Lock holder details written alongside a held state lock."""

    run_id: str
    holder: str
    acquired_at: str

    def to_dict(self) -> dict[str, str]:
        return {"run_id": self.run_id, "holder": self.holder, "acquired_at": self.acquired_at}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> LockInfo:
        return cls(
            run_id=str(d.get("run_id", "")),
            holder=str(d.get("holder", "unknown")),
            acquired_at=str(d.get("acquired_at", "")),
        )


@dataclass(frozen=True)
class StateRecord:
    """
    Last-known-applied state of one external resource.

    Attributes:
        id: Resource identifier
        external_id: Provider-assigned identity
        config_hash: Hash of the declared configuration last applied
        property_hashes: Per-property hashes of that configuration
        inputs_hash: Hash of the resolved configuration sent to the provider
        outputs: Last-known outputs (secrets are Sealed after a reload)
        dependencies: Producers this resource read from when applied
        protect: Deletion protection at the time of the last apply
        deposed: Old object awaiting deletion after create-before-delete
        updated_at: ISO timestamp of the last successful operation
    """

    id: ResourceId
    external_id: str
    config_hash: str
    property_hashes: dict[str, str] = field(default_factory=dict)
    inputs_hash: str = ""
    outputs: dict[str, Any] = field(default_factory=dict)
    dependencies: tuple[ResourceId, ...] = ()
    protect: bool = False
    deposed: bool = False
    updated_at: str = ""

    @property
    def key(self) -> str:
        return state_key(self.id, self.deposed)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for a state document; secrets are reduced to digests."""
        result: dict[str, Any] = {
            "type": self.id.type,
            "name": self.id.name,
            "external_id": self.external_id,
            "config_hash": self.config_hash,
            "property_hashes": dict(sorted(self.property_hashes.items())),
            "inputs_hash": self.inputs_hash,
            "outputs": seal(self.outputs),
            "dependencies": [str(d) for d in self.dependencies],
            "updated_at": self.updated_at,
        }
        if self.protect:
            result["protect"] = True
        if self.deposed:
            result["deposed"] = True
        return result

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> StateRecord:
        return cls(
            id=ResourceId(d["type"], d["name"]),
            external_id=d["external_id"],
            config_hash=d["config_hash"],
            property_hashes=dict(d.get("property_hashes", {})),
            inputs_hash=d.get("inputs_hash", ""),
            outputs=unseal(d.get("outputs", {})),
            dependencies=tuple(ResourceId.parse(dep) for dep in d.get("dependencies", [])),
            protect=bool(d.get("protect", False)),
            deposed=bool(d.get("deposed", False)),
            updated_at=d.get("updated_at", ""),
        )


# ---------------------------------------------------------------------------
# Change sets
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Change:
    """A single operation needed to reconcile one resource."""

    id: ResourceId
    operation: Operation
    reason: str
    properties: tuple[str, ...] = ()
    deposed: bool = False

    @property
    def key(self) -> str:
        return state_key(self.id, self.deposed)


@dataclass
class ChangeSet:
    """Operations for one run, in graph order (deletes last)."""

    changes: list[Change] = field(default_factory=list)

    def __iter__(self):  # type: ignore[no-untyped-def]
        return iter(self.changes)

    def __len__(self) -> int:
        return len(self.changes)

    def get(self, key: str) -> Change | None:
        for change in self.changes:
            if change.key == key:
                return change
        return None

    def of(self, operation: Operation) -> list[Change]:
        return [c for c in self.changes if c.operation is operation]

    @property
    def has_changes(self) -> bool:
        return any(c.operation is not Operation.NOOP for c in self.changes)

    def summary(self) -> dict[str, int]:
        """Count of changes per operation name."""
        counts = {op.value: 0 for op in Operation}
        for change in self.changes:
            counts[change.operation.value] += 1
        return counts


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


@dataclass
class NodeReport:
    """Final status of one node in a run."""

    key: str
    operation: Operation
    outcome: Outcome = Outcome.PLANNED
    status: NodeStatus = NodeStatus.PLANNED
    reason: str = ""
    attempts: int = 0
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def as_dict(self) -> dict[str, Any]:
        return {
            "resource": self.key,
            "operation": self.operation.value,
            "outcome": self.outcome.value,
            "status": self.status.value,
            "reason": self.reason,
            "attempts": self.attempts,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class RunReport:
    """Structured result of an apply/destroy run."""

    run_id: str
    environment: str
    nodes: dict[str, NodeReport] = field(default_factory=dict)
    exports: dict[str, Any] = field(default_factory=dict)
    dry_run: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def with_outcome(self, outcome: Outcome) -> list[NodeReport]:
        return [n for n in self.nodes.values() if n.outcome is outcome]

    @property
    def succeeded(self) -> list[NodeReport]:
        return self.with_outcome(Outcome.SUCCEEDED)

    @property
    def failed(self) -> list[NodeReport]:
        return self.with_outcome(Outcome.FAILED)

    @property
    def skipped(self) -> list[NodeReport]:
        return self.with_outcome(Outcome.SKIPPED)

    @property
    def ok(self) -> bool:
        """True when no node failed, was skipped or was cancelled."""
        bad = (Outcome.FAILED, Outcome.SKIPPED, Outcome.CANCELLED)
        return not any(n.outcome in bad for n in self.nodes.values())

    def as_dict(self) -> dict[str, Any]:
        """Serialize for JSON output; exported secrets are redacted."""
        return {
            "run_id": self.run_id,
            "environment": self.environment,
            "dry_run": self.dry_run,
            "ok": self.ok,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "nodes": [n.as_dict() for n in self.nodes.values()],
            "exports": redact(self.exports),
        }


__all__ = [
    "Change",
    "ChangeSet",
    "Edge",
    "LockInfo",
    "NodeReport",
    "NodeStatus",
    "Operation",
    "Outcome",
    "Reference",
    "ResourceDeclaration",
    "ResourceId",
    "ResourceNode",
    "RunReport",
    "StateRecord",
    "Timeouts",
    "state_key",
]
