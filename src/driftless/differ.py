"""Diff engine for declared resources.

Compares the resource graph against the previously applied state to
produce a :class:`~driftless.models.ChangeSet` (create/update/replace/
delete/noop per resource).
"""

from __future__ import annotations

from collections.abc import Callable, Mapping

from .graph import ResourceGraph
from .models import Change, ChangeSet, Operation, StateRecord, state_key
from .providers.base import ProviderCapabilities
from .values import config_hash, property_hashes

CapabilitiesLookup = Callable[[str], ProviderCapabilities]


def changed_properties(hashes: Mapping[str, str], record: StateRecord) -> list[str]:
    """Properties whose hash differs from the record (added and removed included)."""
    names = set(hashes) | set(record.property_hashes)
    return sorted(n for n in names if hashes.get(n) != record.property_hashes.get(n))


def compute_changes(
    graph: ResourceGraph,
    state: Mapping[str, StateRecord],
    capabilities_for: CapabilitiesLookup,
) -> ChangeSet:
    """Compute changes between declared resources and previous state.

    Args:
        graph: Declared resources
        state: Records keyed by state key
        capabilities_for: Capability lookup by resource type

    Returns:
        ChangeSet with one change per declared node (in topological order)
        followed by deletes for records with no declaration.
    """
    changes: dict[str, Change] = {}

    # --- Declared resources ---
    for node in graph.topological_order():
        record = state.get(state_key(node.id))
        if record is None:
            changes[str(node.id)] = Change(node.id, Operation.CREATE, "not in state")
            continue

        hashes = property_hashes(node.config)
        if config_hash(hashes) == record.config_hash:
            changes[str(node.id)] = Change(node.id, Operation.NOOP, "configuration unchanged")
            continue

        changed = changed_properties(hashes, record)
        forced = capabilities_for(node.id.type).replacement_properties(changed)
        if forced:
            changes[str(node.id)] = Change(
                node.id,
                Operation.REPLACE,
                f"replacement required by {', '.join(forced)}",
                properties=tuple(changed),
            )
        else:
            changes[str(node.id)] = Change(
                node.id,
                Operation.UPDATE,
                f"changed {', '.join(changed)}",
                properties=tuple(changed),
            )

    # --- Consumers of replaced producers ---
    for change in list(changes.values()):
        if change.operation is not Operation.REPLACE:
            continue
        for consumer in sorted(graph.consumers(change.id)):
            current = changes[str(consumer)]
            if current.operation is Operation.NOOP:
                changes[str(consumer)] = Change(
                    consumer, Operation.UPDATE, f"producer {change.id} is replaced"
                )

    # --- Records with no declaration ---
    deletes = [
        Change(
            record.id,
            Operation.DELETE,
            "deposed by replacement" if record.deposed else "no longer declared",
            deposed=record.deposed,
        )
        for key, record in sorted(state.items())
        if record.deposed or record.id not in graph
    ]

    return ChangeSet(list(changes.values()) + deletes)


def compute_destroy(state: Mapping[str, StateRecord]) -> ChangeSet:
    """Mark every recorded resource for deletion."""
    return ChangeSet(
        [
            Change(record.id, Operation.DELETE, "destroy", deposed=record.deposed)
            for key, record in sorted(state.items())
        ]
    )
