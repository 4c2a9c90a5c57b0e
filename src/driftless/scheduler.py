"""Dependency scheduler.

Expands a change set into steps and orders them into waves:

- a producer's create/update/noop step precedes its consumers' steps;
- deletes run in reverse dependency order (consumers first), using the
  dependencies recorded in state;
- a resource being removed is deleted only after every resource that used
  to depend on it has been created or updated;
- a Replace becomes create-new then delete-old when the provider supports
  create-before-delete, otherwise delete-old then create-new.

Steps in the same wave have no ordering constraint between them.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from .differ import CapabilitiesLookup
from .exceptions import UnschedulableError
from .graph import ResourceGraph
from .models import ChangeSet, Operation, ResourceId, StateRecord, state_key


class StepAction(Enum):
    """Provider-facing action of one step."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "noop"


@dataclass(frozen=True)
class Step:
    """
    One unit of work for the execution engine.

    Attributes:
        id: Resource the step acts on
        action: What to do
        deposed: Acts on the deposed (old) object of a replacement
        cleanup: Removes a deposed object left behind by an earlier run
        owner: Report key of the change this step belongs to
    """

    id: ResourceId
    action: StepAction
    deposed: bool = False
    cleanup: bool = False
    owner: str = field(default="", compare=False)

    @property
    def key(self) -> str:
        key = f"{self.action.value}:{state_key(self.id, self.deposed)}"
        return f"{key}:cleanup" if self.cleanup else key

    def __str__(self) -> str:
        return self.key


@dataclass
class Schedule:
    """Steps layered into waves plus the ordering constraints between them."""

    waves: list[list[Step]] = field(default_factory=list)
    predecessors: dict[Step, frozenset[Step]] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.waves)

    @property
    def steps(self) -> list[Step]:
        return [step for wave in self.waves for step in wave]

    def wave_index(self, resource_id: ResourceId, action: StepAction | None = None) -> int:
        """Index of the first wave holding a step for the resource (and action)."""
        for index, wave in enumerate(self.waves):
            for step in wave:
                if step.id == resource_id and (action is None or step.action is action):
                    return index
        raise KeyError(f"No step for {resource_id} {action.value if action else ''}".strip())


def _layer(steps: list[Step], edges: set[tuple[Step, Step]]) -> Schedule:
    """Kahn's algorithm by rounds: each round is one wave."""
    predecessors: dict[Step, set[Step]] = {step: set() for step in steps}
    successors: dict[Step, set[Step]] = defaultdict(set)
    for before, after in edges:
        predecessors[after].add(before)
        successors[before].add(after)

    remaining = {step: len(preds) for step, preds in predecessors.items()}
    current = sorted((s for s, n in remaining.items() if n == 0), key=lambda s: s.key)
    waves: list[list[Step]] = []
    placed = 0
    while current:
        waves.append(current)
        placed += len(current)
        ready: list[Step] = []
        for step in current:
            for nxt in successors[step]:
                remaining[nxt] -= 1
                if remaining[nxt] == 0:
                    ready.append(nxt)
        current = sorted(ready, key=lambda s: s.key)

    if placed != len(steps):
        stuck = sorted(s.key for s, n in remaining.items() if n > 0)
        raise UnschedulableError(stuck)

    return Schedule(
        waves=waves,
        predecessors={step: frozenset(preds) for step, preds in predecessors.items()},
    )


def schedule(
    change_set: ChangeSet,
    graph: ResourceGraph,
    state: Mapping[str, StateRecord],
    capabilities_for: CapabilitiesLookup,
) -> Schedule:
    """
    Order a change set into waves of steps.

    Args:
        change_set: Changes from the diff engine
        graph: Declared resources (edges between live nodes)
        state: Previously applied records (dependencies of deleted nodes)
        capabilities_for: Capability lookup by resource type

    Returns:
        Schedule whose waves respect every ordering constraint

    Raises:
        UnschedulableError: If the constraints contain a cycle
    """
    forward: dict[ResourceId, Step] = {}
    live_deletes: dict[ResourceId, Step] = {}
    deposed_deletes: dict[ResourceId, list[Step]] = defaultdict(list)
    replace_deletes: set[Step] = set()
    edges: set[tuple[Step, Step]] = set()

    create_first = {
        c.id
        for c in change_set.of(Operation.REPLACE)
        if capabilities_for(c.id.type).create_before_delete
    }

    for change in change_set:
        rid, owner = change.id, change.key
        if change.operation is Operation.CREATE:
            forward[rid] = Step(rid, StepAction.CREATE, owner=owner)
        elif change.operation is Operation.UPDATE:
            forward[rid] = Step(rid, StepAction.UPDATE, owner=owner)
        elif change.operation is Operation.NOOP:
            forward[rid] = Step(rid, StepAction.NOOP, owner=owner)
        elif change.operation is Operation.REPLACE:
            create = Step(rid, StepAction.CREATE, owner=owner)
            forward[rid] = create
            if rid in create_first:
                old = Step(rid, StepAction.DELETE, deposed=True, owner=owner)
                deposed_deletes[rid].append(old)
                edges.add((create, old))
            else:
                old = Step(rid, StepAction.DELETE, owner=owner)
                live_deletes[rid] = old
                replace_deletes.add(old)
                edges.add((old, create))
        elif change.deposed:
            # An older deposed object must go before the live one is deposed again
            step = Step(
                rid, StepAction.DELETE, deposed=True, cleanup=rid in create_first, owner=owner
            )
            deposed_deletes[rid].append(step)
        else:
            live_deletes[rid] = Step(rid, StepAction.DELETE, owner=owner)

    for rid, steps in deposed_deletes.items():
        for step in steps:
            if step.cleanup:
                edges.add((step, forward[rid]))

    # (a) producers before consumers
    for edge in graph.edges:
        if edge.producer in forward and edge.consumer in forward:
            edges.add((forward[edge.producer], forward[edge.consumer]))

    all_deletes = list(live_deletes.values()) + [s for v in deposed_deletes.values() for s in v]

    def recorded_dependencies(step: Step) -> tuple[ResourceId, ...]:
        record = state.get(state_key(step.id, step.deposed)) or state.get(state_key(step.id))
        return record.dependencies if record else ()

    # (b) consumers deleted before producers
    for step in all_deletes:
        for producer in recorded_dependencies(step):
            targets = list(deposed_deletes.get(producer, []))
            if producer in live_deletes:
                targets.append(live_deletes[producer])
            for target in targets:
                if target is not step:
                    edges.add((step, target))

    # (b2) former consumers move off a producer before it is deleted
    for step in all_deletes:
        if step in replace_deletes or step.cleanup:
            continue
        for record in state.values():
            if record.deposed or record.id == step.id or record.id not in forward:
                continue
            if step.id in record.dependencies:
                edges.add((forward[record.id], step))

    steps = list(forward.values()) + all_deletes
    return _layer(steps, edges)
