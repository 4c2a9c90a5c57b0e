"""Resource graph builder.

Turns an ordered list of declarations into a DAG of :class:`ResourceNode`.
Edges come from references in configuration values and from explicit
``depends_on`` entries.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from .exceptions import CycleError, DuplicateIdentifierError, UnknownReferenceError
from .models import Edge, ResourceDeclaration, ResourceId, ResourceNode
from .values import iter_references


class ResourceGraph:
    """
    Directed acyclic graph of declared resources.

    Nodes keep declaration order, which is also the tie-break order of
    :meth:`topological_order`.
    """

    def __init__(self, nodes: dict[ResourceId, ResourceNode], edges: list[Edge]) -> None:
        self.nodes = nodes
        self.edges = edges
        self._producers: dict[ResourceId, set[ResourceId]] = {rid: set() for rid in nodes}
        self._consumers: dict[ResourceId, set[ResourceId]] = {rid: set() for rid in nodes}
        for edge in edges:
            self._producers[edge.consumer].add(edge.producer)
            self._consumers[edge.producer].add(edge.consumer)

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self.nodes

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self.nodes.values())

    def __len__(self) -> int:
        return len(self.nodes)

    def producers(self, resource_id: ResourceId) -> set[ResourceId]:
        """Direct dependencies of a node."""
        return set(self._producers.get(resource_id, ()))

    def consumers(self, resource_id: ResourceId) -> set[ResourceId]:
        """Nodes that read from this node directly."""
        return set(self._consumers.get(resource_id, ()))

    def ancestors(self, resource_id: ResourceId) -> set[ResourceId]:
        return self._reachable(resource_id, self._producers)

    def descendants(self, resource_id: ResourceId) -> set[ResourceId]:
        return self._reachable(resource_id, self._consumers)

    @staticmethod
    def _reachable(
        start: ResourceId, adjacency: dict[ResourceId, set[ResourceId]]
    ) -> set[ResourceId]:
        seen: set[ResourceId] = set()
        stack = list(adjacency.get(start, ()))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(adjacency.get(current, ()))
        return seen

    def topological_order(self) -> list[ResourceNode]:
        """Producers before consumers; declaration order among independent nodes."""
        order: list[ResourceNode] = []
        visited: set[ResourceId] = set()

        def visit(rid: ResourceId) -> None:
            if rid in visited:
                return
            visited.add(rid)
            for producer in sorted(self._producers[rid], key=self._position):
                visit(producer)
            order.append(self.nodes[rid])

        for rid in self.nodes:
            visit(rid)
        return order

    def _position(self, rid: ResourceId) -> int:
        return list(self.nodes).index(rid)


def _find_cycle(
    nodes: Iterable[ResourceId], producers: dict[ResourceId, list[ResourceId]]
) -> list[ResourceId] | None:
    """Depth-first search with a recursion stack; returns the first cycle found."""
    visited: set[ResourceId] = set()
    on_stack: list[ResourceId] = []
    on_stack_set: set[ResourceId] = set()

    def visit(rid: ResourceId) -> list[ResourceId] | None:
        visited.add(rid)
        on_stack.append(rid)
        on_stack_set.add(rid)
        for nxt in producers.get(rid, []):
            if nxt in on_stack_set:
                start = on_stack.index(nxt)
                return on_stack[start:] + [nxt]
            if nxt not in visited:
                found = visit(nxt)
                if found:
                    return found
        on_stack.pop()
        on_stack_set.discard(rid)
        return None

    for rid in nodes:
        if rid not in visited:
            found = visit(rid)
            if found:
                return found
    return None


def build_graph(declarations: Iterable[ResourceDeclaration]) -> ResourceGraph:
    """
    Build the resource graph from declarations.

    Args:
        declarations: Resource declarations in manifest order

    Returns:
        ResourceGraph with one node per declaration

    Raises:
        DuplicateIdentifierError: If two declarations share a (type, name)
        UnknownReferenceError: If a reference or depends_on names no declaration
        CycleError: If the dependencies form a cycle
    """
    nodes: dict[ResourceId, ResourceNode] = {}
    for declaration in declarations:
        if declaration.id in nodes:
            raise DuplicateIdentifierError(declaration.id)
        nodes[declaration.id] = ResourceNode(declaration=declaration)

    edges: list[Edge] = []
    seen: set[tuple[ResourceId, ResourceId, str]] = set()
    for node in nodes.values():
        found = [(ref.producer, ref.path_str) for ref in iter_references(node.config)]
        found += [(dep, "") for dep in node.declaration.depends_on]
        for producer, path in found:
            if producer not in nodes:
                raise UnknownReferenceError(node.id, producer)
            key = (producer, node.id, path)
            if key in seen:
                continue
            seen.add(key)
            edge = Edge(producer=producer, consumer=node.id, path=path)
            edges.append(edge)
            node.incoming.append(edge)

    # DFS follows consumer -> producer links, so the reported cycle reads
    # in "depends on" order
    producer_links: dict[ResourceId, list[ResourceId]] = {rid: [] for rid in nodes}
    for edge in edges:
        if edge.producer not in producer_links[edge.consumer]:
            producer_links[edge.consumer].append(edge.producer)
    cycle = _find_cycle(nodes, producer_links)
    if cycle:
        raise CycleError(cycle)

    return ResourceGraph(nodes, edges)
