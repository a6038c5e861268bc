"""Longest-path layering layout for canvas nodes.

A node's level is one more than the deepest of its parents. Levels run along
the x axis, nodes inside a level are stacked along the y axis in authored
order. The functions here are pure: no node is mutated.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable

from stitch.core.graph_schema import AuthoredEdge, AuthoredGraph, AuthoredNode, Position

HORIZONTAL_SPACING = 300  # Between levels
VERTICAL_SPACING = 150  # Between nodes of one level


class LayoutCycleError(Exception):
    """Layering cannot finish because the graph is not acyclic."""

    pass


def compute_levels(node_ids: list[str], edges: Iterable[tuple[str, str]]) -> dict[str, int]:
    """Assign every node its longest-path level.

    The queue starts with nodes that have no incoming edges. A dequeued node
    whose parents are not all leveled yet goes to the back of the queue
    instead of getting a premature level.
    """
    known = set(node_ids)
    parents: dict[str, list[str]] = {nid: [] for nid in node_ids}
    children: dict[str, list[str]] = {nid: [] for nid in node_ids}
    for source, target in edges:
        if source in known and target in known:
            parents[target].append(source)
            children[source].append(target)

    levels: dict[str, int] = {}
    queue = deque(nid for nid in node_ids if not parents[nid])
    queued = set(queue)
    deferred_in_a_row = 0

    while queue:
        node_id = queue.popleft()

        if any(p not in levels for p in parents[node_id]):
            queue.append(node_id)
            deferred_in_a_row += 1
            # A full lap of deferrals means no parent can ever be leveled
            if deferred_in_a_row > len(queue):
                raise LayoutCycleError(f"Cannot layer nodes {sorted(queue)}: cycle detected")
            continue

        deferred_in_a_row = 0
        levels[node_id] = max((levels[p] + 1 for p in parents[node_id]), default=0)
        for child in children[node_id]:
            if child not in queued:
                queue.append(child)
                queued.add(child)

    unplaced = [nid for nid in node_ids if nid not in levels]
    if unplaced:
        raise LayoutCycleError(f"Nodes {unplaced} are only reachable through a cycle")
    return levels


def layout(
    nodes: list[AuthoredNode],
    edges: list[AuthoredEdge],
    *,
    horizontal_spacing: float = HORIZONTAL_SPACING,
    vertical_spacing: float = VERTICAL_SPACING,
) -> dict[str, Position]:
    """Compute non-overlapping positions keyed by node id."""
    node_ids = [n.id for n in nodes]
    levels = compute_levels(node_ids, ((e.source, e.target) for e in edges))

    slots: dict[int, int] = {}
    positions: dict[str, Position] = {}
    for node_id in node_ids:
        level = levels[node_id]
        index = slots.get(level, 0)
        slots[level] = index + 1
        positions[node_id] = Position(x=level * horizontal_spacing, y=index * vertical_spacing)
    return positions


def apply_layout(graph: AuthoredGraph, **spacing: float) -> AuthoredGraph:
    """Return a copy of graph with every node position filled in."""
    positions = layout(graph.nodes, graph.edges, **spacing)
    nodes = [n.model_copy(update={"position": positions[n.id]}) for n in graph.nodes]
    return graph.model_copy(update={"nodes": nodes})
