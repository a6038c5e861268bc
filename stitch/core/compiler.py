"""Graph compiler: authored canvas -> validated, indexed execution artifact.

Compilation never partially succeeds. validate_graph() runs every check and
returns the full error list; compile_graph() raises GraphCompilationError
carrying that list, or returns one consistent ExecutionArtifact.
"""

from __future__ import annotations

import logging

from stitch.core.graph_schema import (
    AuthoredGraph,
    AuthoredNode,
    CompactEdge,
    ExecutionArtifact,
    ExecutionNode,
    FieldType,
    GraphValidationError,
    NodeKind,
    ValidationErrorKind,
    edge_key,
)
from stitch.core.workers import available_worker_types, is_valid_worker_type

logger = logging.getLogger(__name__)

# DFS colors
_WHITE, _GRAY, _BLACK = 0, 1, 2

# Fields copied from an authored node into its execution node. Anything not
# listed here (position, style, label, width, height, parent_id) is UI-only.
_EXECUTION_FIELDS = (
    "id",
    "kind",
    "worker_type",
    "config",
    "inputs",
    "outputs",
    "entity_movement",
)


class GraphCompilationError(Exception):
    """Authored graph failed validation. Carries every error found."""

    def __init__(self, errors: list[GraphValidationError]):
        self.errors = list(errors)
        summary = "; ".join(str(e) for e in self.errors[:3])
        more = f" (+{len(self.errors) - 3} more)" if len(self.errors) > 3 else ""
        super().__init__(f"Graph compilation failed with {len(self.errors)} error(s): {summary}{more}")


def validate_graph(graph: AuthoredGraph) -> list[GraphValidationError]:
    """Run all compile-time checks and collect their errors."""
    errors: list[GraphValidationError] = []
    errors.extend(detect_cycles(graph))
    errors.extend(validate_required_inputs(graph))
    errors.extend(validate_worker_types(graph))
    errors.extend(validate_edge_mappings(graph))
    return errors


def compile_graph(graph: AuthoredGraph) -> ExecutionArtifact:
    """Validate and compile an authored graph.

    Raises:
        GraphCompilationError: if any validation check fails
    """
    errors = validate_graph(graph)
    if errors:
        logger.info(f"Compilation rejected graph with {len(errors)} error(s)")
        raise GraphCompilationError(errors)

    artifact = ExecutionArtifact(
        nodes={node.id: strip_node(node) for node in graph.nodes},
        adjacency=build_adjacency(graph),
        edge_data=build_edge_data(graph),
        outbound_edges=build_outbound_edges(graph),
        entry_nodes=find_entry_nodes(graph),
        terminal_nodes=find_terminal_nodes(graph),
    )
    logger.debug(
        f"Compiled graph: {len(artifact.nodes)} nodes, "
        f"entry={artifact.entry_nodes}, terminal={artifact.terminal_nodes}"
    )
    return artifact


# ========== Validation ==========


def detect_cycles(graph: AuthoredGraph) -> list[GraphValidationError]:
    """White/gray/black DFS over every node.

    Iterative so deep chains cannot hit the recursion limit. Any cycle is one
    global error whose message names the cycle path.
    """
    adjacency: dict[str, list[str]] = {node.id: [] for node in graph.nodes}
    for edge in graph.edges:
        if edge.source in adjacency and edge.target in adjacency:
            adjacency[edge.source].append(edge.target)

    color = {node_id: _WHITE for node_id in adjacency}

    for root in adjacency:
        if color[root] != _WHITE:
            continue

        path: list[str] = [root]
        stack = [iter(adjacency[root])]
        color[root] = _GRAY

        while stack:
            neighbor = next(stack[-1], None)
            if neighbor is None:
                stack.pop()
                color[path.pop()] = _BLACK
                continue

            if color[neighbor] == _GRAY:
                cycle = path[path.index(neighbor) :] + [neighbor]
                return [
                    GraphValidationError(
                        kind=ValidationErrorKind.CYCLE,
                        message=f"Graph contains a cycle: {' -> '.join(cycle)}",
                    )
                ]
            if color[neighbor] == _WHITE:
                color[neighbor] = _GRAY
                path.append(neighbor)
                stack.append(iter(adjacency[neighbor]))

    return []


def validate_required_inputs(graph: AuthoredGraph) -> list[GraphValidationError]:
    """Every required input needs an incoming mapping or a non-null default."""
    mapped_inputs: dict[str, set[str]] = {}
    for edge in graph.edges:
        if edge.mapping:
            mapped_inputs.setdefault(edge.target, set()).update(edge.mapping)

    errors = []
    for node in graph.nodes:
        connected = mapped_inputs.get(node.id, set())
        for name, spec in node.inputs.items():
            if not spec.required or name in connected or spec.default is not None:
                continue
            errors.append(
                GraphValidationError(
                    kind=ValidationErrorKind.MISSING_INPUT,
                    node=node.id,
                    field=name,
                    message=(
                        f"Required input '{name}' on node '{node.id}' has no incoming "
                        f"mapping or default value"
                    ),
                )
            )
    return errors


def validate_worker_types(graph: AuthoredGraph) -> list[GraphValidationError]:
    errors = []
    for node in graph.nodes:
        if not node.kind.requires_worker_type or is_valid_worker_type(node.worker_type):
            continue
        shown = f"'{node.worker_type}'" if node.worker_type else "(none)"
        errors.append(
            GraphValidationError(
                kind=ValidationErrorKind.INVALID_WORKER,
                node=node.id,
                message=(
                    f"Unknown worker type {shown} on node '{node.id}'. "
                    f"Valid types: {', '.join(available_worker_types())}"
                ),
            )
        )
    return errors


def validate_edge_mappings(graph: AuthoredGraph) -> list[GraphValidationError]:
    """Check edge endpoints, mapped input names and source/target type compatibility."""
    nodes = {node.id: node for node in graph.nodes}
    errors = []

    for edge in graph.edges:
        source = nodes.get(edge.source)
        target = nodes.get(edge.target)
        if source is None or target is None:
            missing = edge.source if source is None else edge.target
            errors.append(
                GraphValidationError(
                    kind=ValidationErrorKind.INVALID_MAPPING,
                    edge=edge.id,
                    message=f"Edge '{edge.id}' references non-existent node '{missing}'",
                )
            )
            continue

        for input_name, source_path in (edge.mapping or {}).items():
            error = _check_mapping(edge.id, source, target, input_name, source_path)
            if error:
                errors.append(error)

    return errors


def _check_mapping(
    edge_id: str,
    source: AuthoredNode,
    target: AuthoredNode,
    input_name: str,
    source_path: str,
) -> GraphValidationError | None:
    def invalid(message: str) -> GraphValidationError:
        return GraphValidationError(
            kind=ValidationErrorKind.INVALID_MAPPING,
            edge=edge_id,
            node=target.id,
            field=input_name,
            message=message,
        )

    target_input = target.inputs.get(input_name)
    if target_input is None:
        return invalid(
            f"Edge '{edge_id}' maps to non-existent input '{input_name}' on node '{target.id}'"
        )

    if not source_path or not source_path.strip():
        return invalid(f"Edge '{edge_id}' has an empty source path for input '{input_name}'")

    head, _, rest = source_path.strip().partition(".")
    source_output = source.outputs.get(head)
    if source_output is None:
        return None  # Undeclared outputs are resolved at runtime

    if rest:
        # Nested paths reach into a container, leaf type is unknown
        if source_output.type in (FieldType.OBJECT, FieldType.ARRAY, FieldType.ANY):
            return None
        return invalid(
            f"Edge '{edge_id}' path '{source_path}' descends into "
            f"'{head}' of type {source_output.type.value}"
        )

    if not types_compatible(source_output.type, target_input.type):
        return invalid(
            f"Edge '{edge_id}' maps {source.id}.{head} ({source_output.type.value}) "
            f"to {target.id}.{input_name} ({target_input.type.value})"
        )
    return None


def types_compatible(source: FieldType, target: FieldType) -> bool:
    if source == target or FieldType.ANY in (source, target):
        return True
    return source == FieldType.INTEGER and target == FieldType.NUMBER


# ========== Optimization ==========


def strip_node(node: AuthoredNode) -> ExecutionNode:
    """Drop every UI field. The id is carried through verbatim."""
    return ExecutionNode(**{name: getattr(node, name) for name in _EXECUTION_FIELDS})


def build_adjacency(graph: AuthoredGraph) -> dict[str, list[str]]:
    """Every node is a key; every edge contributes one target entry."""
    adjacency: dict[str, list[str]] = {node.id: [] for node in graph.nodes}
    for edge in graph.edges:
        adjacency[edge.source].append(edge.target)
    return adjacency


def build_edge_data(graph: AuthoredGraph) -> dict[str, dict[str, str]]:
    edge_data: dict[str, dict[str, str]] = {}
    for edge in graph.edges:
        if edge.mapping:
            # Parallel edges between the same pair share one mapping entry
            edge_data.setdefault(edge_key(edge.source, edge.target), {}).update(edge.mapping)
    return edge_data


def build_outbound_edges(graph: AuthoredGraph) -> dict[str, list[CompactEdge]]:
    outbound: dict[str, list[CompactEdge]] = {node.id: [] for node in graph.nodes}
    for edge in graph.edges:
        outbound[edge.source].append(
            CompactEdge(
                id=edge.id,
                source=edge.source,
                target=edge.target,
                kind=edge.kind,
                system_action=edge.system_action,
                config=edge.config,
            )
        )
    return outbound


def find_entry_nodes(graph: AuthoredGraph) -> list[str]:
    targets = {edge.target for edge in graph.edges}
    return [node.id for node in graph.nodes if node.id not in targets]


def find_terminal_nodes(graph: AuthoredGraph) -> list[str]:
    sources = {edge.source for edge in graph.edges}
    return [node.id for node in graph.nodes if node.id not in sources]


def worker_nodes(artifact: ExecutionArtifact) -> list[str]:
    return [nid for nid, node in artifact.nodes.items() if node.kind == NodeKind.WORKER]
