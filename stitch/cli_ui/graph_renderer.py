"""Terminal rendering of canvases and runs using Rich."""

from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from stitch.core.graph_schema import AuthoredEdge, AuthoredGraph, AuthoredNode, EdgeKind, NodeKind
from stitch.core.models import Entity, FlowVersionMetadata, JourneyEvent, NodeRunStatus, Run


class TerminalGraphRenderer:
    """
    Renders canvas graphs in the terminal.

    render_levels() lists topological generations. render_as_tree() walks
    from every entry node and labels system edges with their action.

    All user-controlled strings are escaped to prevent Rich markup injection.
    """

    NODE_STYLES = {
        NodeKind.WORKER: ("[W]", "cyan"),
        NodeKind.UX: ("[U]", "red"),
        NodeKind.SPLITTER: ("[<]", "green"),
        NodeKind.COLLECTOR: ("[>]", "blue"),
        NodeKind.SECTION: ("[S]", "white"),
        NodeKind.ITEM: ("[i]", "white"),
    }

    # String keys, DB rows carry plain strings
    STATUS_COLORS = {
        "pending": "dim",
        "running": "blue bold",
        "waiting_for_user": "yellow",
        "completed": "green",
        "failed": "red bold",
    }

    STATUS_INDICATORS = {
        "completed": " ✓",
        "failed": " ✗",
        "running": " ⟳",
        "waiting_for_user": " …",
    }

    @staticmethod
    def _normalize_status(status: NodeRunStatus | str | None) -> str:
        if isinstance(status, NodeRunStatus):
            return status.value
        return str(status) if status else "pending"

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def _node_text(self, node: AuthoredNode, statuses: dict[str, Any] | None) -> str:
        symbol, color = self.NODE_STYLES.get(node.kind, ("[ ]", "white"))
        label = escape(node.label or node.id)
        if node.worker_type:
            label += f" [dim]({escape(node.worker_type)})[/dim]"

        status = self._normalize_status(statuses.get(node.id)) if statuses else None
        if status and status != "pending":
            status_color = self.STATUS_COLORS.get(status, "white")
            return f"[{status_color}]{symbol} {label}{self.STATUS_INDICATORS.get(status, '')}[/]"
        return f"[{color}]{symbol} {label}[/]"

    def render_levels(
        self, graph: AuthoredGraph, statuses: dict[str, Any] | None = None
    ) -> str:
        """One line per topological level. Falls back to a single line for cyclic graphs."""
        node_map = {n.id: n for n in graph.nodes}
        levels = graph.analyze_levels() or [[n.id for n in graph.nodes]]
        lines = []
        for index, level in enumerate(levels):
            lines.append("  |  ".join(self._node_text(node_map[nid], statuses) for nid in level))
            if index < len(levels) - 1:
                lines.append("  v")
        return "\n".join(lines)

    def render_as_tree(
        self,
        graph: AuthoredGraph,
        title: str = "canvas",
        statuses: dict[str, Any] | None = None,
        max_depth: int = 50,
    ) -> Tree:
        tree = Tree(f"[bold]{escape(title)}[/]")
        node_map = {n.id: n for n in graph.nodes}
        edge_map: dict[str, list[AuthoredEdge]] = {n.id: [] for n in graph.nodes}
        for edge in graph.edges:
            if edge.source in edge_map:
                edge_map[edge.source].append(edge)

        targets = {e.target for e in graph.edges}
        entries = [n for n in graph.nodes if n.id not in targets]
        if not entries:
            tree.add("[red]No entry nodes (every node has an incoming edge)[/]")
            return tree

        for entry in entries:
            self._add_node(tree, entry, statuses, node_map, edge_map, set(), 0, max_depth)
        return tree

    def _add_node(
        self,
        parent: Tree,
        node: AuthoredNode,
        statuses: dict[str, Any] | None,
        node_map: dict[str, AuthoredNode],
        edge_map: dict[str, list[AuthoredEdge]],
        visited: set,
        depth: int,
        max_depth: int,
    ):
        if depth >= max_depth:
            parent.add("[dim]... (max depth reached)[/]")
            return
        if node.id in visited:
            parent.add(f"[dim]↩ {escape(node.id)} (cycle)[/]")
            return
        visited.add(node.id)

        branch = parent.add(self._node_text(node, statuses))
        for edge in edge_map.get(node.id, []):
            child = node_map.get(edge.target)
            if child is None:
                branch.add(f"[red]→ {escape(edge.target)} (missing)[/]")
                continue
            if edge.kind == EdgeKind.SYSTEM:
                action = escape(edge.system_action or "no action")
                branch.add(f"[magenta]⚡ {action}[/] → {escape(child.label or child.id)}")
                continue
            self._add_node(
                branch, child, statuses, node_map, edge_map, visited.copy(), depth + 1, max_depth
            )


class StatusTableRenderer:
    """Renders run and version listings as Rich tables."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_run(self, run: Run) -> Table:
        table = Table(title=f"Run {escape(run.id[:8])}... [{escape(run.status.value)}]")
        table.add_column("Node", style="cyan")
        table.add_column("Status", justify="center")
        table.add_column("Output / Error", max_width=50)

        for node_id, state in run.node_states.items():
            status = state.status.value
            color = TerminalGraphRenderer.STATUS_COLORS.get(status, "white")
            detail = state.error if state.error else ("" if state.output is None else state.output)
            detail_str = escape(str(detail))
            if len(detail_str) > 50:
                detail_str = detail_str[:47] + "..."
            table.add_row(escape(node_id), f"[{color}]{status}[/]", detail_str)
        return table

    def render_versions(
        self, flow_id: str, versions: list[FlowVersionMetadata], current_id: str | None
    ) -> Table:
        table = Table(title=f"Versions of {escape(flow_id)}")
        table.add_column("", width=1)
        table.add_column("Version", style="cyan")
        table.add_column("Created")
        table.add_column("Message")
        for version in versions:
            marker = "[green]*[/]" if version.id == current_id else ""
            table.add_row(
                marker,
                escape(version.id),
                version.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                escape(version.commit_message or ""),
            )
        return table

    def render_journey(self, entity: Entity, events: list[JourneyEvent]) -> Table:
        table = Table(
            title=f"Journey of {escape(entity.name)} [{escape(entity.entity_type.value)}]"
        )
        table.add_column("Time")
        table.add_column("Event", style="cyan")
        table.add_column("Node")
        table.add_column("Edge")
        for event in events:
            table.add_row(
                event.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                escape(event.event_type.value),
                escape(event.node_id or ""),
                escape(event.edge_id or ""),
            )
        return table
