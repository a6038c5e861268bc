"""CLI entry point for Stitch.

Commands:
- stitch init: Initialize project for stitch
- stitch compile: Validate and compile a canvas file
- stitch layout: Auto-position the nodes of a canvas file
- stitch visualize: Render a canvas in the terminal
- stitch save: Save a canvas as a new flow version
- stitch versions: List the versions of a flow
- stitch run: Start a run of a flow
- stitch status: Show a run and its node states
- stitch complete: Report completion of an async worker or ux node
- stitch retry: Retry a failed node
- stitch journey: Show the journey log of an entity
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import pydantic
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel

from stitch.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer
from stitch.core.compiler import GraphCompilationError, compile_graph, worker_nodes
from stitch.core.config import CONFIG_DIR, CONFIG_FILE, ConfigError, EngineConfig, load_config
from stitch.core.edge_walker import (
    EdgeWalker,
    EntityNotFoundError,
    NodeNotFoundError,
    RunNotFoundError,
    RunResult,
    VersionNotFoundError,
)
from stitch.core.graph_schema import AuthoredGraph
from stitch.core.layout import LayoutCycleError, apply_layout
from stitch.core.models import NodeRunStatus, RunStatus, TriggerDescriptor
from stitch.core.state import Database
from stitch.core.status import StatusTransitionError
from stitch.core.versions import FlowNotFoundError, VersionStore

console = Console()

DEFAULT_CONFIG = """# Stitch configuration for this project

# SQLite database holding flows, versions, runs and entities
db_path: .stitch/state.db

# Entity travel along journey edges (seconds)
travel_duration: 2.0
travel_tick: 0.1

# Auto-layout spacing
layout_horizontal_spacing: 300
layout_vertical_spacing: 150

# Compare-and-set attempts when auto-versioning on run
version_cas_retries: 3
"""


def get_repo_path() -> Path:
    """Get the project path (current directory)."""
    return Path.cwd()


def _get_config() -> EngineConfig:
    try:
        return load_config()
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {escape(str(e))}")
        sys.exit(1)


def _get_walker(config: EngineConfig) -> EdgeWalker:
    db = Database(config.db_path)
    return EdgeWalker(db, config=config)


def _load_graph(graph_file: str) -> AuthoredGraph:
    """Load a canvas from YAML or JSON, exiting with a readable message on failure."""
    try:
        with open(graph_file) as f:
            graph_dict = yaml.safe_load(f)  # JSON is a subset of YAML
        if not isinstance(graph_dict, dict):
            console.print(
                f"[red]Error: Invalid content in '{escape(graph_file)}'. "
                f"Expected a mapping, got {type(graph_dict).__name__}.[/red]"
            )
            sys.exit(1)
        return AuthoredGraph(**graph_dict)
    except yaml.YAMLError as e:
        console.print(f"[red]Error parsing file '{escape(graph_file)}':[/red]")
        console.print(f"  {escape(str(e))}")
        sys.exit(1)
    except pydantic.ValidationError as e:
        console.print("[red]Error validating canvas schema:[/red]")
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  - {escape(loc)}: {escape(err['msg'])}")
        sys.exit(1)


def _parse_json_option(value: str | None, option: str) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint=option) from e


def _print_compilation_errors(error: GraphCompilationError) -> None:
    console.print(f"[red]Compilation failed with {len(error.errors)} error(s):[/red]")
    for err in error.errors:
        console.print(f"  - {escape(str(err))}")


def _print_run_result(result: RunResult) -> None:
    console.print(StatusTableRenderer(console).render_run(result.run))
    for outcome in result.outcomes:
        label = escape(outcome.action or outcome.kind.value)
        edge = f"{escape(outcome.source)} -> {escape(outcome.target)}"
        if outcome.success:
            moved = " [dim](entity moved)[/dim]" if outcome.moved_entity else ""
            console.print(f"  [green]✓[/] {label}: {edge}{moved}")
        else:
            console.print(f"  [red]✗[/] {label}: {edge} - {escape(outcome.error or '')}")


@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Stitch - canvas graph compiler and edge-walking execution engine."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


@main.command()
def init() -> None:
    """Initialize project for stitch."""
    stitch_dir = get_repo_path() / CONFIG_DIR

    if stitch_dir.exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return

    stitch_dir.mkdir(parents=True)
    (stitch_dir / CONFIG_FILE).write_text(DEFAULT_CONFIG)
    console.print(f"[green]Initialized {CONFIG_DIR}/ with {CONFIG_FILE}[/green]")


@main.command("compile")
@click.argument("graph_file", type=click.Path(exists=True))
def compile_cmd(graph_file: str) -> None:
    """Validate and compile a canvas file."""
    graph = _load_graph(graph_file)
    try:
        artifact = compile_graph(graph)
    except GraphCompilationError as e:
        _print_compilation_errors(e)
        sys.exit(1)

    console.print("[green]Compilation passed[/green]")
    console.print(f"  Nodes: {len(artifact.nodes)}")
    console.print(f"  Edges: {len(graph.edges)}")
    console.print(f"  Workers: {', '.join(worker_nodes(artifact)) or '-'}")
    console.print(f"  Entry: {', '.join(artifact.entry_nodes)}")
    console.print(f"  Terminal: {', '.join(artifact.terminal_nodes)}")


@main.command("layout")
@click.argument("graph_file", type=click.Path(exists=True))
@click.option("--output", "-o", type=click.Path(), help="Write the laid-out canvas here")
def layout_cmd(graph_file: str, output: str | None) -> None:
    """Auto-position the nodes of a canvas file."""
    config = _get_config()
    graph = _load_graph(graph_file)
    try:
        laid_out = apply_layout(
            graph,
            horizontal_spacing=config.layout_horizontal_spacing,
            vertical_spacing=config.layout_vertical_spacing,
        )
    except LayoutCycleError as e:
        console.print(f"[red]Layout failed:[/red] {escape(str(e))}")
        sys.exit(1)

    text = yaml.safe_dump(laid_out.model_dump(mode="json", exclude_none=True), sort_keys=False)
    if output:
        Path(output).write_text(text)
        console.print(f"[green]Wrote {len(laid_out.nodes)} positioned nodes to {escape(output)}[/]")
    else:
        click.echo(text)


@main.command()
@click.argument("graph_file", type=click.Path(exists=True))
@click.option("--tree", is_flag=True, help="Render as a tree from the entry nodes")
def visualize(graph_file: str, tree: bool) -> None:
    """Render a canvas in the terminal."""
    graph = _load_graph(graph_file)
    renderer = TerminalGraphRenderer(console)
    if tree:
        console.print(renderer.render_as_tree(graph, title=Path(graph_file).stem))
    else:
        console.print(Panel(renderer.render_levels(graph), title=escape(Path(graph_file).stem)))


@main.command()
@click.argument("flow_id")
@click.argument("graph_file", type=click.Path(exists=True))
@click.option("--message", "-m", help="Commit message for the version")
def save(flow_id: str, graph_file: str, message: str | None) -> None:
    """Save a canvas as a new version of FLOW_ID."""
    config = _get_config()
    graph = _load_graph(graph_file)
    store = VersionStore(Database(config.db_path), cas_retries=config.version_cas_retries)
    try:
        version_id = store.create_version(flow_id, graph, message)
    except GraphCompilationError as e:
        _print_compilation_errors(e)
        sys.exit(1)
    console.print(f"[green]Saved version {version_id}[/green]")


@main.command()
@click.argument("flow_id")
def versions(flow_id: str) -> None:
    """List the versions of FLOW_ID, newest first."""
    config = _get_config()
    store = VersionStore(Database(config.db_path))
    try:
        history = store.list_versions(flow_id)
    except FlowNotFoundError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)
    if not history:
        console.print("[yellow]No versions yet[/yellow]")
        return
    renderer = StatusTableRenderer(console)
    console.print(renderer.render_versions(flow_id, history, store.get_current_version_id(flow_id)))


@main.command()
@click.argument("flow_id")
@click.argument("graph_file", type=click.Path(exists=True), required=False)
@click.option("--version-id", help="Run a specific version instead of the current one")
@click.option("--entity", "entity_id", help="Entity that travels the journey edges")
@click.option("--input", "input_json", help="JSON object passed to the start nodes")
def run(
    flow_id: str,
    graph_file: str | None,
    version_id: str | None,
    entity_id: str | None,
    input_json: str | None,
) -> None:
    """Start a run of FLOW_ID.

    With GRAPH_FILE the canvas is auto-versioned first (an unchanged canvas
    reuses the current version). Without it the current version runs.
    """
    config = _get_config()
    graph = _load_graph(graph_file) if graph_file else None
    input_data = _parse_json_option(input_json, "--input")
    if input_data is not None and not isinstance(input_data, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--input")

    walker = _get_walker(config)
    try:
        result = asyncio.run(
            walker.start_run(
                flow_id,
                graph,
                version_id=version_id,
                entity_id=entity_id,
                trigger=TriggerDescriptor(type="cli", source=graph_file),
                input_data=input_data,
            )
        )
    except GraphCompilationError as e:
        _print_compilation_errors(e)
        sys.exit(1)
    except (
        FlowNotFoundError,
        VersionNotFoundError,
        EntityNotFoundError,
        NodeNotFoundError,
    ) as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)

    console.print(f"[blue]Run {result.run.id} (version {result.run.version_id})[/blue]")
    _print_run_result(result)
    if result.run.status == RunStatus.FAILED:
        sys.exit(1)


@main.command()
@click.argument("run_id")
def status(run_id: str) -> None:
    """Show a run and its node states."""
    config = _get_config()
    walker = _get_walker(config)
    try:
        run_state = walker.get_run_status(run_id)
    except RunNotFoundError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)

    console.print(
        Panel(
            f"[bold]Flow:[/] {escape(run_state.flow_id)}\n"
            f"[bold]Version:[/] {escape(run_state.version_id)}\n"
            f"[bold]Entity:[/] {escape(run_state.entity_id or '-')}\n"
            f"[bold]Trigger:[/] {run_state.trigger.type}",
            title=f"Run: {escape(run_state.id[:8])}...",
        )
    )
    console.print(StatusTableRenderer(console).render_run(run_state))


@main.command()
@click.argument("run_id")
@click.argument("node_id")
@click.option("--output", "output_json", help="JSON output of the node")
@click.option("--error", help="Mark the node failed with this error")
def complete(run_id: str, node_id: str, output_json: str | None, error: str | None) -> None:
    """Report completion of an async worker or ux node."""
    config = _get_config()
    output = _parse_json_option(output_json, "--output")
    walker = _get_walker(config)
    node_status = NodeRunStatus.FAILED if error else NodeRunStatus.COMPLETED
    try:
        result = asyncio.run(walker.complete_node(run_id, node_id, node_status, output, error))
    except (RunNotFoundError, NodeNotFoundError, StatusTransitionError) as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)
    _print_run_result(result)


@main.command()
@click.argument("run_id")
@click.argument("node_id")
def retry(run_id: str, node_id: str) -> None:
    """Retry a failed node of a run."""
    config = _get_config()
    walker = _get_walker(config)
    try:
        result = asyncio.run(walker.retry_node(run_id, node_id))
    except (RunNotFoundError, NodeNotFoundError, StatusTransitionError) as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)
    _print_run_result(result)


@main.command()
@click.argument("entity_id")
def journey(entity_id: str) -> None:
    """Show where an entity has been."""
    config = _get_config()
    db = Database(config.db_path)
    entity = db.get_entity(entity_id)
    if entity is None:
        console.print(f"[red]Entity not found: {escape(entity_id)}[/red]")
        sys.exit(1)
    events = db.get_journey_events(entity_id)
    console.print(StatusTableRenderer(console).render_journey(entity, events))


if __name__ == "__main__":
    main()
