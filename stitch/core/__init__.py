"""Core modules: compiler, version store, edge walker and persistence."""

from stitch.core.compiler import GraphCompilationError, compile_graph, validate_graph
from stitch.core.edge_walker import EdgeWalker, RunResult
from stitch.core.graph_schema import AuthoredGraph, ExecutionArtifact
from stitch.core.state import Database
from stitch.core.versions import VersionStore

__all__ = [
    "AuthoredGraph",
    "Database",
    "EdgeWalker",
    "ExecutionArtifact",
    "GraphCompilationError",
    "RunResult",
    "VersionStore",
    "compile_graph",
    "validate_graph",
]
