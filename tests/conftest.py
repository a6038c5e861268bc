# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the Stitch test suite.

This module provides foundational fixtures used across all test modules:
- Test databases and engine configuration with instant travel
- Canvas graph builders and sample graphs
- Fake worker implementations

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from stitch.core.config import EngineConfig
from stitch.core.edge_walker import EdgeWalker
from stitch.core.graph_schema import AuthoredEdge, AuthoredGraph, AuthoredNode, EdgeKind
from stitch.core.models import AtNode, Entity
from stitch.core.state import Database
from stitch.core.workers import Worker, WorkerRegistry, WorkerRequest, WorkerResult


# =============================================================================
# Graph Builders
# =============================================================================


def make_node(node_id: str, kind: str = "item", **kwargs: Any) -> AuthoredNode:
    return AuthoredNode(id=node_id, kind=kind, **kwargs)


def make_edge(source: str, target: str, edge_id: str | None = None, **kwargs: Any) -> AuthoredEdge:
    return AuthoredEdge(id=edge_id or f"{source}-{target}", source=source, target=target, **kwargs)


def system_edge(source: str, target: str, action: str, **kwargs: Any) -> AuthoredEdge:
    return make_edge(source, target, kind=EdgeKind.SYSTEM, system_action=action, **kwargs)


# =============================================================================
# Database and Engine Fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create a fresh database in a temporary directory."""
    return Database(tmp_path / "state.db")


@pytest.fixture
def fast_config(tmp_path: Path) -> EngineConfig:
    """Engine config with instant entity travel."""
    return EngineConfig(db_path=tmp_path / "state.db", travel_duration=0.0)


@pytest.fixture
def worker_registry() -> WorkerRegistry:
    return WorkerRegistry()


@pytest.fixture
def walker(test_db: Database, fast_config: EngineConfig, worker_registry: WorkerRegistry) -> EdgeWalker:
    """Edge walker with no bound workers (every worker node waits for its callback)."""
    return EdgeWalker(test_db, workers=worker_registry, config=fast_config)


@pytest.fixture
def make_entity(test_db: Database):
    """Factory that persists an entity resting at a node."""

    def _make(
        node_id: str,
        entity_id: str = "ent-1",
        canvas_id: str = "flow-1",
        email: str | None = "ada@example.com",
        **kwargs: Any,
    ) -> Entity:
        entity = Entity(
            id=entity_id,
            canvas_id=canvas_id,
            name=kwargs.pop("name", "Ada Lovelace"),
            email=email,
            position=AtNode(node_id=node_id),
            **kwargs,
        )
        test_db.create_entity(entity)
        return entity

    return _make


# =============================================================================
# Sample Graphs
# =============================================================================


@pytest.fixture
def pipeline_graph() -> AuthoredGraph:
    """Input -> claude worker -> Output with typed mappings."""
    return AuthoredGraph(
        nodes=[
            make_node("input", outputs={"prompt": {"type": "string"}}),
            make_node(
                "script",
                kind="worker",
                worker_type="claude",
                inputs={"prompt": {"type": "string", "required": True}},
                outputs={"scenes": {"type": "array"}},
                position={"x": 300, "y": 0},
                label="Write script",
                style={"color": "blue"},
            ),
            make_node("output", inputs={"scenes": {"type": "array"}}),
        ],
        edges=[
            make_edge("input", "script", mapping={"prompt": "prompt"}),
            make_edge("script", "output", mapping={"scenes": "scenes"}),
        ],
    )


@pytest.fixture
def journey_graph() -> AuthoredGraph:
    """A -> B journey edge and A -> C crm_sync system edge."""
    return AuthoredGraph(
        nodes=[make_node("A"), make_node("B"), make_node("C")],
        edges=[
            make_edge("A", "B", edge_id="e-journey"),
            system_edge("A", "C", "crm_sync", edge_id="e-crm"),
        ],
    )


# =============================================================================
# Fake Workers
# =============================================================================


class StaticWorker(Worker):
    """Completes immediately with a fixed output and records its requests."""

    def __init__(self, output: Any = None):
        self.output = output
        self.requests: list[WorkerRequest] = []

    async def execute(self, request: WorkerRequest) -> WorkerResult | None:
        self.requests.append(request)
        return WorkerResult(status="completed", output=self.output)


class FailingWorker(Worker):
    """Raises from execute()."""

    async def execute(self, request: WorkerRequest) -> WorkerResult | None:
        raise RuntimeError("upstream API returned 500")


class ReportingFailureWorker(Worker):
    """Returns a failed result instead of raising."""

    async def execute(self, request: WorkerRequest) -> WorkerResult | None:
        return WorkerResult(status="failed", error="quota exceeded")


class AsyncJobWorker(Worker):
    """Submits a job and reports back later through the completion callback."""

    def __init__(self) -> None:
        self.submitted: list[str] = []

    async def execute(self, request: WorkerRequest) -> WorkerResult | None:
        self.submitted.append(request.node_id)
        return None


class EchoWorker(Worker):
    """Completes with its own input and records its requests."""

    def __init__(self) -> None:
        self.requests: list[WorkerRequest] = []

    async def execute(self, request: WorkerRequest) -> WorkerResult | None:
        self.requests.append(request)
        return WorkerResult(status="completed", output=dict(request.input))


class FlakyWorker(Worker):
    """Fails the first time it runs, then completes."""

    def __init__(self, output: Any = None):
        self.output = output
        self.requests: list[WorkerRequest] = []

    async def execute(self, request: WorkerRequest) -> WorkerResult | None:
        self.requests.append(request)
        if len(self.requests) == 1:
            raise RuntimeError("connection reset")
        return WorkerResult(status="completed", output=self.output)
