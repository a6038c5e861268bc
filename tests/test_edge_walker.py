"""Tests for the edge-walking execution engine.

Tests cover:
- Journey edges moving the entity while system edges fire side effects
- Failure isolation between sibling edges
- Worker failures stopping propagation
- Resumption through the completion callback (async workers, ux nodes)
- Splitter and collector nodes, fan-out into per-element instances
- Manual retry of failed nodes
- Entity reclassification on success and failure
- Version pinning and auto-versioning on run
"""

from __future__ import annotations

import asyncio

import pytest

from conftest import (
    AsyncJobWorker,
    EchoWorker,
    FailingWorker,
    FlakyWorker,
    ReportingFailureWorker,
    StaticWorker,
    make_edge,
    make_node,
    system_edge,
)
from stitch.core.compiler import GraphCompilationError
from stitch.core.edge_walker import (
    EntityNotFoundError,
    NodeNotFoundError,
    RunNotFoundError,
    VersionNotFoundError,
    resolve_path,
)
from stitch.core.graph_schema import AuthoredGraph, EdgeKind, EntityType
from stitch.core.models import AtNode, JourneyEventType, NodeRunStatus, RunStatus
from stitch.core.status import StatusTransitionError
from stitch.core.versions import FlowNotFoundError


def _chain_with_worker(**worker_kwargs) -> AuthoredGraph:
    """A (item) -> W (claude worker) -> D (item)."""
    return AuthoredGraph(
        nodes=[
            make_node("A"),
            make_node("W", kind="worker", worker_type="claude", **worker_kwargs),
            make_node("D", inputs={"scenes": {"type": "array"}}),
        ],
        edges=[make_edge("A", "W"), make_edge("W", "D", mapping={"scenes": "scenes"})],
    )


def _statuses(run) -> dict[str, NodeRunStatus]:
    return {node_id: state.status for node_id, state in run.node_states.items()}


class TestJourneyAndSystemEdges:
    def test_entity_moves_and_crm_fires(self, walker, test_db, journey_graph, make_entity):
        make_entity("A")

        result = asyncio.run(walker.start_run("flow-1", journey_graph, entity_id="ent-1"))

        outcomes = {o.edge_id: o for o in result.outcomes}
        assert outcomes["e-journey"].success
        assert outcomes["e-journey"].moved_entity
        assert outcomes["e-crm"].success
        assert outcomes["e-crm"].action == "crm_sync"
        assert outcomes["e-crm"].detail["synced"] is True

        assert test_db.get_entity("ent-1").position == AtNode(node_id="B")
        assert _statuses(result.run) == {
            "A": NodeRunStatus.COMPLETED,
            "B": NodeRunStatus.COMPLETED,
            "C": NodeRunStatus.PENDING,  # System targets are not fired as nodes
        }
        assert result.run.status == RunStatus.COMPLETED

    def test_journey_log(self, walker, test_db, journey_graph, make_entity):
        make_entity("A")
        asyncio.run(walker.start_run("flow-1", journey_graph, entity_id="ent-1"))

        events = test_db.get_journey_events("ent-1")
        assert [(e.event_type, e.node_id) for e in events] == [
            (JourneyEventType.STARTED_EDGE, "A"),
            (JourneyEventType.ENTERED_NODE, "B"),
        ]

    def test_run_without_entity(self, walker, journey_graph):
        result = asyncio.run(walker.start_run("flow-1", journey_graph))

        outcomes = {o.edge_id: o for o in result.outcomes}
        assert not outcomes["e-journey"].moved_entity
        assert outcomes["e-crm"].success
        assert result.run.status_of("B") == NodeRunStatus.COMPLETED

    def test_system_edge_failure_is_isolated(self, walker, test_db, make_entity):
        make_entity("A")
        graph = AuthoredGraph(
            nodes=[make_node(n) for n in ("A", "B", "C", "D")],
            edges=[
                make_edge("A", "B", edge_id="journey"),
                system_edge("A", "C", "stripe_sync", edge_id="billing", config={"plan": "platinum"}),
                system_edge("A", "D", "fax_send", edge_id="fax"),
            ],
        )

        result = asyncio.run(walker.start_run("flow-1", graph, entity_id="ent-1"))

        outcomes = {o.edge_id: o for o in result.outcomes}
        assert outcomes["journey"].success
        assert not outcomes["billing"].success
        assert "platinum" in outcomes["billing"].error
        assert not outcomes["fax"].success
        assert result.run.status_of("A") == NodeRunStatus.COMPLETED
        assert result.run.status_of("B") == NodeRunStatus.COMPLETED
        assert test_db.get_entity("ent-1").position == AtNode(node_id="B")

    def test_only_first_journey_edge_carries_entity(self, walker, test_db, make_entity):
        make_entity("A")
        graph = AuthoredGraph(
            nodes=[make_node(n) for n in ("A", "B", "C")],
            edges=[make_edge("A", "B", edge_id="first"), make_edge("A", "C", edge_id="second")],
        )

        result = asyncio.run(walker.start_run("flow-1", graph, entity_id="ent-1"))

        outcomes = {o.edge_id: o for o in result.outcomes}
        assert outcomes["first"].moved_entity
        assert not outcomes["second"].moved_entity
        assert result.run.status_of("C") == NodeRunStatus.COMPLETED
        assert test_db.get_entity("ent-1").position == AtNode(node_id="B")

    def test_entity_not_at_source_is_not_moved(self, walker, test_db, journey_graph, make_entity):
        make_entity("elsewhere")

        result = asyncio.run(walker.start_run("flow-1", journey_graph, entity_id="ent-1"))

        assert not any(o.moved_entity for o in result.outcomes)
        assert result.run.status_of("B") == NodeRunStatus.COMPLETED
        assert test_db.get_entity("ent-1").position == AtNode(node_id="elsewhere")

    @pytest.mark.parametrize("entity_at", ["A", "elsewhere"])
    def test_crm_handler_runs_exactly_once(self, walker, journey_graph, make_entity, entity_at):
        make_entity(entity_at)
        calls = []

        async def counting_crm_sync(ctx):
            calls.append((ctx.edge.id, ctx.entity.id if ctx.entity else None))
            return {"synced": True}

        walker.actions.register("crm_sync", counting_crm_sync)

        result = asyncio.run(walker.start_run("flow-1", journey_graph, entity_id="ent-1"))

        assert calls == [("e-crm", "ent-1")]
        outcomes = {o.edge_id: o for o in result.outcomes}
        assert outcomes["e-crm"].success
        assert outcomes["e-journey"].moved_entity == (entity_at == "A")

    def test_entity_travels_the_whole_chain(self, walker, test_db, make_entity):
        make_entity("A")
        graph = AuthoredGraph(
            nodes=[make_node(n) for n in ("A", "B", "C")],
            edges=[make_edge("A", "B"), make_edge("B", "C")],
        )

        asyncio.run(walker.start_run("flow-1", graph, entity_id="ent-1"))

        assert test_db.get_entity("ent-1").position == AtNode(node_id="C")

    def test_walk_edges_of_terminal_node(self, walker, journey_graph):
        result = asyncio.run(walker.start_run("flow-1", journey_graph))
        assert asyncio.run(walker.walk_edges(result.run.id, "B")) == []


class TestWorkers:
    def test_sync_worker_output_flows_downstream(self, walker, worker_registry):
        worker = StaticWorker(output={"scenes": [{"voice_text": "hi"}]})
        worker_registry.register("claude", worker)

        result = asyncio.run(
            walker.start_run("flow-1", _chain_with_worker(config={"temperature": 0.2}))
        )

        assert result.run.status == RunStatus.COMPLETED
        assert result.run.node_states["W"].output == {"scenes": [{"voice_text": "hi"}]}
        assert result.run.node_states["D"].output == {"scenes": [{"voice_text": "hi"}]}
        request = worker.requests[0]
        assert request.worker_type == "claude"
        # Definition defaults merged under node config
        assert request.config == {"max_tokens": 4096, "temperature": 0.2}

    def test_worker_exception_fails_node_and_stops(self, walker, worker_registry):
        worker_registry.register("claude", FailingWorker())

        result = asyncio.run(walker.start_run("flow-1", _chain_with_worker()))

        assert result.run.status == RunStatus.FAILED
        assert result.run.node_states["W"].status == NodeRunStatus.FAILED
        assert "500" in result.run.node_states["W"].error
        assert result.run.status_of("D") == NodeRunStatus.PENDING

    def test_worker_reported_failure(self, walker, worker_registry):
        worker_registry.register("claude", ReportingFailureWorker())

        result = asyncio.run(walker.start_run("flow-1", _chain_with_worker()))

        assert result.run.node_states["W"].error == "quota exceeded"
        assert result.run.status_of("D") == NodeRunStatus.PENDING

    def test_failed_branch_does_not_block_sibling(self, walker, worker_registry):
        worker_registry.register("claude", FailingWorker())
        graph = AuthoredGraph(
            nodes=[
                make_node("A"),
                make_node("W", kind="worker", worker_type="claude"),
                make_node("B"),
                make_node("C"),
            ],
            edges=[make_edge("A", "W"), make_edge("A", "B"), make_edge("B", "C")],
        )

        result = asyncio.run(walker.start_run("flow-1", graph))

        assert result.run.status_of("W") == NodeRunStatus.FAILED
        assert result.run.status_of("C") == NodeRunStatus.COMPLETED
        assert result.run.status == RunStatus.FAILED

    def test_unbound_worker_waits_for_callback(self, walker):
        result = asyncio.run(walker.start_run("flow-1", _chain_with_worker()))

        assert result.run.status_of("W") == NodeRunStatus.RUNNING
        assert result.run.status == RunStatus.RUNNING

        resumed = asyncio.run(
            walker.complete_node(
                result.run.id, "W", NodeRunStatus.COMPLETED, {"scenes": ["s1", "s2"]}
            )
        )

        assert resumed.run.status == RunStatus.COMPLETED
        assert resumed.run.node_states["D"].output == {"scenes": ["s1", "s2"]}
        assert [o.edge_id for o in resumed.outcomes] == ["W-D"]

    def test_async_worker_then_failure_callback(self, walker, worker_registry):
        worker = AsyncJobWorker()
        worker_registry.register("claude", worker)
        result = asyncio.run(walker.start_run("flow-1", _chain_with_worker()))
        assert worker.submitted == ["W"]

        failed = asyncio.run(
            walker.complete_node(result.run.id, "W", NodeRunStatus.FAILED, error="render timeout")
        )

        assert failed.outcomes == []
        assert failed.run.node_states["W"].error == "render timeout"
        assert failed.run.status == RunStatus.FAILED

    def test_duplicate_completion_is_rejected(self, walker):
        result = asyncio.run(walker.start_run("flow-1", _chain_with_worker()))
        asyncio.run(walker.complete_node(result.run.id, "W", NodeRunStatus.COMPLETED, {}))

        with pytest.raises(StatusTransitionError):
            asyncio.run(walker.complete_node(result.run.id, "W", NodeRunStatus.COMPLETED, {}))


class TestUxNodes:
    @pytest.fixture
    def approval_graph(self) -> AuthoredGraph:
        return AuthoredGraph(
            nodes=[make_node("A"), make_node("review", kind="ux"), make_node("D")],
            edges=[make_edge("A", "review"), make_edge("review", "D")],
        )

    def test_ux_node_suspends_run(self, walker, approval_graph):
        result = asyncio.run(walker.start_run("flow-1", approval_graph, input_data={"doc": "x"}))

        assert result.run.status_of("review") == NodeRunStatus.WAITING_FOR_USER
        assert result.run.status == RunStatus.WAITING
        assert result.run.status_of("D") == NodeRunStatus.PENDING

    def test_completion_resumes_walk(self, walker, approval_graph):
        result = asyncio.run(walker.start_run("flow-1", approval_graph))

        resumed = asyncio.run(
            walker.complete_node(result.run.id, "review", NodeRunStatus.COMPLETED, {"approved": True})
        )

        assert resumed.run.node_states["review"].output == {"approved": True}
        assert resumed.run.status_of("D") == NodeRunStatus.COMPLETED
        assert resumed.run.status == RunStatus.COMPLETED

    def test_waiting_node_cannot_fail(self, walker, approval_graph):
        result = asyncio.run(walker.start_run("flow-1", approval_graph))
        with pytest.raises(StatusTransitionError):
            asyncio.run(walker.complete_node(result.run.id, "review", NodeRunStatus.FAILED))

    def test_pending_node_cannot_complete(self, walker, approval_graph):
        result = asyncio.run(walker.start_run("flow-1", approval_graph))
        with pytest.raises(StatusTransitionError):
            asyncio.run(walker.complete_node(result.run.id, "D", NodeRunStatus.COMPLETED))

    def test_completion_status_must_be_final(self, walker, approval_graph):
        result = asyncio.run(walker.start_run("flow-1", approval_graph))
        with pytest.raises(ValueError):
            asyncio.run(walker.complete_node(result.run.id, "review", NodeRunStatus.RUNNING))


class TestSplitterAndCollector:
    def test_splitter_fans_out_items(self, walker):
        graph = AuthoredGraph(
            nodes=[make_node("split", kind="splitter", config={"array_path": "data.rows"})],
        )

        result = asyncio.run(
            walker.start_run("flow-1", graph, input_data={"data": {"rows": [1, 2, 3]}})
        )

        assert result.run.node_states["split"].output == {"items": [1, 2, 3], "count": 3}

    def test_splitter_without_array_fails(self, walker):
        graph = AuthoredGraph(nodes=[make_node("split", kind="splitter")])

        result = asyncio.run(walker.start_run("flow-1", graph, input_data={"items": "nope"}))

        assert result.run.status_of("split") == NodeRunStatus.FAILED
        assert "array" in result.run.node_states["split"].error

    def test_collector_waits_for_all_upstream(self, walker):
        graph = AuthoredGraph(
            nodes=[
                make_node("left", inputs={"value": {"default": 1}}),
                make_node("right", inputs={"value": {"default": 2}}),
                make_node("join", kind="collector"),
            ],
            edges=[make_edge("left", "join"), make_edge("right", "join")],
        )

        result = asyncio.run(walker.start_run("flow-1", graph))

        output = result.run.node_states["join"].output
        assert output["count"] == 2
        assert sorted(item["value"] for item in output["items"]) == [1, 2]
        assert result.run.status == RunStatus.COMPLETED

    def test_collector_stays_pending_when_a_branch_waits(self, walker):
        graph = AuthoredGraph(
            nodes=[
                make_node("left"),
                make_node("approve", kind="ux"),
                make_node("join", kind="collector"),
            ],
            edges=[make_edge("left", "join"), make_edge("approve", "join")],
        )

        result = asyncio.run(walker.start_run("flow-1", graph))
        assert result.run.status_of("join") == NodeRunStatus.PENDING

        resumed = asyncio.run(
            walker.complete_node(result.run.id, "approve", NodeRunStatus.COMPLETED, "ok")
        )
        assert resumed.run.status_of("join") == NodeRunStatus.COMPLETED

    def test_collector_fails_when_a_parent_fails(self, walker, worker_registry):
        worker_registry.register("claude", FailingWorker())
        graph = AuthoredGraph(
            nodes=[
                make_node("ok"),
                make_node("bad", kind="worker", worker_type="claude"),
                make_node("join", kind="collector"),
            ],
            edges=[make_edge("ok", "join"), make_edge("bad", "join")],
        )

        result = asyncio.run(walker.start_run("flow-1", graph))

        assert result.run.status_of("ok") == NodeRunStatus.COMPLETED
        assert result.run.status_of("bad") == NodeRunStatus.FAILED
        assert result.run.status_of("join") == NodeRunStatus.FAILED
        assert "bad" in result.run.node_states["join"].error
        assert result.run.status == RunStatus.FAILED

    def test_collector_fails_while_a_sibling_still_waits(self, walker, worker_registry):
        worker_registry.register("claude", ReportingFailureWorker())
        graph = AuthoredGraph(
            nodes=[
                make_node("approve", kind="ux"),
                make_node("bad", kind="worker", worker_type="claude"),
                make_node("join", kind="collector"),
            ],
            edges=[make_edge("approve", "join"), make_edge("bad", "join")],
        )

        result = asyncio.run(walker.start_run("flow-1", graph))
        assert result.run.status_of("join") == NodeRunStatus.FAILED

        resumed = asyncio.run(
            walker.complete_node(result.run.id, "approve", NodeRunStatus.COMPLETED, "ok")
        )
        assert resumed.run.status_of("join") == NodeRunStatus.FAILED
        assert resumed.run.status == RunStatus.FAILED


class TestSplitterFanOut:
    @staticmethod
    def _split_graph(collect: bool = True, **worker_kwargs) -> AuthoredGraph:
        """split -> W (claude worker) [-> join collector]."""
        nodes = [
            make_node("split", kind="splitter"),
            make_node("W", kind="worker", worker_type="claude", **worker_kwargs),
        ]
        edges = [make_edge("split", "W")]
        if collect:
            nodes.append(make_node("join", kind="collector"))
            edges.append(make_edge("W", "join"))
        return AuthoredGraph(nodes=nodes, edges=edges)

    def test_worker_runs_once_per_element(self, walker, worker_registry):
        worker = StaticWorker(output={"done": True})
        worker_registry.register("claude", worker)

        result = asyncio.run(
            walker.start_run("flow-1", self._split_graph(), input_data={"items": [1, 2, 3]})
        )

        assert len(worker.requests) == 3
        assert sorted(r.node_id for r in worker.requests) == ["W_0", "W_1", "W_2"]
        assert sorted(r.input["item"] for r in worker.requests) == [1, 2, 3]
        assert result.run.node_states["split"].output == {"items": [1, 2, 3], "count": 3}
        for key in ("W_0", "W_1", "W_2"):
            assert result.run.status_of(key) == NodeRunStatus.COMPLETED
        assert result.run.status == RunStatus.COMPLETED

    def test_collector_gathers_instances_in_index_order(self, walker, worker_registry):
        worker_registry.register("claude", EchoWorker())

        result = asyncio.run(
            walker.start_run(
                "flow-1",
                self._split_graph(inputs={"lang": {"default": "en"}}),
                input_data={"items": [{"name": "a"}, {"name": "b"}, "c"]},
            )
        )

        assert result.run.node_states["join"].output == {
            "items": [
                {"lang": "en", "name": "a"},
                {"lang": "en", "name": "b"},
                {"lang": "en", "item": "c"},
            ],
            "count": 3,
        }

    def test_failed_instance_fails_collector(self, walker, worker_registry):
        worker_registry.register("claude", ReportingFailureWorker())

        result = asyncio.run(
            walker.start_run("flow-1", self._split_graph(), input_data={"items": [1, 2]})
        )

        assert result.run.status_of("W_0") == NodeRunStatus.FAILED
        assert result.run.status_of("W_1") == NodeRunStatus.FAILED
        assert result.run.status_of("join") == NodeRunStatus.FAILED
        assert result.run.status == RunStatus.FAILED

    def test_empty_array_runs_nothing(self, walker, worker_registry):
        worker = StaticWorker()
        worker_registry.register("claude", worker)

        result = asyncio.run(
            walker.start_run("flow-1", self._split_graph(), input_data={"items": []})
        )

        assert worker.requests == []
        assert result.run.node_states["W"].output == []
        assert result.run.node_states["join"].output == {"items": [], "count": 0}
        assert result.run.status == RunStatus.COMPLETED

    def test_instances_complete_through_callback(self, walker, worker_registry):
        worker = AsyncJobWorker()
        worker_registry.register("claude", worker)
        result = asyncio.run(
            walker.start_run("flow-1", self._split_graph(), input_data={"items": ["x", "y"]})
        )
        assert sorted(worker.submitted) == ["W_0", "W_1"]

        first = asyncio.run(
            walker.complete_node(result.run.id, "W_1", NodeRunStatus.COMPLETED, "out-y")
        )
        assert first.run.status_of("join") == NodeRunStatus.PENDING

        second = asyncio.run(
            walker.complete_node(result.run.id, "W_0", NodeRunStatus.COMPLETED, "out-x")
        )
        assert second.run.node_states["join"].output == {"items": ["out-x", "out-y"], "count": 2}
        assert second.run.status == RunStatus.COMPLETED

    def test_unknown_instance_is_rejected(self, walker, worker_registry):
        worker_registry.register("claude", AsyncJobWorker())
        result = asyncio.run(
            walker.start_run("flow-1", self._split_graph(), input_data={"items": ["x"]})
        )

        with pytest.raises(NodeNotFoundError):
            asyncio.run(walker.complete_node(result.run.id, "W_5", NodeRunStatus.COMPLETED))

    def test_entity_leaves_after_last_instance(self, walker, worker_registry, test_db, make_entity):
        worker_registry.register("claude", StaticWorker(output="done"))
        make_entity("split")
        graph = AuthoredGraph(
            nodes=[
                make_node("split", kind="splitter"),
                make_node("W", kind="worker", worker_type="claude"),
                make_node("D"),
            ],
            edges=[make_edge("split", "W"), make_edge("W", "D")],
        )

        result = asyncio.run(
            walker.start_run("flow-1", graph, entity_id="ent-1", input_data={"items": [1, 2]})
        )

        assert result.run.status_of("D") == NodeRunStatus.COMPLETED
        assert result.run.node_states["D"].output == {"W": ["done", "done"]}
        assert test_db.get_entity("ent-1").position == AtNode(node_id="D")


class TestRetry:
    def test_retry_failed_worker_resumes_walk(self, walker, worker_registry):
        worker = FlakyWorker(output={"scenes": ["s1"]})
        worker_registry.register("claude", worker)
        result = asyncio.run(walker.start_run("flow-1", _chain_with_worker()))
        assert result.run.status_of("W") == NodeRunStatus.FAILED

        retried = asyncio.run(walker.retry_node(result.run.id, "W"))

        assert len(worker.requests) == 2
        assert retried.run.status_of("W") == NodeRunStatus.COMPLETED
        assert retried.run.node_states["W"].error is None
        assert retried.run.node_states["D"].output == {"scenes": ["s1"]}
        assert retried.run.status == RunStatus.COMPLETED
        assert [o.edge_id for o in retried.outcomes] == ["W-D"]

    def test_retry_start_node_reuses_its_input(self, walker, worker_registry):
        worker = FlakyWorker()
        worker_registry.register("claude", worker)
        graph = AuthoredGraph(nodes=[make_node("W", kind="worker", worker_type="claude")])
        result = asyncio.run(walker.start_run("flow-1", graph, input_data={"topic": "cats"}))

        asyncio.run(walker.retry_node(result.run.id, "W"))

        assert [r.input for r in worker.requests] == [{"topic": "cats"}, {"topic": "cats"}]

    def test_retry_requires_failed_node(self, walker):
        result = asyncio.run(walker.start_run("flow-1", _chain_with_worker()))
        assert result.run.status_of("W") == NodeRunStatus.RUNNING

        with pytest.raises(StatusTransitionError):
            asyncio.run(walker.retry_node(result.run.id, "W"))
        with pytest.raises(StatusTransitionError):
            asyncio.run(walker.retry_node(result.run.id, "A"))

    def test_retry_unknown_node_or_run(self, walker, journey_graph):
        result = asyncio.run(walker.start_run("flow-1", journey_graph))

        with pytest.raises(NodeNotFoundError):
            asyncio.run(walker.retry_node(result.run.id, "ghost"))
        with pytest.raises(RunNotFoundError):
            asyncio.run(walker.retry_node("no-such-run", "A"))

    def test_retried_node_waits_for_failed_upstream(self, walker, worker_registry):
        worker_registry.register("claude", FailingWorker())
        graph = AuthoredGraph(
            nodes=[
                make_node("bad", kind="worker", worker_type="claude"),
                make_node("join", kind="collector"),
            ],
            edges=[make_edge("bad", "join")],
        )
        result = asyncio.run(walker.start_run("flow-1", graph))
        assert result.run.status_of("join") == NodeRunStatus.FAILED

        retried = asyncio.run(walker.retry_node(result.run.id, "join"))

        assert retried.run.status_of("join") == NodeRunStatus.PENDING
        assert retried.run.node_states["join"].error is None
        assert retried.outcomes == []

    def test_retry_split_instance_then_collector(self, walker, worker_registry):
        worker_registry.register("claude", FlakyWorker(output="ok"))
        result = asyncio.run(
            walker.start_run("flow-1", TestSplitterFanOut._split_graph(), input_data={"items": [7]})
        )
        assert result.run.status_of("W_0") == NodeRunStatus.FAILED
        assert result.run.status_of("join") == NodeRunStatus.FAILED

        instance = asyncio.run(walker.retry_node(result.run.id, "W_0"))
        assert instance.run.status_of("W_0") == NodeRunStatus.COMPLETED
        assert instance.run.status_of("join") == NodeRunStatus.FAILED

        collector = asyncio.run(walker.retry_node(result.run.id, "join"))
        assert collector.run.node_states["join"].output == {"items": ["ok"], "count": 1}
        assert collector.run.status == RunStatus.COMPLETED


class TestEntityMovement:
    def test_success_converts_entity(self, walker, worker_registry, test_db, make_entity):
        worker_registry.register("claude", StaticWorker(output={"scenes": []}))
        make_entity("A")
        graph = _chain_with_worker(
            entity_movement={"on_success": {"set_entity_type": "customer"}}
        )

        asyncio.run(walker.start_run("flow-1", graph, entity_id="ent-1"))

        entity = test_db.get_entity("ent-1")
        assert entity.entity_type == EntityType.CUSTOMER
        assert entity.position == AtNode(node_id="D")
        converted = [
            e for e in test_db.get_journey_events("ent-1")
            if e.event_type == JourneyEventType.CONVERTED
        ]
        assert len(converted) == 1
        assert converted[0].node_id == "W"

    def test_failure_churns_entity(self, walker, worker_registry, test_db, make_entity):
        worker_registry.register("claude", FailingWorker())
        make_entity("A")
        graph = _chain_with_worker(
            entity_movement={
                "on_success": {"set_entity_type": "customer"},
                "on_failure": {"set_entity_type": "churned"},
            }
        )

        asyncio.run(walker.start_run("flow-1", graph, entity_id="ent-1"))

        entity = test_db.get_entity("ent-1")
        assert entity.entity_type == EntityType.CHURNED
        assert entity.position == AtNode(node_id="W")
        assert JourneyEventType.CHURNED in [
            e.event_type for e in test_db.get_journey_events("ent-1")
        ]

    def test_no_movement_without_entity(self, walker, worker_registry):
        worker_registry.register("claude", StaticWorker(output={}))
        graph = _chain_with_worker(entity_movement={"on_success": {"set_entity_type": "customer"}})
        result = asyncio.run(walker.start_run("flow-1", graph))
        assert result.run.status == RunStatus.COMPLETED


class TestRunLifecycle:
    def test_run_is_pinned_to_its_version(self, walker, journey_graph):
        first = asyncio.run(walker.start_run("flow-1", journey_graph))

        changed = journey_graph.model_copy(deep=True)
        changed.nodes.append(make_node("E"))
        changed.edges.append(make_edge("B", "E"))
        second = asyncio.run(walker.start_run("flow-1", changed))

        assert second.run.version_id != first.run.version_id
        old = walker.get_run_status(first.run.id)
        assert old.version_id == first.run.version_id
        assert "E" not in old.node_states
        assert second.run.status_of("E") == NodeRunStatus.COMPLETED

    def test_unchanged_graph_reuses_version(self, walker, journey_graph):
        first = asyncio.run(walker.start_run("flow-1", journey_graph))
        second = asyncio.run(walker.start_run("flow-1", journey_graph))
        assert first.run.version_id == second.run.version_id

    def test_run_current_version_without_graph(self, walker, journey_graph):
        version_id = walker.versions.create_version("flow-1", journey_graph)
        result = asyncio.run(walker.start_run("flow-1"))
        assert result.run.version_id == version_id

    def test_run_explicit_version(self, walker, journey_graph, pipeline_graph):
        old = walker.versions.create_version("flow-1", journey_graph)
        walker.versions.create_version("flow-1", pipeline_graph)

        result = asyncio.run(walker.start_run("flow-1", version_id=old))

        assert set(result.run.node_states) == {"A", "B", "C"}

    def test_invalid_graph_creates_no_run(self, walker, test_db):
        graph = AuthoredGraph(nodes=[make_node("w", kind="worker", worker_type="gpt")])
        with pytest.raises(GraphCompilationError):
            asyncio.run(walker.start_run("flow-1", graph))
        assert test_db.list_runs("flow-1") == []

    def test_unknown_flow(self, walker):
        with pytest.raises(FlowNotFoundError):
            asyncio.run(walker.start_run("nope"))

    def test_unknown_version(self, walker, journey_graph):
        walker.versions.create_version("flow-1", journey_graph)
        with pytest.raises(VersionNotFoundError):
            asyncio.run(walker.start_run("flow-1", version_id="missing"))

    def test_unknown_entity(self, walker, journey_graph):
        with pytest.raises(EntityNotFoundError):
            asyncio.run(walker.start_run("flow-1", journey_graph, entity_id="ghost"))

    def test_unknown_start_node(self, walker, journey_graph):
        with pytest.raises(NodeNotFoundError):
            asyncio.run(walker.start_run("flow-1", journey_graph, start_node="Z"))

    def test_start_node_skips_entry_nodes(self, walker, journey_graph):
        result = asyncio.run(walker.start_run("flow-1", journey_graph, start_node="B"))
        assert result.run.status_of("A") == NodeRunStatus.PENDING
        assert result.run.status_of("B") == NodeRunStatus.COMPLETED

    def test_unknown_run(self, walker):
        with pytest.raises(RunNotFoundError):
            asyncio.run(walker.complete_node("ghost", "A", NodeRunStatus.COMPLETED))
        with pytest.raises(RunNotFoundError):
            walker.get_run_status("ghost")

    def test_fire_node_is_idempotent(self, walker, journey_graph):
        result = asyncio.run(walker.start_run("flow-1", journey_graph))
        again = asyncio.run(walker.fire_node(result.run.id, "A"))
        assert again.outcomes == []
        assert again.run.status_of("A") == NodeRunStatus.COMPLETED

    def test_trigger_is_recorded(self, walker, journey_graph):
        result = asyncio.run(walker.start_run("flow-1", journey_graph))
        assert result.run.trigger.type == "manual"


class TestResolvePath:
    @pytest.mark.parametrize(
        "path,expected",
        [
            ("a", {"b": [10, {"c": 3}]}),
            ("a.b.0", 10),
            ("a.b.1.c", 3),
            ("a.b.5", None),
            ("a.x.y", None),
        ],
    )
    def test_paths(self, path, expected):
        assert resolve_path({"a": {"b": [10, {"c": 3}]}}, path) == expected


def test_system_outcome_kinds(walker, journey_graph):
    result = asyncio.run(walker.start_run("flow-1", journey_graph))
    kinds = {o.edge_id: o.kind for o in result.outcomes}
    assert kinds == {"e-journey": EdgeKind.JOURNEY, "e-crm": EdgeKind.SYSTEM}
