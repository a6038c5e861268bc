"""Tests for system-edge action dispatch."""

from __future__ import annotations

import asyncio

import pytest

from stitch.core.graph_schema import CompactEdge, EdgeKind
from stitch.core.models import AtNode, Entity
from stitch.core.system_edges import (
    SystemActionRegistry,
    SystemEdgeContext,
    UnknownSystemActionError,
    fire_system_edge,
    fire_system_edges,
)


def _ctx(action: str | None, edge_id: str = "s1", entity: Entity | None = None, **config):
    edge = CompactEdge(
        id=edge_id,
        source="signup",
        target="crm",
        kind=EdgeKind.SYSTEM,
        system_action=action,
        config=config,
    )
    return SystemEdgeContext(edge=edge, run_id="run-1", flow_id="flow-1", entity=entity)


@pytest.fixture
def registry() -> SystemActionRegistry:
    return SystemActionRegistry.with_builtin_actions()


@pytest.fixture
def ada() -> Entity:
    return Entity(
        id="ent-1",
        canvas_id="flow-1",
        name="Ada",
        email="ada@example.com",
        metadata={"plan": "pro"},
        position=AtNode(node_id="signup"),
    )


class TestRegistry:
    def test_builtin_actions(self, registry):
        assert registry.actions() == ["analytics_update", "crm_sync", "slack_notify", "stripe_sync"]

    def test_unknown_action(self, registry):
        with pytest.raises(UnknownSystemActionError, match="crm_sync"):
            registry.get("fax_send")

    def test_register_custom_action(self, registry):
        async def webhook_out(ctx):
            return {"posted": ctx.edge.target}

        registry.register("webhook_out", webhook_out)
        outcome = asyncio.run(fire_system_edge(registry, _ctx("webhook_out")))

        assert outcome.success
        assert outcome.detail == {"posted": "crm"}


class TestBuiltinActions:
    def test_crm_sync(self, registry, ada):
        outcome = asyncio.run(fire_system_edge(registry, _ctx("crm_sync", entity=ada)))

        assert outcome.success
        assert outcome.kind == EdgeKind.SYSTEM
        assert outcome.action == "crm_sync"
        assert outcome.detail["synced"] is True
        assert outcome.detail["email"] == "ada@example.com"
        assert not outcome.moved_entity

    def test_slack_notify_uses_channel(self, registry, ada):
        outcome = asyncio.run(
            fire_system_edge(registry, _ctx("slack_notify", entity=ada, channel="#sales"))
        )
        assert outcome.detail == {"channel": "#sales", "message": "Ada reached crm"}

    def test_stripe_sync_plan_from_entity(self, registry, ada):
        outcome = asyncio.run(fire_system_edge(registry, _ctx("stripe_sync", entity=ada)))
        assert outcome.detail == {"plan": "pro", "mrr": 99}

    def test_stripe_sync_edge_plan_wins(self, registry, ada):
        outcome = asyncio.run(
            fire_system_edge(registry, _ctx("stripe_sync", entity=ada, plan="enterprise"))
        )
        assert outcome.detail["mrr"] == 299

    def test_actions_without_entity(self, registry):
        outcome = asyncio.run(fire_system_edge(registry, _ctx("analytics_update")))
        assert outcome.detail == {"event": "node_completion", "source_node": "signup"}


class TestFireSystemEdges:
    def test_failures_are_isolated(self, registry, ada):
        contexts = [
            _ctx("crm_sync", "s1", ada),
            _ctx("stripe_sync", "s2", ada, plan="platinum"),
            _ctx("fax_send", "s3", ada),
            _ctx(None, "s4", ada),
            _ctx("analytics_update", "s5", ada),
        ]

        outcomes = asyncio.run(fire_system_edges(registry, contexts))

        assert [o.edge_id for o in outcomes] == ["s1", "s2", "s3", "s4", "s5"]
        assert [o.success for o in outcomes] == [True, False, False, False, True]
        assert "platinum" in outcomes[1].error
        assert "fax_send" in outcomes[2].error
        assert "no action" in outcomes[3].error

    def test_edges_run_concurrently(self, registry):
        started = []

        async def scenario():
            gate = asyncio.Event()

            async def slow(ctx):
                started.append(ctx.edge.id)
                await gate.wait()
                return {}

            async def opener(ctx):
                started.append(ctx.edge.id)
                gate.set()
                return {}

            registry.register("slow", slow)
            registry.register("opener", opener)
            # slow blocks until opener runs, which only happens if both are in flight
            return await asyncio.wait_for(
                fire_system_edges(registry, [_ctx("slow", "a"), _ctx("opener", "b")]),
                timeout=2,
            )

        outcomes = asyncio.run(scenario())
        assert all(o.success for o in outcomes)
        assert sorted(started) == ["a", "b"]

    def test_no_edges(self, registry):
        assert asyncio.run(fire_system_edges(registry, [])) == []
