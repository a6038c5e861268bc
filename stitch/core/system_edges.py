"""System-edge side-effect dispatch.

A system edge names an action (crm_sync, analytics_update, ...) that runs
against an external integration when its source node completes. Every edge
runs concurrently and independently: a failing action becomes a failed
EdgeOutcome and never affects siblings, journey edges or the source node.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, ConfigDict

from stitch.core.graph_schema import CompactEdge, EdgeKind
from stitch.core.models import EdgeOutcome, Entity

logger = logging.getLogger(__name__)

# Monthly price per plan, used by stripe_sync when an edge names a plan
PLAN_PRICES = {"basic": 29, "pro": 99, "enterprise": 299}


class UnknownSystemActionError(Exception):
    """Edge names an action that has no registered handler."""

    pass


class SystemEdgeContext(BaseModel):
    """What a system action handler sees."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    edge: CompactEdge
    run_id: str
    flow_id: str
    entity: Entity | None = None
    source_output: Any = None


SystemActionHandler = Callable[[SystemEdgeContext], Awaitable[dict[str, Any] | None]]


def _entity_summary(entity: Entity | None) -> dict[str, Any]:
    if entity is None:
        return {}
    return {"entity": entity.name, "email": entity.email, "type": entity.entity_type.value}


async def crm_sync(ctx: SystemEdgeContext) -> dict[str, Any]:
    summary = _entity_summary(ctx.entity)
    logger.info(f"[crm_sync] {ctx.edge.source} -> {ctx.edge.target}: {summary}")
    return {"synced": ctx.entity is not None, **summary}


async def analytics_update(ctx: SystemEdgeContext) -> dict[str, Any]:
    summary = _entity_summary(ctx.entity)
    logger.info(f"[analytics_update] node_completion from {ctx.edge.source}: {summary}")
    return {"event": "node_completion", "source_node": ctx.edge.source}


async def slack_notify(ctx: SystemEdgeContext) -> dict[str, Any]:
    channel = ctx.edge.config.get("channel", "#general")
    name = ctx.entity.name if ctx.entity else "unknown entity"
    message = f"{name} reached {ctx.edge.target}"
    logger.info(f"[slack_notify] {channel}: {message}")
    return {"channel": channel, "message": message}


async def stripe_sync(ctx: SystemEdgeContext) -> dict[str, Any]:
    plan = ctx.edge.config.get("plan")
    if plan is None and ctx.entity is not None:
        plan = ctx.entity.metadata.get("plan")
    plan = plan or "basic"
    if plan not in PLAN_PRICES:
        raise ValueError(f"Unknown plan '{plan}'")
    logger.info(f"[stripe_sync] subscription {plan} (${PLAN_PRICES[plan]}/mo) for {_entity_summary(ctx.entity)}")
    return {"plan": plan, "mrr": PLAN_PRICES[plan]}


class SystemActionRegistry:
    """Maps action tags to async handlers."""

    def __init__(self, handlers: dict[str, SystemActionHandler] | None = None):
        self._handlers: dict[str, SystemActionHandler] = dict(handlers or {})

    @classmethod
    def with_builtin_actions(cls) -> SystemActionRegistry:
        return cls(
            {
                "crm_sync": crm_sync,
                "analytics_update": analytics_update,
                "slack_notify": slack_notify,
                "stripe_sync": stripe_sync,
            }
        )

    def register(self, action: str, handler: SystemActionHandler) -> None:
        self._handlers[action] = handler

    def get(self, action: str) -> SystemActionHandler:
        try:
            return self._handlers[action]
        except KeyError:
            raise UnknownSystemActionError(
                f"Unknown system action '{action}'. Registered: {', '.join(sorted(self._handlers))}"
            ) from None

    def actions(self) -> list[str]:
        return sorted(self._handlers)


async def fire_system_edge(registry: SystemActionRegistry, ctx: SystemEdgeContext) -> EdgeOutcome:
    """Run one system edge. Raises on handler failure; fire_system_edges() captures it."""
    if not ctx.edge.system_action:
        raise UnknownSystemActionError(f"System edge '{ctx.edge.id}' has no action")
    handler = registry.get(ctx.edge.system_action)
    detail = await handler(ctx)
    return EdgeOutcome(
        edge_id=ctx.edge.id,
        kind=EdgeKind.SYSTEM,
        source=ctx.edge.source,
        target=ctx.edge.target,
        success=True,
        action=ctx.edge.system_action,
        detail=detail or {},
    )


async def fire_system_edges(
    registry: SystemActionRegistry, contexts: list[SystemEdgeContext]
) -> list[EdgeOutcome]:
    """Fire every edge concurrently, returning one outcome per edge in input order."""
    results = await asyncio.gather(
        *[fire_system_edge(registry, ctx) for ctx in contexts],
        return_exceptions=True,
    )

    outcomes = []
    for ctx, result in zip(contexts, results, strict=True):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            logger.error(
                f"System edge {ctx.edge.id} ({ctx.edge.system_action}) failed: {result}"
            )
            outcomes.append(
                EdgeOutcome(
                    edge_id=ctx.edge.id,
                    kind=EdgeKind.SYSTEM,
                    source=ctx.edge.source,
                    target=ctx.edge.target,
                    success=False,
                    action=ctx.edge.system_action,
                    error=str(result),
                )
            )
        else:
            outcomes.append(result)
    return outcomes
