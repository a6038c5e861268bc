"""Webhook ingestion: turn an external event into an entity placed on the canvas.

Entities are found by their natural key (canvas id + email) or created,
placed at the node the event maps to, and the engine is started at that
node with the entity attached.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from pydantic import BaseModel, Field

from stitch.core.edge_walker import EdgeWalker, EntityNotFoundError, RunResult
from stitch.core.graph_schema import EntityType
from stitch.core.models import AtNode, Entity, JourneyEvent, JourneyEventType, TriggerDescriptor

logger = logging.getLogger(__name__)


class WebhookEvent(BaseModel):
    """Normalized inbound event"""

    flow_id: str
    node_id: str  # Node the event places the entity at
    email: str | None = None
    name: str | None = None
    entity_type: EntityType = EntityType.LEAD
    source: str = "webhook"
    event_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


def _entered_event(entity_id: str, event: WebhookEvent) -> JourneyEvent:
    return JourneyEvent(
        entity_id=entity_id,
        event_type=JourneyEventType.ENTERED_NODE,
        node_id=event.node_id,
        metadata={"source": event.source, "event_id": event.event_id},
    )


class IngestResult(BaseModel):
    entity: Entity
    created: bool
    result: RunResult


class EntityIntake:
    """Find-or-create entities and trigger the engine where they land."""

    def __init__(self, walker: EdgeWalker):
        self.walker = walker
        self.db = walker.db

    def find_or_create(self, canvas_id: str, event: WebhookEvent) -> tuple[Entity, bool]:
        """Return (entity, created). Existing entities are re-placed at event.node_id."""
        existing = self.db.find_entity_by_email(canvas_id, event.email) if event.email else None

        if existing is None:
            entity = Entity(
                id=str(uuid.uuid4()),
                canvas_id=canvas_id,
                name=event.name or event.email or "Anonymous",
                email=event.email,
                entity_type=event.entity_type,
                metadata=event.payload,
                position=AtNode(node_id=event.node_id),
            )
            self.db.create_entity(entity, _entered_event(entity.id, event))
            logger.info(f"Created entity {entity.id} at {event.node_id} on canvas {canvas_id}")
            return entity, True

        if existing.position != AtNode(node_id=event.node_id):
            placed = self.db.update_entity_position(
                existing.id,
                existing.position,
                AtNode(node_id=event.node_id),
                _entered_event(existing.id, event),
            )
            if not placed:
                logger.warning(f"Entity {existing.id} moved while being re-placed")
        entity = self.db.get_entity(existing.id)
        if entity is None:
            raise EntityNotFoundError(f"Entity {existing.id} disappeared while being re-placed")
        logger.info(f"Matched existing entity {entity.id} for {event.email}")
        return entity, False

    async def ingest(self, canvas_id: str, event: WebhookEvent) -> IngestResult:
        entity, created = await asyncio.to_thread(self.find_or_create, canvas_id, event)
        result = await self.walker.start_run(
            event.flow_id,
            entity_id=entity.id,
            start_node=event.node_id,
            trigger=TriggerDescriptor(
                type="webhook",
                source=event.source,
                event_id=event.event_id,
                payload=event.payload,
            ),
            input_data=event.payload,
        )
        return IngestResult(entity=entity, created=created, result=result)
