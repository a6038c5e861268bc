"""Entity travel state machine.

An entity is either AtNode(node) or Traveling(edge, progress, destination).
Travel along a journey edge is modeled as real persisted state:

    AtNode(source) -> Traveling(edge, 0.0, dest) -> ... -> Traveling(edge, 1.0, dest) -> AtNode(dest)

Every step is a compare-and-set on the entity row, written in the same
transaction as its journey event, so no reader ever sees a node and an edge
set at once.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable

from stitch.core.models import (
    AtNode,
    EntityPosition,
    JourneyEvent,
    JourneyEventType,
    Traveling,
)
from stitch.core.state import Database

logger = logging.getLogger(__name__)

PositionObserver = Callable[[str, EntityPosition], None]


class EntityPositionConflict(Exception):
    """Entity was not where the transition expected it to be."""

    def __init__(self, entity_id: str, expected: EntityPosition):
        self.entity_id = entity_id
        self.expected = expected
        super().__init__(f"Entity {entity_id} is no longer at {expected!r}")


class EntityTravel:
    """Drives entities along journey edges and notifies position observers."""

    def __init__(self, db: Database, duration: float = 2.0, tick: float = 0.1):
        self.db = db
        self.duration = duration
        self.tick = tick
        self._observers: list[PositionObserver] = []

    def subscribe(self, observer: PositionObserver) -> Callable[[], None]:
        """Register observer(entity_id, position). Returns an unsubscribe function."""
        self._observers.append(observer)
        return lambda: self._observers.remove(observer)

    def _notify(self, entity_id: str, position: EntityPosition) -> None:
        for observer in list(self._observers):
            try:
                observer(entity_id, position)
            except Exception as e:
                logger.warning(f"Position observer failed for entity {entity_id}: {e}")

    async def _compare_and_set(
        self,
        entity_id: str,
        expected: EntityPosition,
        new: EntityPosition,
        event: JourneyEvent | None = None,
    ) -> None:
        applied = await asyncio.to_thread(
            self.db.update_entity_position, entity_id, expected, new, event
        )
        if not applied:
            raise EntityPositionConflict(entity_id, expected)
        self._notify(entity_id, new)

    async def start(self, entity_id: str, edge_id: str, source: str, destination: str) -> Traveling:
        """AtNode(source) -> Traveling(edge, 0, destination)."""
        traveling = Traveling(edge_id=edge_id, progress=0.0, destination_node_id=destination)
        event = JourneyEvent(
            entity_id=entity_id,
            event_type=JourneyEventType.STARTED_EDGE,
            node_id=source,
            edge_id=edge_id,
            progress=0.0,
            metadata={"destination_node_id": destination},
        )
        await self._compare_and_set(entity_id, AtNode(node_id=source), traveling, event)
        logger.debug(f"Entity {entity_id} left {source} on edge {edge_id}")
        return traveling

    async def advance(self, entity_id: str, current: Traveling, progress: float) -> Traveling:
        """Move progress forward. Progress never decreases."""
        if not 0.0 <= progress <= 1.0:
            raise ValueError(f"Progress must be within [0, 1], got {progress}")
        if progress < current.progress:
            raise ValueError(f"Progress cannot go backwards ({current.progress} -> {progress})")
        updated = current.model_copy(update={"progress": progress})
        await self._compare_and_set(entity_id, current, updated)
        return updated

    async def arrive(self, entity_id: str, current: Traveling) -> AtNode:
        """Traveling(edge, 1.0, dest) -> AtNode(dest), clearing the edge fields in one write."""
        if current.progress < 1.0:
            raise ValueError(f"Entity {entity_id} cannot arrive at progress {current.progress}")
        at_node = AtNode(node_id=current.destination_node_id)
        event = JourneyEvent(
            entity_id=entity_id,
            event_type=JourneyEventType.ENTERED_NODE,
            node_id=current.destination_node_id,
            edge_id=current.edge_id,
            metadata={"from_edge_id": current.edge_id},
        )
        await self._compare_and_set(entity_id, current, at_node, event)
        logger.debug(f"Entity {entity_id} arrived at {current.destination_node_id}")
        return at_node

    async def travel(self, entity_id: str, edge_id: str, source: str, destination: str) -> AtNode:
        """Run one complete traversal over the configured duration."""
        position = await self.start(entity_id, edge_id, source, destination)

        steps = max(1, math.ceil(self.duration / self.tick)) if self.duration > 0 else 1
        interval = self.duration / steps
        for step in range(1, steps + 1):
            if interval > 0:
                await asyncio.sleep(interval)
            position = await self.advance(entity_id, position, min(1.0, step / steps))

        return await self.arrive(entity_id, position)
