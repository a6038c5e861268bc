"""Edge-walking execution engine.

The engine is reactive: nothing loops in the background. Each entry point
(start_run, fire_node, complete_node) is invoked by an external trigger,
advances node states, and returns once the reachable work settles.

When a node completes, its outbound edges are split into journey and system
partitions that run concurrently:

- journey edges move the run's entity (through the travel state machine)
  and fire the target once all of its journey parents are completed;
- system edges invoke their side-effect action.

Every edge produces an EdgeOutcome. Failures on one edge are captured as
data and never cancel siblings. A failed node records its error and stops
propagation: its outbound edges are not walked, only collectors downstream
of it are failed.

Splitters fan out: every array element gets its own instance
("<node>_<index>") of each journey target, seeded into the run's node
states. Instances fire concurrently and a downstream collector gathers
their outputs in index order.

All node status writes are guarded compare-and-set updates, so a node that
two branches race to fire runs exactly once.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from pydantic import BaseModel, Field

from stitch.core.config import EngineConfig
from stitch.core.graph_schema import (
    AuthoredGraph,
    CompactEdge,
    EdgeKind,
    EntityType,
    ExecutionArtifact,
    ExecutionNode,
    NodeKind,
)
from stitch.core.models import (
    AtNode,
    EdgeOutcome,
    Entity,
    JourneyEvent,
    JourneyEventType,
    NodeRunStatus,
    NodeState,
    Run,
    TriggerDescriptor,
)
from stitch.core.state import Database
from stitch.core.status import StatusTransitionError, derive_run_status
from stitch.core.system_edges import SystemActionRegistry, SystemEdgeContext, fire_system_edges
from stitch.core.travel import EntityPositionConflict, EntityTravel
from stitch.core.versions import FlowNotFoundError, VersionStore
from stitch.core.workers import WorkerRegistry, WorkerRequest, WorkerResult, get_worker_definition

logger = logging.getLogger(__name__)

# Journey events written when a node reclassifies its entity
_CLASSIFICATION_EVENTS = {
    EntityType.CUSTOMER: JourneyEventType.CONVERTED,
    EntityType.CHURNED: JourneyEventType.CHURNED,
}


class RunNotFoundError(Exception):
    """Run does not exist."""

    pass


class VersionNotFoundError(Exception):
    """Flow version does not exist or the flow has no current version."""

    pass


class NodeNotFoundError(Exception):
    """Node id is not part of the run's execution artifact."""

    pass


class EntityNotFoundError(Exception):
    """Entity does not exist."""

    pass


class RunResult(BaseModel):
    """Run state after an engine call plus every edge outcome it produced."""

    run: Run
    outcomes: list[EdgeOutcome] = Field(default_factory=list)


def resolve_path(data: Any, path: str) -> Any:
    """Resolve a dotted path ("scenes.0.voice_text") in nested dicts and lists."""
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


def instance_id(node_id: str, index: int) -> str:
    """State key of the split instance of node_id for array element index."""
    return f"{node_id}_{index}"


class EdgeWalker:
    """Drives runs over compiled execution artifacts."""

    def __init__(
        self,
        db: Database,
        versions: VersionStore | None = None,
        workers: WorkerRegistry | None = None,
        actions: SystemActionRegistry | None = None,
        travel: EntityTravel | None = None,
        config: EngineConfig | None = None,
    ):
        self.config = config or EngineConfig()
        self.db = db
        self.versions = versions or VersionStore(db, cas_retries=self.config.version_cas_retries)
        self.workers = workers or WorkerRegistry()
        self.actions = actions or SystemActionRegistry.with_builtin_actions()
        self.travel = travel or EntityTravel(
            db, duration=self.config.travel_duration, tick=self.config.travel_tick
        )
        # Artifacts are immutable, so caching by version id is always safe
        self._artifacts: dict[str, ExecutionArtifact] = {}

    # ========== Lookups ==========

    def _artifact(self, version_id: str) -> ExecutionArtifact:
        if version_id not in self._artifacts:
            version = self.db.get_version(version_id)
            if version is None:
                raise VersionNotFoundError(f"Flow version not found: {version_id}")
            self._artifacts[version_id] = version.execution_artifact
        return self._artifacts[version_id]

    async def _load_run(self, run_id: str) -> Run:
        run = await asyncio.to_thread(self.db.get_run, run_id)
        if run is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        return run

    def _node(self, artifact: ExecutionArtifact, node_id: str) -> ExecutionNode:
        node = artifact.nodes.get(node_id)
        if node is None:
            raise NodeNotFoundError(f"Node '{node_id}' is not in the execution graph")
        return node

    def _base_id(self, run: Run, artifact: ExecutionArtifact, state_id: str) -> str:
        """Graph node behind a node-state key (itself, or the node a split instance belongs to)."""
        if state_id in artifact.nodes:
            return state_id
        head, sep, index = state_id.rpartition("_")
        if sep and index.isdigit() and head in artifact.nodes and state_id in run.node_states:
            return head
        raise NodeNotFoundError(f"Node '{state_id}' is not in the execution graph")

    @staticmethod
    def _is_split_target(artifact: ExecutionArtifact, node_id: str) -> bool:
        node = artifact.nodes[node_id]
        return node.kind.runs_per_item and any(
            artifact.nodes[parent].kind == NodeKind.SPLITTER
            for parent in artifact.upstream_of(node_id, EdgeKind.JOURNEY)
        )

    def _instances(self, run: Run, artifact: ExecutionArtifact, node_id: str) -> list[str]:
        """Split instances of node_id in index order."""
        prefix = f"{node_id}_"
        found = [
            (int(key[len(prefix) :]), key)
            for key in run.node_states
            if key.startswith(prefix) and key[len(prefix) :].isdigit() and key not in artifact.nodes
        ]
        return [key for _, key in sorted(found)]

    def _effective_status(
        self, run: Run, artifact: ExecutionArtifact, node_id: str
    ) -> NodeRunStatus:
        """Status of a node, rolled up over its split instances when it has any."""
        instances = self._instances(run, artifact, node_id)
        if not instances:
            return run.status_of(node_id)
        statuses = [run.status_of(key) for key in instances]
        if NodeRunStatus.FAILED in statuses:
            return NodeRunStatus.FAILED
        if all(s == NodeRunStatus.COMPLETED for s in statuses):
            return NodeRunStatus.COMPLETED
        return NodeRunStatus.RUNNING

    def _effective_output(self, run: Run, artifact: ExecutionArtifact, node_id: str) -> Any:
        instances = self._instances(run, artifact, node_id)
        if instances:
            return [run.node_states[key].output for key in instances]
        state = run.node_states.get(node_id)
        return state.output if state else None

    def get_run_status(self, run_id: str) -> Run:
        """Status poll: the run with all of its node states."""
        run = self.db.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Run not found: {run_id}")
        return run

    async def _refresh_run_status(self, run_id: str) -> Run:
        run = await self._load_run(run_id)
        status = derive_run_status(run.node_states)
        if status != run.status:
            await asyncio.to_thread(self.db.update_run_status, run_id, status)
            logger.info(f"Run {run_id} is now {status.value}")
            run = run.model_copy(update={"status": status})
        return run

    # ========== Public Entry Points ==========

    async def start_run(
        self,
        flow_id: str,
        graph: AuthoredGraph | None = None,
        *,
        version_id: str | None = None,
        entity_id: str | None = None,
        trigger: TriggerDescriptor | None = None,
        input_data: dict[str, Any] | None = None,
        start_node: str | None = None,
    ) -> RunResult:
        """Create a run pinned to a version and fire its start nodes.

        The version is version_id when given, else the auto-version of graph
        when given, else the flow's current version. start_node defaults to
        every entry node of the artifact.

        Raises:
            GraphCompilationError: if graph needs a new version and does not compile
            FlowNotFoundError: if no graph is given and the flow does not exist
            VersionNotFoundError: if no version can be resolved
            EntityNotFoundError: if entity_id does not exist
        """
        if version_id is None:
            if graph is not None:
                version_id = await asyncio.to_thread(
                    self.versions.auto_version_on_run, flow_id, graph
                )
            else:
                flow = await asyncio.to_thread(self.db.get_flow, flow_id)
                if flow is None:
                    raise FlowNotFoundError(f"Flow not found: {flow_id}")
                version_id = await asyncio.to_thread(self.versions.get_current_version_id, flow_id)
                if version_id is None:
                    raise VersionNotFoundError(f"Flow '{flow_id}' has no current version")
        artifact = await asyncio.to_thread(self._artifact, version_id)

        if entity_id is not None:
            entity = await asyncio.to_thread(self.db.get_entity, entity_id)
            if entity is None:
                raise EntityNotFoundError(f"Entity not found: {entity_id}")

        start_nodes = [start_node] if start_node else list(artifact.entry_nodes)
        for node_id in start_nodes:
            self._node(artifact, node_id)

        run = Run(
            id=str(uuid.uuid4()),
            flow_id=flow_id,
            version_id=version_id,
            entity_id=entity_id,
            trigger=trigger or TriggerDescriptor(),
            node_states={
                node_id: NodeState(input=input_data if node_id in start_nodes else None)
                for node_id in artifact.nodes
            },
        )
        await asyncio.to_thread(self.db.create_run, run)
        logger.info(f"Started run {run.id} for flow {flow_id} (version {version_id})")

        outcomes = await self._fire_many(run.id, start_nodes, input_data)
        return RunResult(run=await self._refresh_run_status(run.id), outcomes=outcomes)

    async def fire_node(
        self, run_id: str, node_id: str, input_data: dict[str, Any] | None = None
    ) -> RunResult:
        """Fire one node of an existing run (pending -> running -> ...)."""
        outcomes = await self._fire(run_id, node_id, input_data)
        return RunResult(run=await self._refresh_run_status(run_id), outcomes=outcomes)

    async def retry_node(self, run_id: str, node_id: str) -> RunResult:
        """Manual retry of a failed node.

        The node goes back to pending and fires again at once when all of its
        journey parents are completed. Otherwise it stays pending until the
        walk reaches it. Split instances are retried with their own element.

        Raises:
            RunNotFoundError: if the run does not exist
            NodeNotFoundError: if the node is not part of the run
            StatusTransitionError: if the node is not failed
        """
        run = await self._load_run(run_id)
        artifact = await asyncio.to_thread(self._artifact, run.version_id)
        base = self._base_id(run, artifact, node_id)

        current = run.status_of(node_id)
        if current != NodeRunStatus.FAILED:
            raise StatusTransitionError(current, NodeRunStatus.PENDING)
        reset = await asyncio.to_thread(
            self.db.transition_node_state,
            run_id,
            node_id,
            NodeRunStatus.FAILED,
            NodeRunStatus.PENDING,
        )
        if not reset:
            latest = await asyncio.to_thread(self.db.get_node_state, run_id, node_id)
            raise StatusTransitionError(latest.status if latest else current, NodeRunStatus.PENDING)
        logger.info(f"Run {run_id}: node {node_id} reset to pending for retry")

        outcomes: list[EdgeOutcome] = []
        fresh = await self._load_run(run_id)
        if self._upstream_ready(fresh, artifact, base):
            outcomes = await self._fire(run_id, node_id)
        else:
            logger.info(f"Run {run_id}: retried node {node_id} waits for its upstream nodes")
        return RunResult(run=await self._refresh_run_status(run_id), outcomes=outcomes)

    async def complete_node(
        self,
        run_id: str,
        node_id: str,
        status: NodeRunStatus,
        output: Any = None,
        error: str | None = None,
    ) -> RunResult:
        """Completion callback for async workers and ux nodes.

        Raises:
            RunNotFoundError: if the run does not exist
            NodeNotFoundError: if the node is not in the run's artifact
            StatusTransitionError: if the node cannot move to status from where it is
        """
        if status not in (NodeRunStatus.COMPLETED, NodeRunStatus.FAILED):
            raise ValueError(f"Completion status must be completed or failed, got {status.value}")

        run = await self._load_run(run_id)
        artifact = await asyncio.to_thread(self._artifact, run.version_id)
        self._base_id(run, artifact, node_id)
        current = run.status_of(node_id)

        if status == NodeRunStatus.COMPLETED:
            if current not in (NodeRunStatus.RUNNING, NodeRunStatus.WAITING_FOR_USER):
                raise StatusTransitionError(current, status)
            outcomes = await self._complete(run_id, node_id, current, output)
        else:
            if current != NodeRunStatus.RUNNING:
                raise StatusTransitionError(current, status)
            await self._fail(run_id, node_id, current, error or "Worker reported failure")
            outcomes = []

        return RunResult(run=await self._refresh_run_status(run_id), outcomes=outcomes)

    async def walk_edges(self, run_id: str, node_id: str) -> list[EdgeOutcome]:
        """Fire the outbound edges of a completed node and return every outcome.

        Journey and system partitions run concurrently. Outcomes of
        downstream nodes reached through journey edges are included.
        """
        run = await self._load_run(run_id)
        artifact = await asyncio.to_thread(self._artifact, run.version_id)
        base = self._base_id(run, artifact, node_id)
        edges = artifact.get_outbound(base)
        if not edges:
            return []

        journey = [e for e in edges if e.kind == EdgeKind.JOURNEY]
        system = [e for e in edges if e.kind == EdgeKind.SYSTEM]
        logger.info(
            f"Run {run_id}: walking {node_id} -> "
            f"journey={[e.target for e in journey]} system={[e.target for e in system]}"
        )

        entity = None
        if run.entity_id:
            entity = await asyncio.to_thread(self.db.get_entity, run.entity_id)

        source_output = run.node_states[node_id].output if node_id in run.node_states else None
        contexts = [
            SystemEdgeContext(
                edge=edge,
                run_id=run_id,
                flow_id=run.flow_id,
                entity=entity,
                source_output=source_output,
            )
            for edge in system
        ]

        journey_result, system_result = await asyncio.gather(
            self._walk_journey(run, artifact, node_id, journey, entity),
            fire_system_edges(self.actions, contexts),
            return_exceptions=True,
        )
        # Both partitions capture edge failures themselves, anything left is infrastructure
        for result in (journey_result, system_result):
            if isinstance(result, BaseException):
                raise result

        failed = [o.edge_id for o in system_result if not o.success]
        if failed:
            logger.warning(f"Run {run_id}: system edges failed from {node_id}: {failed}")
        return journey_result + system_result

    # ========== Node Firing ==========

    async def _fire_many(
        self, run_id: str, node_ids: list[str], input_data: dict[str, Any] | None = None
    ) -> list[EdgeOutcome]:
        results = await asyncio.gather(
            *[self._fire(run_id, nid, input_data) for nid in node_ids],
            return_exceptions=True,
        )
        outcomes: list[EdgeOutcome] = []
        for result in results:
            if isinstance(result, BaseException):
                raise result
            outcomes.extend(result)
        return outcomes

    def _upstream_ready(self, run: Run, artifact: ExecutionArtifact, node_id: str) -> bool:
        return all(
            self._effective_status(run, artifact, parent) == NodeRunStatus.COMPLETED
            for parent in artifact.upstream_of(node_id, EdgeKind.JOURNEY)
        )

    def _build_input(
        self,
        run: Run,
        artifact: ExecutionArtifact,
        node: ExecutionNode,
        state_id: str,
        explicit: dict[str, Any] | None,
    ) -> dict[str, Any]:
        """Defaults, then upstream outputs (through edge mappings), then explicit input.

        A split instance takes its array element instead of upstream outputs.
        Without explicit input the input stored on the node state is used.
        """
        merged: dict[str, Any] = {
            name: spec.default for name, spec in node.inputs.items() if spec.default is not None
        }
        state = run.node_states.get(state_id)
        if explicit is None and state is not None:
            explicit = state.input
        if state_id != node.id:
            if explicit:
                merged.update(explicit)
            return merged

        for parent in artifact.upstream_of(node.id):
            output = self._effective_output(run, artifact, parent)
            if output is None:
                continue
            mapping = artifact.get_mapping(parent, node.id)
            if mapping:
                for target_input, source_path in mapping.items():
                    merged[target_input] = resolve_path(output, source_path)
            elif isinstance(output, dict):
                merged.update(output)
            else:
                merged[parent] = output
        if explicit:
            merged.update(explicit)
        return merged

    def _collect(self, run: Run, artifact: ExecutionArtifact, node_id: str) -> list[Any]:
        """Outputs of a collector's journey parents, split instances flattened in index order."""
        items: list[Any] = []
        for parent in artifact.upstream_of(node_id, EdgeKind.JOURNEY):
            if self._is_split_target(artifact, parent):
                items.extend(self._effective_output(run, artifact, parent) or [])
            else:
                items.append(run.node_states[parent].output)
        return items

    async def _seed_instances(
        self, run_id: str, artifact: ExecutionArtifact, splitter_id: str, items: list[Any]
    ) -> None:
        targets = [
            edge.target
            for edge in artifact.get_outbound(splitter_id)
            if edge.kind == EdgeKind.JOURNEY and self._is_split_target(artifact, edge.target)
        ]
        states: dict[str, NodeState] = {}
        for target in targets:
            for index, element in enumerate(items):
                key = instance_id(target, index)
                if key in artifact.nodes:
                    logger.warning(
                        f"Run {run_id}: instance key {key} clashes with a node id, element skipped"
                    )
                    continue
                states[key] = NodeState(
                    input=element if isinstance(element, dict) else {"item": element}
                )
        if states:
            seeded = await asyncio.to_thread(self.db.seed_node_states, run_id, states)
            logger.info(f"Run {run_id}: splitter {splitter_id} seeded {seeded} instances")

    async def _fire(
        self, run_id: str, node_id: str, input_data: dict[str, Any] | None = None
    ) -> list[EdgeOutcome]:
        run = await self._load_run(run_id)
        artifact = await asyncio.to_thread(self._artifact, run.version_id)
        base = self._base_id(run, artifact, node_id)
        node = artifact.nodes[base]

        if node_id == base and self._is_split_target(artifact, node_id):
            instances = self._instances(run, artifact, node_id)
            if instances:
                return await self._fire_many(run_id, instances)

        failed_parents: list[str] = []
        if node.kind == NodeKind.COLLECTOR:
            failed_parents = [
                parent
                for parent in artifact.upstream_of(node_id, EdgeKind.JOURNEY)
                if self._effective_status(run, artifact, parent) == NodeRunStatus.FAILED
            ]
            if not failed_parents and not self._upstream_ready(run, artifact, node_id):
                logger.debug(f"Run {run_id}: collector {node_id} still waiting on upstream nodes")
                return []

        claimed = await asyncio.to_thread(
            self.db.transition_node_state,
            run_id,
            node_id,
            NodeRunStatus.PENDING,
            NodeRunStatus.RUNNING,
        )
        if not claimed:
            logger.debug(f"Run {run_id}: node {node_id} already fired")
            return []

        if failed_parents:
            await self._fail(
                run_id,
                node_id,
                NodeRunStatus.RUNNING,
                f"Upstream path failed: {', '.join(failed_parents)}",
            )
            return []

        if node_id == base and self._is_split_target(artifact, node_id):
            # Splitter fed an empty array: nothing to run per element
            return await self._complete(run_id, node_id, NodeRunStatus.RUNNING, [])

        node_input = self._build_input(run, artifact, node, node_id, input_data)
        logger.info(f"Run {run_id}: firing {node.kind.value} node {node_id}")

        if node.kind == NodeKind.WORKER:
            return await self._fire_worker(run, node, node_id, node_input)

        if node.kind.waits_for_user:
            await asyncio.to_thread(
                self.db.transition_node_state,
                run_id,
                node_id,
                NodeRunStatus.RUNNING,
                NodeRunStatus.WAITING_FOR_USER,
                node_input or None,
            )
            logger.info(f"Run {run_id}: node {node_id} waiting for user")
            return []

        if node.kind == NodeKind.SPLITTER:
            array_path = node.config.get("array_path", "items")
            items = resolve_path(node_input, array_path)
            if not isinstance(items, list):
                await self._fail(
                    run_id,
                    node_id,
                    NodeRunStatus.RUNNING,
                    f"Splitter expected an array at '{array_path}', got {type(items).__name__}",
                )
                return []
            await self._seed_instances(run_id, artifact, node_id, items)
            return await self._complete(
                run_id, node_id, NodeRunStatus.RUNNING, {"items": items, "count": len(items)}
            )

        if node.kind == NodeKind.COLLECTOR:
            items = self._collect(run, artifact, node_id)
            return await self._complete(
                run_id, node_id, NodeRunStatus.RUNNING, {"items": items, "count": len(items)}
            )

        # section / item: no work of their own
        return await self._complete(run_id, node_id, NodeRunStatus.RUNNING, node_input or None)

    async def _fire_worker(
        self, run: Run, node: ExecutionNode, state_id: str, node_input: dict[str, Any]
    ) -> list[EdgeOutcome]:
        worker = self.workers.get(node.worker_type) if node.worker_type else None
        if worker is None:
            logger.info(
                f"Run {run.id}: no implementation bound for '{node.worker_type}', "
                f"node {state_id} awaits its completion callback"
            )
            return []

        definition = get_worker_definition(node.worker_type)
        request = WorkerRequest(
            run_id=run.id,
            node_id=state_id,
            worker_type=node.worker_type,
            config={**(definition.config if definition else {}), **node.config},
            input=node_input,
        )
        try:
            result: WorkerResult | None = await worker.execute(request)
        except Exception as e:
            logger.error(f"Run {run.id}: worker node {state_id} failed: {e}")
            await self._fail(run.id, state_id, NodeRunStatus.RUNNING, str(e))
            return []

        if result is None:
            logger.info(f"Run {run.id}: worker node {state_id} running asynchronously")
            return []
        if result.status == "failed":
            error = result.error or "Worker failed"
            await self._fail(run.id, state_id, NodeRunStatus.RUNNING, error)
            return []
        return await self._complete(run.id, state_id, NodeRunStatus.RUNNING, result.output)

    async def _complete(
        self, run_id: str, node_id: str, expected: NodeRunStatus, output: Any
    ) -> list[EdgeOutcome]:
        completed = await asyncio.to_thread(
            self.db.transition_node_state,
            run_id,
            node_id,
            expected,
            NodeRunStatus.COMPLETED,
            output,
        )
        if not completed:
            logger.info(f"Run {run_id}: completion of {node_id} discarded (status changed)")
            return []

        logger.info(f"Run {run_id}: node {node_id} completed")
        await self._apply_entity_movement(run_id, node_id, success=True)
        return await self.walk_edges(run_id, node_id)

    async def _fail(self, run_id: str, node_id: str, expected: NodeRunStatus, error: str) -> None:
        """Record a failure and fail the collectors directly downstream of the node."""
        failed = await asyncio.to_thread(
            self.db.transition_node_state,
            run_id,
            node_id,
            expected,
            NodeRunStatus.FAILED,
            None,
            error,
        )
        if not failed:
            return
        logger.error(f"Run {run_id}: node {node_id} failed: {error}")
        await self._apply_entity_movement(run_id, node_id, success=False)

        run = await self._load_run(run_id)
        artifact = await asyncio.to_thread(self._artifact, run.version_id)
        base = self._base_id(run, artifact, node_id)
        collectors = [
            edge.target
            for edge in artifact.get_outbound(base)
            if edge.kind == EdgeKind.JOURNEY
            and artifact.nodes[edge.target].kind == NodeKind.COLLECTOR
        ]
        for collector in collectors:
            await self._fire(run_id, collector)

    # ========== Entity Handling ==========

    async def _apply_entity_movement(self, run_id: str, node_id: str, success: bool) -> None:
        """Reclassify the run's entity according to the node's movement config."""
        run = await self._load_run(run_id)
        if not run.entity_id:
            return
        artifact = await asyncio.to_thread(self._artifact, run.version_id)
        node = artifact.nodes[self._base_id(run, artifact, node_id)]
        movement = node.entity_movement
        if movement is None:
            return
        action = movement.on_success if success else movement.on_failure
        if action is None:
            return

        event_type = _CLASSIFICATION_EVENTS.get(action.set_entity_type)
        event = None
        if event_type is not None:
            event = JourneyEvent(
                entity_id=run.entity_id,
                event_type=event_type,
                node_id=node_id,
                metadata={"run_id": run_id, "entity_type": action.set_entity_type.value},
            )
        await asyncio.to_thread(
            self.db.update_entity_type, run.entity_id, action.set_entity_type, event
        )
        logger.info(
            f"Run {run_id}: entity {run.entity_id} set to {action.set_entity_type.value} "
            f"by node {node_id}"
        )

    async def _walk_journey(
        self,
        run: Run,
        artifact: ExecutionArtifact,
        node_id: str,
        edges: list[CompactEdge],
        entity: Entity | None,
    ) -> list[EdgeOutcome]:
        if not edges:
            return []

        # One entity holds one position: the first journey edge carries it,
        # the others fire their targets without movement. Split instances
        # carry it once the last of them completes.
        base = self._base_id(run, artifact, node_id)
        carrier = None
        last_instance = base == node_id or (
            self._effective_status(run, artifact, base) == NodeRunStatus.COMPLETED
        )
        if entity is not None and entity.position == AtNode(node_id=base) and last_instance:
            carrier = edges[0].id

        results = await asyncio.gather(
            *[
                self._traverse(run, edge, entity if edge.id == carrier else None)
                for edge in edges
            ],
            return_exceptions=True,
        )

        outcomes: list[EdgeOutcome] = []
        for edge, result in zip(edges, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error(f"Run {run.id}: journey edge {edge.id} failed: {result}")
                outcomes.append(
                    EdgeOutcome(
                        edge_id=edge.id,
                        kind=EdgeKind.JOURNEY,
                        source=edge.source,
                        target=edge.target,
                        success=False,
                        error=str(result),
                    )
                )
            else:
                outcomes.extend(result)
        return outcomes

    async def _traverse(
        self, run: Run, edge: CompactEdge, entity: Entity | None
    ) -> list[EdgeOutcome]:
        """Move the entity along one journey edge, then fire the target if it is ready."""
        moved = False
        detail: dict[str, Any] = {}
        if entity is not None:
            try:
                await self.travel.travel(entity.id, edge.id, edge.source, edge.target)
                moved = True
            except EntityPositionConflict as e:
                logger.warning(f"Run {run.id}: skipped moving entity on edge {edge.id}: {e}")
                detail["movement_skipped"] = str(e)

        outcome = EdgeOutcome(
            edge_id=edge.id,
            kind=EdgeKind.JOURNEY,
            source=edge.source,
            target=edge.target,
            success=True,
            moved_entity=moved,
            detail=detail,
        )

        fresh = await self._load_run(run.id)
        artifact = await asyncio.to_thread(self._artifact, fresh.version_id)
        if not self._upstream_ready(fresh, artifact, edge.target):
            logger.debug(f"Run {run.id}: {edge.target} still has incomplete parents")
            return [outcome]

        return [outcome, *await self._fire(run.id, edge.target)]
