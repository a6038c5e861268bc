"""Version store: compile-then-snapshot with a current pointer per flow.

Versions are immutable. Only the flow's current-version pointer moves, and
for auto-versioning it moves through a compare-and-set so that two
concurrent callers comparing against the same stale pointer cannot both
install divergent versions.
"""

from __future__ import annotations

import json
import logging
import uuid

from stitch.core.compiler import compile_graph
from stitch.core.graph_schema import AuthoredGraph
from stitch.core.models import FlowVersion, FlowVersionMetadata
from stitch.core.state import Database

logger = logging.getLogger(__name__)

INITIAL_VERSION_MESSAGE = "Initial version (auto-created on run)"
AUTO_VERSION_MESSAGE = "Auto-versioned on run"


class VersionConflictError(Exception):
    """Current pointer kept moving underneath auto-versioning."""

    pass


class FlowNotFoundError(Exception):
    """Flow has never been saved or run."""

    pass


def canonical_graph(graph: AuthoredGraph) -> str:
    """Key-sorted JSON form used for structural comparison."""
    return json.dumps(graph.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))


def graphs_equal(a: AuthoredGraph, b: AuthoredGraph) -> bool:
    return canonical_graph(a) == canonical_graph(b)


class VersionStore:
    """Creates and looks up immutable flow versions."""

    def __init__(self, db: Database, cas_retries: int = 3):
        self.db = db
        self.cas_retries = cas_retries

    def _build_version(
        self, flow_id: str, graph: AuthoredGraph, message: str | None
    ) -> FlowVersion:
        # Compile first: a failing graph raises before anything is written
        artifact = compile_graph(graph)
        return FlowVersion(
            id=str(uuid.uuid4()),
            flow_id=flow_id,
            commit_message=message,
            authored_graph=graph,
            execution_artifact=artifact,
        )

    def create_version(
        self, flow_id: str, graph: AuthoredGraph, message: str | None = None
    ) -> str:
        """Compile, persist and make current. Creates the flow on first save.

        Raises:
            GraphCompilationError: if the graph does not compile (nothing is persisted)
        """
        version = self._build_version(flow_id, graph, message)
        self.db.create_flow(flow_id)
        self.db.insert_version(version)
        logger.info(f"Created version {version.id} for flow {flow_id}")
        return version.id

    def get_version(self, version_id: str) -> FlowVersion | None:
        return self.db.get_version(version_id)

    def list_versions(self, flow_id: str) -> list[FlowVersionMetadata]:
        """Newest first.

        Raises:
            FlowNotFoundError: if the flow does not exist
        """
        if self.db.get_flow(flow_id) is None:
            raise FlowNotFoundError(f"Flow not found: {flow_id}")
        return self.db.list_versions(flow_id)

    def get_current_version_id(self, flow_id: str) -> str | None:
        return self.db.get_current_version_id(flow_id)

    def get_current_version(self, flow_id: str) -> FlowVersion | None:
        version_id = self.get_current_version_id(flow_id)
        return self.get_version(version_id) if version_id else None

    def auto_version_on_run(self, flow_id: str, current_graph: AuthoredGraph) -> str:
        """Return a version id matching current_graph, creating one only if needed.

        Raises:
            GraphCompilationError: if a new version is needed and the graph does not compile
            VersionConflictError: if the pointer moved on every retry
        """
        self.db.create_flow(flow_id)
        version: FlowVersion | None = None

        for attempt in range(self.cas_retries):
            current_id = self.db.get_current_version_id(flow_id)
            if current_id is not None:
                current = self.db.get_version(current_id)
                if current is not None and graphs_equal(current.authored_graph, current_graph):
                    logger.debug(f"Flow {flow_id} unchanged, reusing version {current_id}")
                    return current_id

            message = AUTO_VERSION_MESSAGE if current_id else INITIAL_VERSION_MESSAGE
            if version is None:
                version = self._build_version(flow_id, current_graph, message)
            else:
                version = version.model_copy(update={"commit_message": message})

            if self.db.insert_version(version, expected_current_id=current_id, guarded=True):
                logger.info(f"Auto-versioned flow {flow_id}: {version.id}")
                return version.id

            logger.warning(
                f"Version pointer for flow {flow_id} moved during auto-versioning "
                f"(attempt {attempt + 1}/{self.cas_retries})"
            )

        raise VersionConflictError(
            f"Could not auto-version flow {flow_id}: pointer changed {self.cas_retries} times"
        )
