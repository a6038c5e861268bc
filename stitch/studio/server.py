"""FastAPI backend for Stitch.

This module provides:
- REST API for saving and listing flow versions
- Run start, status polling, the worker completion callback and node retry
- Webhook ingestion that places entities on a canvas
- Entity lookup and the entity journey log

Architecture Notes:
- The engine is reactive. Every request that advances a run returns once the
  reachable work has settled, there is no background scheduler.
- Travel animation delays are awaited inside the request. Set
  travel_duration to 0 in the config for instant movement.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Literal

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from stitch.core.compiler import GraphCompilationError
from stitch.core.config import EngineConfig, load_config
from stitch.core.edge_walker import (
    EdgeWalker,
    EntityNotFoundError,
    NodeNotFoundError,
    RunNotFoundError,
    RunResult,
    VersionNotFoundError,
)
from stitch.core.graph_schema import AuthoredGraph
from stitch.core.intake import EntityIntake, WebhookEvent
from stitch.core.models import (
    Entity,
    FlowVersion,
    FlowVersionMetadata,
    JourneyEvent,
    NodeRunStatus,
    Run,
    TriggerDescriptor,
)
from stitch.core.state import Database
from stitch.core.status import StatusTransitionError
from stitch.core.versions import FlowNotFoundError, VersionConflictError

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Stitch API",
    description="API for canvas versioning and run execution",
    version="0.1.0",
)


def _get_allowed_origins() -> list[str]:
    """Local editor origins plus any listed in STITCH_ALLOWED_ORIGINS (comma separated)."""
    origins = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]
    extra = os.environ.get("STITCH_ALLOWED_ORIGINS")
    if extra:
        origins.extend(o.strip() for o in extra.split(",") if o.strip())
    return origins


app.add_middleware(
    CORSMiddleware,
    allow_origins=_get_allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global state (initialized lazily)
_config: EngineConfig | None = None
_db: Database | None = None
_walker: EdgeWalker | None = None


def get_config() -> EngineConfig:
    global _config
    if _config is None:
        _config = load_config()
    return _config


def get_db() -> Database:
    """Get or create database instance."""
    global _db
    if _db is None:
        _db = Database(Path(get_config().db_path))
    return _db


def get_walker() -> EdgeWalker:
    """Get or create the edge walker."""
    global _walker
    if _walker is None:
        _walker = EdgeWalker(get_db(), config=get_config())
    return _walker


def configure(db: Database, config: EngineConfig | None = None) -> None:
    """Bind the app to a database (tests and embedding)."""
    global _config, _db, _walker
    _config = config or EngineConfig(db_path=db.db_path)
    _db = db
    _walker = EdgeWalker(db, config=_config)


def _compilation_failed(e: GraphCompilationError) -> HTTPException:
    return HTTPException(
        status_code=400,
        detail={"compilation_errors": [err.model_dump(mode="json") for err in e.errors]},
    )


# ========== API Models ==========


class VersionCreateRequest(BaseModel):
    """Request to save a canvas as a new version"""

    graph: AuthoredGraph
    commit_message: str | None = None


class VersionCreateResponse(BaseModel):
    version_id: str
    flow_id: str


class RunRequest(BaseModel):
    """Request to start a run.

    With graph the canvas is auto-versioned first; otherwise version_id or the
    flow's current version runs.
    """

    graph: AuthoredGraph | None = None
    version_id: str | None = None
    entity_id: str | None = None
    start_node: str | None = None
    input_data: dict[str, Any] = Field(default_factory=dict)


class CompletionRequest(BaseModel):
    """Completion callback from an async worker or a ux node"""

    status: Literal["completed", "failed"] = "completed"
    output: Any = None
    error: str | None = None


# ========== Version Endpoints ==========


@app.post("/api/flows/{flow_id}/versions", status_code=201)
def create_version(flow_id: str, request: VersionCreateRequest) -> VersionCreateResponse:
    """Compile and save a canvas. Nothing is stored if compilation fails."""
    store = get_walker().versions
    try:
        version_id = store.create_version(flow_id, request.graph, request.commit_message)
    except GraphCompilationError as e:
        raise _compilation_failed(e) from e
    return VersionCreateResponse(version_id=version_id, flow_id=flow_id)


@app.get("/api/flows/{flow_id}/versions")
def list_versions(flow_id: str) -> list[FlowVersionMetadata]:
    """List versions of a flow, newest first."""
    try:
        return get_walker().versions.list_versions(flow_id)
    except FlowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@app.get("/api/versions/{version_id}")
def get_version(version_id: str) -> FlowVersion:
    version = get_walker().versions.get_version(version_id)
    if version is None:
        raise HTTPException(status_code=404, detail="Version not found")
    return version


# ========== Run Endpoints ==========


@app.post("/api/flows/{flow_id}/run", status_code=201)
async def start_run(flow_id: str, request: RunRequest) -> RunResult:
    """Start a run. Returns once the reachable work has settled."""
    walker = get_walker()
    try:
        return await walker.start_run(
            flow_id,
            request.graph,
            version_id=request.version_id,
            entity_id=request.entity_id,
            trigger=TriggerDescriptor(type="api"),
            input_data=request.input_data,
            start_node=request.start_node,
        )
    except GraphCompilationError as e:
        raise _compilation_failed(e) from e
    except (FlowNotFoundError, VersionNotFoundError, EntityNotFoundError, NodeNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except VersionConflictError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e


@app.get("/api/runs/{run_id}")
async def get_run(run_id: str) -> Run:
    walker = get_walker()
    try:
        return await run_in_threadpool(walker.get_run_status, run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@app.post("/api/runs/{run_id}/nodes/{node_id}/complete")
async def complete_node(run_id: str, node_id: str, request: CompletionRequest) -> RunResult:
    """Completion callback. Resumes walking from the node on success."""
    walker = get_walker()
    try:
        return await walker.complete_node(
            run_id,
            node_id,
            NodeRunStatus(request.status),
            output=request.output,
            error=request.error,
        )
    except (RunNotFoundError, NodeNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except StatusTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e


@app.post("/api/runs/{run_id}/nodes/{node_id}/retry")
async def retry_node(run_id: str, node_id: str) -> RunResult:
    """Reset a failed node to pending and fire it again if its upstream is done."""
    walker = get_walker()
    try:
        return await walker.retry_node(run_id, node_id)
    except (RunNotFoundError, NodeNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except StatusTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e


# ========== Webhook Endpoints ==========


@app.post("/api/webhooks/{canvas_id}", status_code=202)
async def ingest_webhook(canvas_id: str, event: WebhookEvent) -> dict[str, Any]:
    """Find or create the entity, place it at node_id and run from there."""
    intake = EntityIntake(get_walker())
    try:
        ingested = await intake.ingest(canvas_id, event)
    except (FlowNotFoundError, VersionNotFoundError, NodeNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e)) from e

    logger.info(
        f"Webhook on {canvas_id}: entity {ingested.entity.id} "
        f"({'created' if ingested.created else 'matched'}) -> run {ingested.result.run.id}"
    )
    return {
        "entity_id": ingested.entity.id,
        "created": ingested.created,
        "run_id": ingested.result.run.id,
        "run_status": ingested.result.run.status.value,
    }


# ========== Entity Endpoints ==========


def _require_entity(entity_id: str) -> Entity:
    entity = get_db().get_entity(entity_id)
    if entity is None:
        raise HTTPException(status_code=404, detail=f"Entity not found: {entity_id}")
    return entity


@app.get("/api/entities/{entity_id}")
def get_entity(entity_id: str) -> Entity:
    return _require_entity(entity_id)


@app.get("/api/entities/{entity_id}/journey")
def get_entity_journey(entity_id: str) -> list[JourneyEvent]:
    """Journey log of an entity, oldest first."""
    _require_entity(entity_id)
    return get_db().get_journey_events(entity_id)


@app.get("/api/health")
def health() -> dict[str, str]:
    return {"status": "ok"}
