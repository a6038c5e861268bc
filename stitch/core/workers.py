"""Worker subtype registry.

Two registries live here:

- WORKER_DEFINITIONS is the fixed schema table the compiler validates
  worker nodes against. It is a plain lookup table.
- WorkerRegistry binds a subtype to the implementation the engine calls at
  runtime. Implementations are external collaborators (LLM calls, media APIs);
  an unbound subtype simply waits for its completion callback.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Literal

from pydantic import BaseModel, Field

from stitch.core.graph_schema import FieldType, InputField, OutputField

logger = logging.getLogger(__name__)


class WorkerNotRegisteredError(Exception):
    """No implementation is bound for a worker subtype."""

    pass


class WorkerDefinition(BaseModel):
    """Schema of a worker subtype"""

    id: str
    name: str
    mode: Literal["sync", "async"]  # async workers report back through the callback
    description: str = ""
    inputs: dict[str, InputField] = Field(default_factory=dict)
    outputs: dict[str, OutputField] = Field(default_factory=dict)
    config: dict[str, Any] = Field(default_factory=dict)


WORKER_DEFINITIONS: dict[str, WorkerDefinition] = {
    "claude": WorkerDefinition(
        id="claude",
        name="Claude Script Generator",
        mode="sync",
        description="Generate structured scene descriptions for video pipelines",
        inputs={
            "prompt": InputField(type=FieldType.STRING, required=True),
            "topic": InputField(type=FieldType.STRING),
        },
        outputs={"scenes": OutputField(type=FieldType.ARRAY)},
        config={"max_tokens": 4096},
    ),
    "minimax": WorkerDefinition(
        id="minimax",
        name="MiniMax Video Generator",
        mode="async",
        description="Generate video clips from text prompts",
        inputs={
            "visual_prompt": InputField(type=FieldType.STRING, required=True),
            "duration": InputField(type=FieldType.NUMBER, default=5),
        },
        outputs={"videoUrl": OutputField(type=FieldType.STRING)},
    ),
    "elevenlabs": WorkerDefinition(
        id="elevenlabs",
        name="ElevenLabs Voice Generator",
        mode="async",
        description="Generate voice narration from text",
        inputs={
            "voice_text": InputField(type=FieldType.STRING, required=True),
            "voice_id": InputField(type=FieldType.STRING),
        },
        outputs={"audioUrl": OutputField(type=FieldType.STRING)},
    ),
    "shotstack": WorkerDefinition(
        id="shotstack",
        name="Shotstack Video Assembler",
        mode="async",
        description="Assemble video and audio clips into a final video",
        inputs={
            "scenes": InputField(type=FieldType.ARRAY, required=True),
            "timeline": InputField(type=FieldType.OBJECT),
        },
        outputs={
            "finalVideoUrl": OutputField(type=FieldType.STRING),
            "duration": OutputField(type=FieldType.NUMBER),
        },
        config={"resolution": "sd", "format": "mp4", "fps": 25},
    ),
}


def get_worker_definition(worker_type: str) -> WorkerDefinition | None:
    return WORKER_DEFINITIONS.get(worker_type)


def is_valid_worker_type(worker_type: str | None) -> bool:
    return worker_type is not None and worker_type in WORKER_DEFINITIONS


def available_worker_types() -> list[str]:
    return list(WORKER_DEFINITIONS)


# ========== Runtime Binding ==========


class WorkerRequest(BaseModel):
    """Everything a worker implementation gets when its node fires"""

    run_id: str
    node_id: str
    worker_type: str
    config: dict[str, Any] = Field(default_factory=dict)
    input: dict[str, Any] = Field(default_factory=dict)


class WorkerResult(BaseModel):
    """Completion payload, returned inline or delivered through the callback"""

    status: Literal["completed", "failed"] = "completed"
    output: Any = None
    error: str | None = None


class Worker(ABC):
    """Worker implementation contract.

    Return a WorkerResult to finish the node inline. Return None when the
    work was handed off and the result will arrive through the engine's
    completion callback. Raising marks the node failed.
    """

    @abstractmethod
    async def execute(self, request: WorkerRequest) -> WorkerResult | None:
        raise NotImplementedError


class WorkerRegistry:
    """Binds worker subtypes to runtime implementations."""

    def __init__(self) -> None:
        self._workers: dict[str, Worker] = {}

    def register(self, worker_type: str, worker: Worker) -> None:
        if not is_valid_worker_type(worker_type):
            raise WorkerNotRegisteredError(
                f"Cannot bind unknown worker type '{worker_type}'. "
                f"Valid types: {', '.join(available_worker_types())}"
            )
        self._workers[worker_type] = worker
        logger.debug(f"Bound worker implementation for '{worker_type}'")

    def get(self, worker_type: str) -> Worker | None:
        return self._workers.get(worker_type)

    def has(self, worker_type: str) -> bool:
        return worker_type in self._workers
