"""Stage pipeline engine: runs an ordered list of model-backed stages for one request.

Each stage builds a request from the run context, calls the content
collaborator, and merges the parsed result back into the context for the
next stage. Progress is yielded as events after every transition.

    pending → stage[1] → … → stage[n] → complete
        ↘         ↘               ↘
                      error

A failure anywhere becomes exactly one `error` event and ends the run; the
engine never raises past its own boundary because the HTTP response is
already streaming. A closed client ends the run silently.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from advisor.errors import TransportClosed
from advisor.llm import Completion
from advisor.pipeline.emitter import ProgressEmitter

logger = logging.getLogger(__name__)

DEFAULT_ERROR_MESSAGE = "Analysis failed"


class ContentGenerator(Protocol):
    async def generate(self, messages: list[dict[str, str]], **options: Any) -> Completion: ...

    async def generate_grounded(self, messages: list[dict[str, str]], **options: Any) -> Completion: ...


class RunState(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({RunState.COMPLETE, RunState.ERROR, RunState.CANCELLED})


@dataclass
class PipelineRun:
    """Per-request state. Owned by one request and dropped when its stream closes."""

    pipeline: str
    context: dict[str, Any] = field(default_factory=dict)
    state: RunState = RunState.PENDING
    stage: str | None = None
    completed_stages: list[str] = field(default_factory=list)

    def enter_stage(self, name: str) -> None:
        self._require_active()
        if self.stage is not None:
            self.completed_stages.append(self.stage)
        self.state = RunState.RUNNING
        self.stage = name

    def complete(self) -> None:
        self._require_active()
        if self.stage is not None:
            self.completed_stages.append(self.stage)
        self.state = RunState.COMPLETE

    def fail(self) -> None:
        self._require_active()
        self.state = RunState.ERROR

    def cancel(self) -> None:
        self._require_active()
        self.state = RunState.CANCELLED

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def _require_active(self) -> None:
        if self.finished:
            raise RuntimeError(f"Run '{self.pipeline}' already {self.state.value}")


@dataclass(frozen=True)
class StageRequest:
    """What a stage asks of the collaborator."""

    messages: list[dict[str, str]]
    temperature: float = 0.7
    max_tokens: int = 4000
    grounded: bool = False
    search_query: str | None = None
    snippet: str | None = None  # shown to the client instead of the raw prompt


@dataclass(frozen=True)
class Stage:
    name: str
    description: str
    build_request: Callable[[PipelineRun], StageRequest]
    parse_result: Callable[[PipelineRun, Completion], None]
    prompt_chars: int = 500
    response_chars: int = 300


@dataclass(frozen=True)
class Pipeline:
    """A named stage list plus how to seed the context and shape the final payload.

    `prepare` validates the request body into the run context and raises
    ValidationError on bad input; `finish` turns the context into the
    `complete` event payload.
    """

    name: str
    stages: list[Stage]
    prepare: Callable[[PipelineRun, Any], None]
    finish: Callable[[PipelineRun], Any]
    fallback_error: str = DEFAULT_ERROR_MESSAGE


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def _prompt_text(request: StageRequest) -> str:
    for msg in reversed(request.messages):
        if msg.get("role") == "user":
            return msg.get("content", "")
    return ""


async def _invoke(client: ContentGenerator, request: StageRequest) -> Completion:
    if request.grounded:
        return await client.generate_grounded(
            request.messages,
            temperature=request.temperature,
            max_tokens=request.max_tokens,
            search_query=request.search_query,
        )
    return await client.generate(
        request.messages,
        temperature=request.temperature,
        max_tokens=request.max_tokens,
    )


async def run_stages(
    pipeline: Pipeline,
    body: Any,
    client: ContentGenerator,
    emitter: ProgressEmitter,
) -> AsyncIterator:
    """Execute `pipeline` for one request body, yielding progress events in order."""
    run = PipelineRun(pipeline=pipeline.name)
    logger.info(f"Starting pipeline '{pipeline.name}' ({len(pipeline.stages)} stages)")

    try:
        await emitter.ensure_open()
        pipeline.prepare(run, body)

        for stage in pipeline.stages:
            await emitter.ensure_open()
            run.enter_stage(stage.name)
            logger.info(f"Pipeline '{pipeline.name}' entering stage '{stage.name}'")
            yield emitter.stage_update(stage.name, stage.description)

            request = stage.build_request(run)
            snippet = request.snippet or truncate(_prompt_text(request), stage.prompt_chars)
            yield emitter.prompt_snippet(snippet)

            completion = await _invoke(client, request)
            await emitter.ensure_open()
            yield emitter.response_snippet(truncate(completion.content, stage.response_chars))

            stage.parse_result(run, completion)

        data = pipeline.finish(run)
        run.complete()
        logger.info(f"Pipeline '{pipeline.name}' complete")
        yield emitter.complete(data)

    except TransportClosed:
        run.cancel()
        logger.info(
            f"Client disconnected, abandoning pipeline '{pipeline.name}' at stage {run.stage!r}"
        )
    except Exception as e:
        logger.error(f"Pipeline '{pipeline.name}' failed at stage {run.stage!r}: {e}", exc_info=True)
        run.fail()
        yield emitter.error(str(e) or pipeline.fallback_error)
