"""Progress events: the closed set of messages a pipeline run pushes to the client.

Wire format is one JSON object per SSE frame (`data: {...}\\n\\n`) with
camelCase keys:

    stage_update      a stage has started (stage, stageDescription)
    prompt_snippet    excerpt of what was asked of the model
    response_snippet  excerpt of what the model answered
    complete          terminal; carries the pipeline's result payload
    error             terminal; carries a short human-readable message
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    timestamp: int  # epoch ms, stamped by the emitter


class StageUpdate(_Event):
    type: Literal["stage_update"] = "stage_update"
    stage: str
    stage_description: str


class PromptSnippet(_Event):
    type: Literal["prompt_snippet"] = "prompt_snippet"
    prompt_snippet: str


class ResponseSnippet(_Event):
    type: Literal["response_snippet"] = "response_snippet"
    response_snippet: str


class Complete(_Event):
    type: Literal["complete"] = "complete"
    data: Any


class Error(_Event):
    type: Literal["error"] = "error"
    error: str


ProgressEvent = Annotated[
    Union[StageUpdate, PromptSnippet, ResponseSnippet, Complete, Error],
    Field(discriminator="type"),
]

TERMINAL_TYPES = frozenset({"complete", "error"})

_event_adapter: TypeAdapter[ProgressEvent] = TypeAdapter(ProgressEvent)


def parse_event(data: dict[str, Any]) -> ProgressEvent:
    """Validate a decoded frame back into its event variant."""
    return _event_adapter.validate_python(data)


def format_sse(event: BaseModel) -> str:
    """Frame any event model as a single SSE `data:` message."""
    return f"data: {event.model_dump_json(by_alias=True)}\n\n"


def format_sse_data(data: dict[str, Any]) -> str:
    return f"data: {json.dumps(data, default=str)}\n\n"


class EventStreamDecoder:
    """Reassemble SSE frames from arbitrarily chunked reads.

    Feed raw text as it arrives; each call returns the JSON payloads of the
    frames completed so far. Partial frames stay buffered.
    """

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> list[Any]:
        self._buffer += chunk.replace("\r\n", "\n")
        *frames, self._buffer = self._buffer.split("\n\n")
        return [p for p in (self._decode(f) for f in frames) if p is not None]

    def close(self) -> list[Any]:
        """Flush a trailing frame that was not followed by a blank line."""
        remainder, self._buffer = self._buffer, ""
        payload = self._decode(remainder)
        return [payload] if payload is not None else []

    @staticmethod
    def _decode(frame: str) -> Any | None:
        data_lines = [
            line[5:].lstrip(" ") for line in frame.split("\n") if line.startswith("data:")
        ]
        if not data_lines:
            return None
        return json.loads("\n".join(data_lines))
