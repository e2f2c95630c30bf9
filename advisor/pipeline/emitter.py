"""Progress emitter: stamps events, enforces one terminal event, watches the sink."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from advisor.errors import TransportClosed
from advisor.pipeline.events import (
    TERMINAL_TYPES,
    Complete,
    Error,
    PromptSnippet,
    ResponseSnippet,
    StageUpdate,
    format_sse,
)
from advisor.ratelimit import now_ms

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class ProgressEmitter:
    """Builds progress events for one run.

    Each factory method stamps the event at the moment it is called, which
    is the moment the engine yields it. Once a terminal event has been
    built, any further event is a programming error.

    `is_disconnected` reports whether the sink is gone (Starlette's
    `Request.is_disconnected`); `ensure_open` raises TransportClosed once
    it reports the client gone.
    """

    def __init__(
        self,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
        *,
        clock: Callable[[], int] = now_ms,
    ):
        self.is_disconnected = is_disconnected
        self.clock = clock
        self.emitted = 0
        self.closed = False
        self._terminal: str | None = None

    async def ensure_open(self) -> None:
        if not self.closed and self.is_disconnected is not None:
            self.closed = await self.is_disconnected()
        if self.closed:
            raise TransportClosed("Client disconnected")

    def stage_update(self, stage: str, description: str) -> StageUpdate:
        return self._stamp(StageUpdate, stage=stage, stage_description=description)

    def prompt_snippet(self, text: str) -> PromptSnippet:
        return self._stamp(PromptSnippet, prompt_snippet=text)

    def response_snippet(self, text: str) -> ResponseSnippet:
        return self._stamp(ResponseSnippet, response_snippet=text)

    def complete(self, data: Any) -> Complete:
        return self._stamp(Complete, data=data)

    def error(self, message: str) -> Error:
        return self._stamp(Error, error=message)

    def _stamp(self, cls, **fields):
        if self._terminal is not None:
            raise RuntimeError(f"Run already ended with '{self._terminal}'")
        event = cls(timestamp=self.clock(), **fields)
        if event.type in TERMINAL_TYPES:
            self._terminal = event.type
        self.emitted += 1
        return event

    async def frames(self, events: AsyncIterator) -> AsyncIterator[str]:
        """Frame an event iterator as SSE text, ending quietly if the client leaves."""
        try:
            async for event in events:
                yield format_sse(event)
        except TransportClosed:
            logger.info(f"Stream closed by client after {self.emitted} events")
