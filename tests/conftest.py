from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

import pytest

from advisor.config import AppConfig, RateLimitPolicy
from advisor.errors import UpstreamError
from advisor.llm import Completion, GroundingSource


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeContentClient:
    """Scripted collaborator: pops one reply (or exception) per call, in order."""

    def __init__(self, replies: List[Any], sources: Optional[List[GroundingSource]] = None) -> None:
        self.replies = list(replies)
        self.sources = sources or []
        self.calls: List[Dict[str, Any]] = []
        self.models = SimpleNamespace(default="default-model", fast="fast-model")

    async def _next(self, grounded: bool, messages: List[Dict[str, str]], options: Dict[str, Any]) -> Completion:
        self.calls.append({"grounded": grounded, "messages": messages, **options})
        if not self.replies:
            raise AssertionError("FakeContentClient ran out of scripted replies")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return Completion(content=reply, sources=list(self.sources) if grounded else [])

    async def generate(self, messages: List[Dict[str, str]], **options: Any) -> Completion:
        return await self._next(False, messages, options)

    async def generate_grounded(self, messages: List[Dict[str, str]], **options: Any) -> Completion:
        return await self._next(True, messages, options)


class FakeTransport:
    """E-mail transport that fails with the scripted status codes, then succeeds."""

    def __init__(self, statuses: Optional[List[Optional[int]]] = None) -> None:
        self.statuses = list(statuses or [])
        self.calls: List[Dict[str, Any]] = []

    async def send(self, payload: Dict[str, Any], *, idempotency_key: str) -> Dict[str, Any]:
        self.calls.append({"payload": payload, "idempotency_key": idempotency_key})
        if self.statuses:
            status = self.statuses.pop(0)
            raise UpstreamError(f"scripted failure {status}", status_code=status)
        return {"id": f"email-{len(self.calls)}"}


async def no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(
        allowed_origins=["*"],
        rate_limits={
            "scan": RateLimitPolicy(
                window_ms=60_000,
                max_requests=3,
                message="Please wait a moment before scanning another website.",
            ),
            "explorer": RateLimitPolicy(window_ms=60_000, max_requests=10),
            "summary": RateLimitPolicy(window_ms=60_000, max_requests=5),
            "report": RateLimitPolicy(window_ms=3_600_000, max_requests=5),
        },
    )


@pytest.fixture
def make_client() -> Callable[..., FakeContentClient]:
    return FakeContentClient


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
