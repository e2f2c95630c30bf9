"""Retrying notification dispatcher.

Delivers one e-mail per `DispatchJob` with bounded exponential backoff.
Every attempt carries the job's idempotency key so the provider can
collapse a retry whose predecessor actually succeeded. Jobs submitted in
the background are tracked so shutdown can wait for them.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from advisor.config import DispatchConfig
from advisor.errors import UpstreamError
from advisor.ratelimit import now_ms

logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000
IDEMPOTENCY_HEADER = "Idempotency-Key"
RESEND_URL = "https://api.resend.com/emails"


def content_hash(content: Any) -> str:
    canonical = json.dumps(content, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()[:16]


def idempotency_key(prefix: str, content: Any, now: int | None = None) -> str:
    """`{prefix}-{hash}-{hour}`: identical content within one clock hour maps to one key."""
    hour_window = (now_ms() if now is None else now) // HOUR_MS
    return f"{prefix}-{content_hash(content)}-{hour_window}"


@dataclass
class DispatchJob:
    idempotency_key: str
    payload: dict[str, Any]
    attempt: int = 0
    label: str = "notification"


@dataclass
class DispatchResult:
    delivered: bool
    attempts: int
    error: str | None = None
    response: dict[str, Any] | None = None


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    jitter_ms: int = 1000

    @classmethod
    def from_config(cls, config: DispatchConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            base_delay_ms=config.base_delay_ms,
            max_delay_ms=config.max_delay_ms,
            jitter_ms=config.jitter_ms,
        )

    def delay_seconds(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        """Backoff after failed attempt number `attempt` (1-based). Jitter is added after the cap."""
        capped = min(self.base_delay_ms * 2 ** (attempt - 1), self.max_delay_ms)
        return (capped + rand() * self.jitter_ms) / 1000


class Transport(Protocol):
    async def send(self, payload: dict[str, Any], *, idempotency_key: str) -> dict[str, Any]: ...


class ResendTransport:
    """Posts e-mail to the Resend API.

    Docs: https://resend.com/docs/api-reference/emails/send-email
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        timeout: float = 15.0,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key or os.environ.get("RESEND_API_KEY")
        self.timeout = timeout
        self.http_transport = http_transport

    async def send(self, payload: dict[str, Any], *, idempotency_key: str) -> dict[str, Any]:
        if not self.api_key:
            # Same status Resend answers with when the key is missing; never worth retrying.
            raise UpstreamError("RESEND_API_KEY environment variable is not set", status_code=401)

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            IDEMPOTENCY_HEADER: idempotency_key,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.http_transport) as client:
                response = await client.post(RESEND_URL, json=payload, headers=headers)
        except httpx.TransportError as exc:
            raise UpstreamError(f"Resend request failed: {exc}") from exc

        if response.status_code >= 400:
            raise UpstreamError(
                f"Resend API error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        return response.json()


class Dispatcher:
    """Delivers jobs with retry; `submit` runs delivery as a tracked background task."""

    def __init__(
        self,
        transport: Transport,
        policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        self.transport = transport
        self.policy = policy or RetryPolicy()
        self.sleep = sleep
        self.rand = rand
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def deliver(self, job: DispatchJob) -> DispatchResult:
        """Attempt delivery until success, a non-retryable failure, or exhaustion. Never raises."""
        last_error = "Max retries exceeded"

        while job.attempt < self.policy.max_attempts:
            job.attempt += 1
            try:
                response = await self.transport.send(job.payload, idempotency_key=job.idempotency_key)
            except UpstreamError as exc:
                last_error, retryable = str(exc), exc.retryable
            except Exception as exc:
                logger.error(
                    f"Unexpected error delivering {job.label} (attempt {job.attempt}): {exc}",
                    exc_info=True,
                )
                last_error, retryable = str(exc), True
            else:
                logger.info(
                    f"Delivered {job.label} key={job.idempotency_key} attempt={job.attempt}"
                )
                return DispatchResult(delivered=True, attempts=job.attempt, response=response)

            if not retryable:
                logger.error(f"Non-retryable failure delivering {job.label}: {last_error}")
                return DispatchResult(delivered=False, attempts=job.attempt, error=last_error)

            if job.attempt < self.policy.max_attempts:
                delay = self.policy.delay_seconds(job.attempt, self.rand)
                logger.warning(
                    f"Delivery of {job.label} failed (attempt {job.attempt}/"
                    f"{self.policy.max_attempts}), retrying in {delay:.2f}s: {last_error}"
                )
                await self.sleep(delay)

        logger.error(
            f"Giving up on {job.label} key={job.idempotency_key} after {job.attempt} attempts: {last_error}"
        )
        return DispatchResult(delivered=False, attempts=job.attempt, error=last_error)

    def submit(self, job: DispatchJob) -> asyncio.Task:
        """Schedule delivery outside the request; the task survives client disconnects."""
        task = asyncio.get_running_loop().create_task(
            self._run(job), name=f"dispatch:{job.idempotency_key}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(f"Queued {job.label} key={job.idempotency_key}")
        return task

    async def _run(self, job: DispatchJob) -> DispatchResult | None:
        try:
            return await self.deliver(job)
        except Exception as e:
            logger.error(f"Background delivery of {job.label} crashed: {e}", exc_info=True)
            return None

    async def drain(self, timeout: float | None = None) -> int:
        """Wait for in-flight jobs. Returns how many are still pending after `timeout`."""
        if not self._tasks:
            return 0
        logger.info(f"Waiting for {len(self._tasks)} in-flight dispatch jobs")
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning(f"{len(pending)} dispatch jobs still running at shutdown")
        return len(pending)
