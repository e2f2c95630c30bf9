"""Error taxonomy shared by the limiter, pipelines and dispatcher."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from advisor.ratelimit import RateLimitResult


class AdvisorError(Exception):
    """Base class for every error this service raises on purpose."""


class ValidationError(AdvisorError):
    """Bad caller input. Surfaced as 400 and never retried."""


class RateLimitExceeded(AdvisorError):
    """The limiter denied the request. Surfaced as 429 with reset metadata."""

    def __init__(self, result: RateLimitResult, message: str | None = None):
        super().__init__(message or "Rate limit exceeded")
        self.result = result
        self.message = message


class UpstreamError(AdvisorError):
    """Failure calling an external collaborator or transport.

    `status_code` is the downstream HTTP status, or None for transport-level
    failures (connection reset, timeout) where no response was received.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        if self.status_code is None:
            return True
        return self.status_code >= 500 or self.status_code == 429


class ParseError(AdvisorError):
    """A collaborator returned output that is not the expected structure."""


class TransportClosed(AdvisorError):
    """The client went away mid-stream. Ends the run without an error event."""
