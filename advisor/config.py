"""Configuration loader: reads config.yaml, validates with Pydantic.

Holds rate-limit policies, model selection, dispatcher retry policy and
scanner settings. Secrets never live in the file; they come from the
environment (ANTHROPIC_API_KEY, TAVILY_API_KEY, RESEND_API_KEY).
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# Route purpose -> rate-limit policy name. Every name must be configured.
REQUIRED_POLICIES = ("scan", "explorer", "summary", "report")


class RateLimitPolicy(BaseModel):
    """A fixed window: at most `max_requests` calls per `window_ms`."""

    window_ms: int = Field(gt=0)
    max_requests: int = Field(gt=0)
    message: str | None = None


class ModelConfig(BaseModel):
    default: str = "claude-sonnet-4-20250514"
    fast: str = "claude-3-5-haiku-20241022"
    max_retries: int = Field(default=3, ge=0)
    search_results: int = Field(default=5, gt=0)


class DispatchConfig(BaseModel):
    """Retry policy and addressing for outbound notification e-mail."""

    max_attempts: int = Field(default=3, gt=0)
    base_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=30000, ge=0)
    jitter_ms: int = Field(default=1000, ge=0)
    from_email: str = "hello@foremost.ai"
    reply_to: str | None = None
    contact_email: str = "office@foremost.ai"
    shutdown_timeout_s: float = 30.0


class ScannerConfig(BaseModel):
    max_pages: int = Field(default=8, gt=0)
    fetch_timeout_s: float = 10.0
    sitemap_timeout_s: float = 5.0
    user_agent: str = "Foremost-AI-Scanner/1.0 (AI Opportunity Analysis)"


class AppConfig(BaseModel):
    """Top-level service configuration."""

    allowed_origins: list[str] = ["*"]
    sweep_interval_ms: int = Field(default=60000, gt=0)
    rate_limits: dict[str, RateLimitPolicy]
    models: ModelConfig = ModelConfig()
    dispatch: DispatchConfig = DispatchConfig()
    scanner: ScannerConfig = ScannerConfig()

    @field_validator("rate_limits")
    @classmethod
    def must_define_route_policies(
        cls, v: dict[str, RateLimitPolicy]
    ) -> dict[str, RateLimitPolicy]:
        missing = [name for name in REQUIRED_POLICIES if name not in v]
        if missing:
            raise ValueError(
                f"Missing rate limit policies: {missing}. "
                f"Configured: {sorted(v)}"
            )
        return v

    def get_policy(self, purpose: str) -> RateLimitPolicy:
        """Return the rate-limit policy for a route purpose. Raises ValueError if unknown."""
        try:
            return self.rate_limits[purpose]
        except KeyError:
            raise ValueError(
                f"Rate limit policy '{purpose}' not found. "
                f"Available: {sorted(self.rate_limits)}"
            ) from None


# ---------------------------------------------------------------------------
# Config file location
# ---------------------------------------------------------------------------

# Set by an explicit load_config(path); otherwise $ADVISOR_CONFIG, then config.yaml.
_config_path: str | None = None


def config_file_path() -> Path:
    return Path(_config_path or os.environ.get("ADVISOR_CONFIG", "config.yaml"))


def load_config(path: str | None = None) -> AppConfig:
    """Read config.yaml from disk and validate it."""
    global _config_path
    if path is not None:
        _config_path = path

    config_file = config_file_path()
    if not config_file.exists():
        raise FileNotFoundError(f"Config file not found: {config_file.resolve()}")

    raw = yaml.safe_load(config_file.read_text()) or {}
    config = AppConfig(**raw)

    logger.info(
        f"Loaded config from {config_file}: policies={sorted(config.rate_limits)}, "
        f"model={config.models.default}"
    )
    return config


def reload_config() -> AppConfig:
    """Re-read config from disk. Called by /reload endpoint."""
    logger.info(f"Reloading config from {config_file_path()}")
    return load_config()
