"""Scheduler: periodic housekeeping using APScheduler."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

if TYPE_CHECKING:
    from advisor.config import AppConfig
    from advisor.ratelimit import RateLimiter

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "rate_limit_sweep"


def sweep_rate_limits(limiter: RateLimiter) -> None:
    """Drop expired windows even when no requests arrive to trigger the inline sweep."""
    removed = limiter.sweep()
    if removed:
        logger.info(f"Rate limit sweep removed {removed} expired keys ({len(limiter)} active)")


def setup_scheduler(config: AppConfig, limiter: RateLimiter) -> AsyncIOScheduler:
    """Build the scheduler with the rate-limit sweep job."""
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        sweep_rate_limits,
        trigger=IntervalTrigger(seconds=config.sweep_interval_ms / 1000),
        args=[limiter],
        id=SWEEP_JOB_ID,
        replace_existing=True,
    )
    logger.info(f"Scheduled rate limit sweep every {config.sweep_interval_ms}ms")
    return scheduler
