"""FastAPI application: rate-limited streaming endpoints and notification dispatch.

Exposes the website scanner and the three explorer pipelines as
Server-Sent Event streams, plus the chat-summary and scan-report
notification endpoints. Collaborators are injected through `create_app`
so tests can supply fakes.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import aclosing, asynccontextmanager
from typing import Any
from urllib.parse import urlparse

from apscheduler.triggers.interval import IntervalTrigger
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError as PydanticValidationError

from advisor.config import AppConfig, load_config, reload_config
from advisor.dispatch import Dispatcher, ResendTransport, RetryPolicy, Transport
from advisor.errors import RateLimitExceeded, TransportClosed, ValidationError
from advisor.llm import ContentClient
from advisor.notifications import EMAIL_PATTERN, build_report_jobs, build_summary_job
from advisor.pipeline.emitter import SSE_HEADERS, ProgressEmitter
from advisor.pipeline.engine import ContentGenerator, run_stages
from advisor.pipeline.events import format_sse_data
from advisor.pipeline.explorer import PIPELINES
from advisor.ratelimit import RateLimiter, enforce, rate_limit_headers
from advisor.scanner import WebsiteScanner
from advisor.scheduler import SWEEP_JOB_ID, setup_scheduler
from advisor.schemas import ScanReportRequest

logger = logging.getLogger(__name__)

router = APIRouter()


def create_app(
    config: AppConfig | None = None,
    *,
    client: ContentGenerator | None = None,
    transport: Transport | None = None,
    scanner: WebsiteScanner | None = None,
    limiter: RateLimiter | None = None,
    sleep: Callable[[float], Awaitable[Any]] | None = None,
) -> FastAPI:
    """Build the app. Anything not passed in is constructed from `config`."""
    config = config or load_config()
    client = client or ContentClient(config.models)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler = setup_scheduler(app.state.config, app.state.limiter)
        scheduler.start()
        app.state.scheduler = scheduler
        logger.info(
            f"Advisor started (origins={config.allowed_origins}, "
            f"policies={sorted(config.rate_limits)}, model={config.models.default})"
        )
        yield
        scheduler.shutdown(wait=False)
        await app.state.dispatcher.drain(timeout=app.state.config.dispatch.shutdown_timeout_s)
        logger.info("Advisor shutting down")

    app = FastAPI(title="Foremost Advisor", version="0.1.0", lifespan=lifespan)
    app.state.config = config
    app.state.client = client
    app.state.limiter = limiter or RateLimiter(sweep_interval_ms=config.sweep_interval_ms)
    app.state.scanner = scanner or WebsiteScanner(client, config.scanner)
    app.state.dispatcher = Dispatcher(
        transport or ResendTransport(),
        RetryPolicy.from_config(config.dispatch),
        sleep=sleep or asyncio.sleep,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-RateLimit-Remaining", "X-RateLimit-Reset"],
    )
    app.add_exception_handler(RateLimitExceeded, _rate_limited)
    app.add_exception_handler(ValidationError, _invalid_request)
    app.include_router(router)
    return app


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------


async def _rate_limited(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    body = {"error": "Rate limit exceeded"}
    if exc.message:
        body["message"] = exc.message
    return JSONResponse(body, status_code=429, headers=rate_limit_headers(exc.result))


async def _invalid_request(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse({"error": str(exc)}, status_code=400)


async def _json_body(request: Request, error: str = "Invalid request body") -> Any:
    try:
        return await request.json()
    except ValueError:
        raise ValidationError(error) from None


def _is_http_url(url: Any) -> bool:
    if not isinstance(url, str):
        return False
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _event_stream(body) -> StreamingResponse:
    return StreamingResponse(body, media_type="text/event-stream", headers=SSE_HEADERS)


# ---------------------------------------------------------------------------
# Website scan
# ---------------------------------------------------------------------------


@router.post("/api/scan", dependencies=[Depends(enforce("scan"))])
async def scan_website(request: Request):
    """Stream every scanner progress notification as an SSE frame."""
    body = await _json_body(request)
    url = body.get("url") if isinstance(body, dict) else None
    if not url:
        raise ValidationError("Missing url parameter")
    if not _is_http_url(url):
        raise ValidationError("Invalid URL format")

    scanner: WebsiteScanner = request.app.state.scanner
    emitter = ProgressEmitter(request.is_disconnected)
    return _event_stream(scan_frames(scanner, url, emitter))


async def scan_frames(scanner: WebsiteScanner, url: str, emitter: ProgressEmitter):
    """SSE frames for one scan. The scanner is closed as soon as the client leaves."""
    try:
        async with aclosing(scanner.scan(url)) as progress_items:
            async for progress in progress_items:
                await emitter.ensure_open()
                yield format_sse_data(progress.dump())
    except TransportClosed:
        logger.info(f"Client left during scan of {url}")
    except Exception as e:
        logger.error(f"Scan stream failed for {url}: {e}", exc_info=True)
        yield format_sse_data(
            {
                "stage": "error",
                "message": "Analysis failed",
                "detail": str(e) or "Unknown error",
                "progress": 0,
            }
        )


# ---------------------------------------------------------------------------
# Explorer pipelines
# ---------------------------------------------------------------------------


@router.post("/api/explorer/{step}-stream", dependencies=[Depends(enforce("explorer"))])
async def explorer_stream(step: str, request: Request):
    """Run explorer pipeline `step` (step1, step2, step3) as an SSE stream."""
    pipeline = PIPELINES.get(step)
    if pipeline is None:
        raise HTTPException(status_code=404, detail=f"Unknown explorer step '{step}'")

    try:
        body = await request.json()
    except ValueError:
        body = None  # reported in-stream by the pipeline's prepare step

    emitter = ProgressEmitter(request.is_disconnected)
    events = run_stages(pipeline, body, request.app.state.client, emitter)
    return _event_stream(emitter.frames(events))


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


@router.post("/api/chat/send-summary", dependencies=[Depends(enforce("summary"))])
async def send_summary(request: Request):
    """Queue the intake summary e-mail and answer immediately.

    Delivery happens in a tracked background task; its outcome is logged,
    never reported to the caller.
    """
    invalid = "Invalid request format. Messages array and summary are required."
    body = await _json_body(request, invalid)
    if not isinstance(body, dict):
        raise ValidationError(invalid)

    messages, summary = body.get("messages"), body.get("summary")
    if not isinstance(messages, list) or not summary:
        raise ValidationError(invalid)

    try:
        job = build_summary_job(
            messages,
            summary,
            request.app.state.config.dispatch,
            orchestrator_mode=body.get("orchestratorMode"),
            selected_service=body.get("selectedService"),
        )
    except PydanticValidationError as e:
        raise ValidationError(invalid) from e

    request.app.state.dispatcher.submit(job)
    return {"success": True, "message": "Summary email queued for delivery"}


@router.post("/api/scan/report", dependencies=[Depends(enforce("report"))])
async def send_scan_report(request: Request):
    """Send the visitor their report and the team a lead notification, waiting for both."""
    body = await _json_body(request)
    try:
        report = ScanReportRequest.model_validate(body)
    except PydanticValidationError as e:
        raise ValidationError("Invalid request body") from e

    if not EMAIL_PATTERN.match(report.email):
        raise ValidationError("Please enter a valid email address.")

    dispatcher: Dispatcher = request.app.state.dispatcher
    user_job, lead_job = build_report_jobs(
        report.result, report.email, request.app.state.config.dispatch, name=report.name
    )
    user_result, lead_result = await asyncio.gather(
        dispatcher.deliver(user_job), dispatcher.deliver(lead_job)
    )

    if not user_result.delivered:
        logger.error(f"Error sending scan report to user: {user_result.error}")
        return JSONResponse({"error": "Failed to send report. Please try again."}, status_code=502)
    if not lead_result.delivered:
        logger.error(f"Error sending scanner lead notification: {lead_result.error}")

    return {"success": True, "message": "Report sent successfully! Check your inbox."}


# ---------------------------------------------------------------------------
# Operational endpoints
# ---------------------------------------------------------------------------


@router.get("/health")
async def health(request: Request):
    """Liveness check."""
    return {
        "status": "healthy",
        "rate_limit_keys": len(request.app.state.limiter),
        "dispatch_in_flight": request.app.state.dispatcher.in_flight,
    }


@router.get("/config")
async def get_current_config(request: Request):
    """Return current config as JSON. Secrets are never part of it."""
    return request.app.state.config.model_dump()


@router.post("/reload")
async def reload(request: Request):
    """Hot-reload config.yaml; policies and the sweep interval apply immediately."""
    try:
        new_config = reload_config()
        app = request.app
        app.state.config = new_config
        app.state.limiter.sweep_interval_ms = new_config.sweep_interval_ms
        app.state.dispatcher.policy = RetryPolicy.from_config(new_config.dispatch)

        scheduler = getattr(app.state, "scheduler", None)
        if scheduler is not None:
            scheduler.reschedule_job(
                SWEEP_JOB_ID, trigger=IntervalTrigger(seconds=new_config.sweep_interval_ms / 1000)
            )

        return {"status": "reloaded", "policies": sorted(new_config.rate_limits)}
    except Exception as e:
        logger.error(f"Reload failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Reload failed: {e}")
