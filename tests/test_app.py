"""End-to-end tests for the HTTP surface, with every collaborator faked."""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import pytest
from conftest import FakeContentClient, FakeTransport, no_sleep
from fastapi.testclient import TestClient

from advisor.app import create_app, scan_frames
from advisor.pipeline.emitter import ProgressEmitter
from advisor.pipeline.events import EventStreamDecoder
from advisor.schemas import ScanProgress, ScanResult

SCAN_RESULT = ScanResult(url="https://shop.example", business_name="Shop Co", industry="Retail", summary="Great fit.")


class FakeScanner:
    def __init__(self) -> None:
        self.urls: list[str] = []

    async def scan(self, url: str):
        self.urls.append(url)
        yield ScanProgress(stage="initialising", message="Preparing", progress=5)
        yield ScanProgress(stage="analysing", message="Thinking", progress=65)
        yield ScanProgress(stage="complete", message="Done", progress=100, data=SCAN_RESULT)


def _events(text: str) -> list:
    decoder = EventStreamDecoder()
    return decoder.feed(text) + decoder.close()


@pytest.fixture
def scanner() -> FakeScanner:
    return FakeScanner()


@pytest.fixture
def build(app_config, transport, scanner):
    def _build(replies=None, **overrides):
        options = {
            "client": FakeContentClient(replies or []),
            "transport": transport,
            "scanner": scanner,
            "sleep": no_sleep,
        }
        options.update(overrides)
        return create_app(app_config, **options)

    return _build


def test_scan_streams_progress_then_rate_limits(build, scanner) -> None:
    with TestClient(build()) as client:
        for _ in range(3):
            response = client.post("/api/scan", json={"url": "https://shop.example"})
            assert response.status_code == 200
            assert response.headers["content-type"].startswith("text/event-stream")
            assert response.headers["cache-control"] == "no-cache, no-transform"

            events = _events(response.text)
            assert [e["stage"] for e in events] == ["initialising", "analysing", "complete"]
            assert events[-1]["data"]["businessName"] == "Shop Co"

        blocked = client.post("/api/scan", json={"url": "https://shop.example"})

    assert blocked.status_code == 429
    assert blocked.json() == {
        "error": "Rate limit exceeded",
        "message": "Please wait a moment before scanning another website.",
    }
    assert blocked.headers["X-RateLimit-Remaining"] == "0"
    assert int(blocked.headers["X-RateLimit-Reset"]) > 0
    assert scanner.urls == ["https://shop.example"] * 3


def test_scan_limits_are_per_client_address(build) -> None:
    with TestClient(build()) as client:
        for _ in range(3):
            client.post("/api/scan", json={"url": "https://a.example"}, headers={"x-forwarded-for": "203.0.113.1"})

        other = client.post("/api/scan", json={"url": "https://a.example"}, headers={"x-forwarded-for": "203.0.113.2"})
        same = client.post("/api/scan", json={"url": "https://a.example"}, headers={"x-forwarded-for": "203.0.113.1"})

    assert other.status_code == 200
    assert same.status_code == 429


@pytest.mark.parametrize(
    "body, error",
    [
        ({}, "Missing url parameter"),
        ({"url": "ftp://shop.example"}, "Invalid URL format"),
        ({"url": "not a url"}, "Invalid URL format"),
    ],
)
def test_scan_rejects_bad_input(build, scanner, body, error) -> None:
    with TestClient(build()) as client:
        response = client.post("/api/scan", json=body)

    assert response.status_code == 400
    assert response.json() == {"error": error}
    assert scanner.urls == []


def test_scan_rejects_malformed_json(build) -> None:
    with TestClient(build()) as client:
        response = client.post("/api/scan", content=b"{not json", headers={"content-type": "application/json"})

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid request body"}


def test_explorer_step3_streams_events(build) -> None:
    reply = json.dumps({"signals": [], "disclaimer": "None verified."})
    with TestClient(build([reply])) as client:
        response = client.post("/api/explorer/step3-stream", json={"industry": "Retail"})

    assert response.status_code == 200
    events = _events(response.text)
    assert [e["type"] for e in events] == ["stage_update", "prompt_snippet", "response_snippet", "complete"]
    assert events[0]["stage"] == "Market Intelligence"
    assert events[-1]["data"]["marketSignals"]["disclaimer"] == "None verified."
    assert all(isinstance(e["timestamp"], int) for e in events)


def test_explorer_bad_body_becomes_error_event(build) -> None:
    with TestClient(build()) as client:
        response = client.post(
            "/api/explorer/step1-stream", content=b"oops", headers={"content-type": "application/json"}
        )

    assert response.status_code == 200
    events = _events(response.text)
    assert [e["type"] for e in events] == ["error"]
    assert events[0]["error"] == "Invalid request body"


def test_send_summary_queues_and_delivers(build, transport) -> None:
    body = {
        "messages": [{"role": "user", "content": "We need a chatbot"}],
        "summary": "Budget: 10k",
        "orchestratorMode": "services",
        "selectedService": "AI Chatbots",
    }
    with TestClient(build()) as client:
        response = client.post("/api/chat/send-summary", json=body)
        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Summary email queued for delivery"}

    # Leaving the context drains the dispatcher.
    assert len(transport.calls) == 1
    call = transport.calls[0]
    assert call["payload"]["subject"] == "New Chat Inquiry - AI Chatbots"
    assert call["idempotency_key"].startswith("chat-summary-")


def test_send_summary_retries_in_background(build) -> None:
    flaky = FakeTransport([503, None])
    with TestClient(build(transport=flaky)) as client:
        response = client.post("/api/chat/send-summary", json={"messages": [], "summary": "Hi"})
        assert response.status_code == 200

    assert len(flaky.calls) == 3
    assert len({c["idempotency_key"] for c in flaky.calls}) == 1


def test_send_summary_requires_messages(build, transport) -> None:
    with TestClient(build()) as client:
        response = client.post("/api/chat/send-summary", json={"summary": "Hi"})

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid request format. Messages array and summary are required."}
    assert transport.calls == []


def test_scan_report_sends_both_emails(build, transport) -> None:
    body = {"result": SCAN_RESULT.dump(), "email": "ada@example.com", "name": "Ada"}
    with TestClient(build()) as client:
        response = client.post("/api/scan/report", json=body)

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Report sent successfully! Check your inbox."}
    recipients = sorted(c["payload"]["to"][0] for c in transport.calls)
    assert recipients == ["ada@example.com", "office@foremost.ai"]


def test_scan_report_user_failure_is_502(build) -> None:
    rejecting = FakeTransport([422, 422])
    body = {"result": SCAN_RESULT.dump(), "email": "ada@example.com"}
    with TestClient(build(transport=rejecting)) as client:
        response = client.post("/api/scan/report", json=body)

    assert response.status_code == 502
    assert response.json() == {"error": "Failed to send report. Please try again."}


def test_scan_report_rejects_bad_email(build, transport) -> None:
    body = {"result": SCAN_RESULT.dump(), "email": "nope"}
    with TestClient(build()) as client:
        response = client.post("/api/scan/report", json=body)

    assert response.status_code == 400
    assert transport.calls == []


def test_health_and_config(build) -> None:
    with TestClient(build()) as client:
        client.post("/api/scan", json={"url": "https://shop.example"})
        health = client.get("/health").json()
        config = client.get("/config").json()

    assert health["status"] == "healthy"
    assert health["rate_limit_keys"] == 1
    assert config["rate_limits"]["scan"]["max_requests"] == 3


def test_reload_applies_new_policies_and_sweep_interval(build, tmp_path, monkeypatch) -> None:
    from advisor import config as config_module
    from advisor.scheduler import SWEEP_JOB_ID

    path = tmp_path / "config.yaml"
    path.write_text(
        """
sweep_interval_ms: 5000
rate_limits:
  scan: {window_ms: 60000, max_requests: 1, message: "Slow down."}
  explorer: {window_ms: 60000, max_requests: 10}
  summary: {window_ms: 60000, max_requests: 5}
  report: {window_ms: 3600000, max_requests: 5}
"""
    )
    monkeypatch.setattr(config_module, "_config_path", None)
    monkeypatch.setenv("ADVISOR_CONFIG", str(path))

    app = build()
    with TestClient(app) as client:
        response = client.post("/reload")
        assert response.status_code == 200
        assert response.json() == {"status": "reloaded", "policies": ["explorer", "report", "scan", "summary"]}

        assert client.post("/api/scan", json={"url": "https://shop.example"}).status_code == 200
        blocked = client.post("/api/scan", json={"url": "https://shop.example"})

        job = app.state.scheduler.get_job(SWEEP_JOB_ID)
        assert job.trigger.interval == timedelta(seconds=5)

    assert blocked.status_code == 429
    assert blocked.json()["message"] == "Slow down."
    assert app.state.limiter.sweep_interval_ms == 5000


def test_reload_failure_keeps_running_config(build, tmp_path, monkeypatch, app_config) -> None:
    from advisor import config as config_module

    monkeypatch.setattr(config_module, "_config_path", None)
    monkeypatch.setenv("ADVISOR_CONFIG", str(tmp_path / "missing.yaml"))

    app = build()
    with TestClient(app) as client:
        response = client.post("/reload")

    assert response.status_code == 500
    assert app.state.config is app_config


def test_unknown_explorer_step_is_404(build) -> None:
    with TestClient(build()) as client:
        response = client.post("/api/explorer/step9-stream", json={})

    assert response.status_code == 404


def test_explorer_non_string_url_is_reported(build) -> None:
    with TestClient(build()) as client:
        response = client.post("/api/explorer/step1-stream", json={"companyUrl": 123})

    events = _events(response.text)
    assert [(e["type"], e["error"]) for e in events] == [("error", "Company URL is required")]


def test_scan_closes_scanner_when_client_leaves() -> None:
    class TrackingScanner:
        closed = False

        async def scan(self, url):
            try:
                yield ScanProgress(stage="initialising", message="Preparing", progress=5)
                yield ScanProgress(stage="discovering", message="Looking", progress=15)
                yield ScanProgress(stage="complete", message="Done", progress=100)
            finally:
                TrackingScanner.closed = True

    checks = {"count": 0}

    async def is_disconnected() -> bool:
        checks["count"] += 1
        return checks["count"] > 1

    async def go():
        frames = scan_frames(TrackingScanner(), "https://shop.example", ProgressEmitter(is_disconnected))
        collected = [frame async for frame in frames]
        return collected, TrackingScanner.closed

    frames, closed = asyncio.run(go())

    assert [e["stage"] for e in _events("".join(frames))] == ["initialising"]
    assert closed is True
