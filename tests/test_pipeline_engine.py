"""Tests for the stage engine, progress emitter and SSE framing."""

from __future__ import annotations

import asyncio
import json
from typing import Any, List

import pytest

from advisor.errors import ParseError, UpstreamError, ValidationError
from advisor.llm import Completion, parse_json
from advisor.pipeline.emitter import ProgressEmitter
from advisor.pipeline.engine import Pipeline, PipelineRun, RunState, Stage, StageRequest, run_stages
from advisor.pipeline.events import EventStreamDecoder, parse_event


def _stage(n: int, grounded: bool = False) -> Stage:
    def build(run: PipelineRun) -> StageRequest:
        previous = run.context.get("outputs", [])
        return StageRequest(
            messages=[{"role": "user", "content": f"stage {n} after {previous}"}],
            grounded=grounded,
        )

    def parse(run: PipelineRun, completion: Completion) -> None:
        run.context.setdefault("outputs", []).append(parse_json(completion.content)["value"])

    return Stage(name=f"Stage {n}", description=f"Step number {n}", build_request=build, parse_result=parse)


def _prepare(run: PipelineRun, body: Any) -> None:
    if not isinstance(body, dict) or "seed" not in body:
        raise ValidationError("Seed is required")
    run.context["seed"] = body["seed"]


def _three_stage_pipeline() -> Pipeline:
    return Pipeline(
        name="demo",
        stages=[_stage(1), _stage(2, grounded=True), _stage(3)],
        prepare=_prepare,
        finish=lambda run: {"outputs": run.context["outputs"]},
    )


def _collect(pipeline: Pipeline, body: Any, client, emitter: ProgressEmitter | None = None) -> List[Any]:
    emitter = emitter or ProgressEmitter()

    async def go() -> List[Any]:
        return [event async for event in run_stages(pipeline, body, client, emitter)]

    return asyncio.run(go())


def test_successful_run_ends_with_single_complete(make_client) -> None:
    client = make_client(['{"value": 1}', '```json\n{"value": 2}\n```', '{"value": 3}'])

    events = _collect(_three_stage_pipeline(), {"seed": "x"}, client)

    assert [e.type for e in events] == [
        "stage_update", "prompt_snippet", "response_snippet",
        "stage_update", "prompt_snippet", "response_snippet",
        "stage_update", "prompt_snippet", "response_snippet",
        "complete",
    ]
    assert [e.type for e in events].count("complete") == 1
    assert events[-1].data == {"outputs": [1, 2, 3]}
    assert [e.stage for e in events if e.type == "stage_update"] == ["Stage 1", "Stage 2", "Stage 3"]
    # Stage n+1 is built from stage n's merged result.
    assert client.calls[2]["messages"][0]["content"] == "stage 3 after [1, 2]"
    assert [c["grounded"] for c in client.calls] == [False, True, False]


def test_failing_collaborator_stops_pipeline(make_client) -> None:
    client = make_client(['{"value": 1}', UpstreamError("Model API error: 503"), '{"value": 3}'])

    events = _collect(_three_stage_pipeline(), {"seed": "x"}, client)

    assert [e.type for e in events] == [
        "stage_update", "prompt_snippet", "response_snippet",
        "stage_update", "prompt_snippet",
        "error",
    ]
    assert events[-1].error == "Model API error: 503"
    assert len(client.calls) == 2
    assert len(client.replies) == 1  # stage 3 never invoked


def test_malformed_json_becomes_error_event(make_client) -> None:
    client = make_client(["this is not json"])

    events = _collect(_three_stage_pipeline(), {"seed": "x"}, client)

    assert [e.type for e in events] == ["stage_update", "prompt_snippet", "response_snippet", "error"]
    assert events[-1].error == "Failed to parse AI response as JSON"


def test_missing_input_fails_from_pending(make_client) -> None:
    client = make_client([])

    events = _collect(_three_stage_pipeline(), {}, client)

    assert [e.type for e in events] == ["error"]
    assert events[0].error == "Seed is required"
    assert client.calls == []


def test_error_without_message_uses_fallback(make_client) -> None:
    client = make_client([RuntimeError()])
    pipeline = Pipeline(
        name="quiet",
        stages=[_stage(1)],
        prepare=_prepare,
        finish=lambda run: {},
        fallback_error="Market intelligence failed",
    )

    events = _collect(pipeline, {"seed": "x"}, client)

    assert events[-1].type == "error"
    assert events[-1].error == "Market intelligence failed"


def test_closed_sink_abandons_remaining_stages(make_client) -> None:
    client = make_client(['{"value": 1}', '{"value": 2}', '{"value": 3}'])
    checks = {"count": 0}

    async def is_disconnected() -> bool:
        # open for prepare, stage 1 start and stage 1 response; closed afterwards
        checks["count"] += 1
        return checks["count"] > 3

    events = _collect(_three_stage_pipeline(), {"seed": "x"}, client, ProgressEmitter(is_disconnected))

    assert [e.type for e in events] == ["stage_update", "prompt_snippet", "response_snippet"]
    assert len(client.calls) == 1


def test_events_are_stamped_at_emission(make_client) -> None:
    ticks = iter(range(1000, 2000))
    emitter = ProgressEmitter(clock=lambda: next(ticks))
    client = make_client(['{"value": 1}', '{"value": 2}', '{"value": 3}'])

    events = _collect(_three_stage_pipeline(), {"seed": "x"}, client, emitter)

    stamps = [e.timestamp for e in events]
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == len(stamps)


def test_emitter_refuses_events_after_terminal() -> None:
    emitter = ProgressEmitter()
    emitter.complete({"ok": True})

    with pytest.raises(RuntimeError):
        emitter.error("late")


def test_run_state_machine_terminal_states() -> None:
    run = PipelineRun(pipeline="demo")
    assert run.state is RunState.PENDING

    run.enter_stage("one")
    run.enter_stage("two")
    run.complete()

    assert run.state is RunState.COMPLETE
    assert run.completed_stages == ["one", "two"]
    with pytest.raises(RuntimeError):
        run.fail()
    with pytest.raises(RuntimeError):
        run.enter_stage("three")

    failed = PipelineRun(pipeline="demo")
    failed.fail()
    assert failed.finished
    with pytest.raises(RuntimeError):
        failed.complete()


def test_fenced_json_parses_like_plain_json() -> None:
    payload = {"priorities": [{"priority": "Grow", "confidence": "high"}]}
    plain = json.dumps(payload)

    assert parse_json(f"```json\n{plain}\n```") == parse_json(plain) == payload
    assert parse_json(f"```\n{plain}\n```") == payload
    assert parse_json(f"  ```JSON {plain}```  ") == payload


def test_parse_json_raises_typed_error() -> None:
    with pytest.raises(ParseError):
        parse_json("```json\n{not json}\n```")


def test_sse_frames_survive_chunked_delivery(make_client) -> None:
    client = make_client(['{"value": 1}', '{"value": 2}', '{"value": 3}'])
    emitter = ProgressEmitter()

    async def framed() -> str:
        events = run_stages(_three_stage_pipeline(), {"seed": "x"}, client, emitter)
        return "".join([frame async for frame in emitter.frames(events)])

    text = asyncio.run(framed())
    assert text.count("data: ") == 10

    decoder = EventStreamDecoder()
    decoded = []
    for i in range(0, len(text), 7):
        decoded.extend(decoder.feed(text[i : i + 7]))
    decoded.extend(decoder.close())

    assert len(decoded) == 10
    assert decoded[0]["type"] == "stage_update"
    assert decoded[0]["stageDescription"] == "Step number 1"
    assert decoded[-1] == {"type": "complete", "data": {"outputs": [1, 2, 3]}, "timestamp": decoded[-1]["timestamp"]}
    assert parse_event(decoded[1]).type == "prompt_snippet"


class HangingClient:
    """Collaborator whose first call never returns until cancelled."""

    def __init__(self) -> None:
        self.calls = 0
        self.started = asyncio.Event()

    async def _hang(self, *_args, **_options) -> Completion:
        self.calls += 1
        self.started.set()
        await asyncio.Event().wait()
        raise AssertionError("unreachable")

    generate = _hang
    generate_grounded = _hang


def test_cancellation_propagates_without_error_event() -> None:
    client = HangingClient()

    async def go() -> List[Any]:
        events: List[Any] = []

        async def consume() -> None:
            async for event in run_stages(_three_stage_pipeline(), {"seed": "x"}, client, ProgressEmitter()):
                events.append(event)

        task = asyncio.create_task(consume())
        await client.started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return events

    events = asyncio.run(go())

    assert [e.type for e in events] == ["stage_update", "prompt_snippet"]
    assert client.calls == 1
