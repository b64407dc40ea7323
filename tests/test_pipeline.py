"""Stage runner: ordering, short-circuit, timeouts and cost accrual."""

import asyncio

import pytest

from visionstudio.services.gateway import GatewayError
from visionstudio.workflows.pipeline import Stage, StageOutput, build_pipeline_graph, run_pipeline

pytestmark = pytest.mark.asyncio


def _fixed(cost: int, payload: dict | None = None, calls: list | None = None, name: str = ""):
    async def run(inputs, outputs):
        if calls is not None:
            calls.append(name)
        return StageOutput(payload=payload or {}, cost=cost)

    return run


async def test_stages_run_in_order_and_see_earlier_outputs():
    async def second(inputs, outputs):
        return StageOutput(payload={"echo": outputs["first"]["value"] + inputs["suffix"]}, cost=5)

    result = await run_pipeline(
        [Stage("first", _fixed(10, {"value": "a"})), Stage("second", second)],
        {"suffix": "b"},
    )
    assert result.ok
    assert result.completed == ["first", "second"]
    assert result.outputs["second"] == {"echo": "ab"}
    assert result.total_cost == 15


async def test_failure_short_circuits_later_stages():
    calls: list[str] = []

    async def broken(inputs, outputs):
        calls.append("render")
        raise GatewayError("unavailable", "model overloaded")

    result = await run_pipeline(
        [
            Stage("research", _fixed(40, calls=calls, name="research")),
            Stage("render", broken),
            Stage("polish", _fixed(99, calls=calls, name="polish")),
        ],
        {},
    )
    assert not result.ok
    assert calls == ["research", "render"]
    assert result.failure.stage == "render"
    assert result.failure.reason == "unavailable"
    assert result.failure.message == "model overloaded"
    assert result.total_cost == 40
    assert result.completed == ["research"]


async def test_first_stage_failure_has_zero_cost():
    async def denied(inputs, outputs):
        raise GatewayError("access_denied")

    result = await run_pipeline([Stage("research", denied), Stage("render", _fixed(60))], {})
    assert result.failure.reason == "access_denied"
    assert result.total_cost == 0
    assert result.outputs == {}


async def test_stage_timeout_is_a_failure():
    async def slow(inputs, outputs):
        await asyncio.sleep(5)
        return StageOutput(cost=1)

    result = await run_pipeline([Stage("research", _fixed(40)), Stage("render", slow, timeout=0.05)], {})
    assert result.failure.stage == "render"
    assert result.failure.reason == "timeout"
    assert result.total_cost == 40


async def test_default_timeout_applies_when_stage_has_none():
    async def slow(inputs, outputs):
        await asyncio.sleep(5)
        return StageOutput()

    result = await run_pipeline([Stage("chat", slow)], {}, default_timeout=0.05)
    assert result.failure.reason == "timeout"


async def test_unexpected_exception_reported_as_error():
    async def buggy(inputs, outputs):
        raise KeyError("image_prompt")

    result = await run_pipeline([Stage("render", buggy)], {})
    assert result.failure.reason == "error"
    assert "image_prompt" in result.failure.message


async def test_graph_rejects_empty_and_duplicate_stages():
    with pytest.raises(ValueError):
        build_pipeline_graph([])
    with pytest.raises(ValueError):
        build_pipeline_graph([Stage("chat", _fixed(1)), Stage("chat", _fixed(1))])
