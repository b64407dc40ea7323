"""Sequential stage runner built on a langgraph StateGraph.

One node per stage, with a conditional edge after each node that either
continues to the next stage or ends the run on failure. Stages see the
outputs of every earlier stage and report their own cost. Failed stages
are never retried.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, TypedDict

from langgraph.graph import END, START, StateGraph
from pydantic import BaseModel, Field

from visionstudio.core.logging import get_logger
from visionstudio.services.gateway import GatewayError

log = get_logger(__name__)

FailureReason = Literal[
    "rate_limited", "access_denied", "unavailable", "invalid_response", "bad_request", "timeout", "error"
]


class StageOutput(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)
    cost: int = 0


class StageFailure(BaseModel):
    stage: str
    reason: FailureReason
    message: str = ""


class PipelineResult(BaseModel):
    outputs: dict[str, dict[str, Any]] = Field(default_factory=dict)
    total_cost: int = 0
    failure: StageFailure | None = None
    completed: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failure is None


StageFn = Callable[[dict[str, Any], dict[str, dict[str, Any]]], Awaitable[StageOutput]]


@dataclass(frozen=True)
class Stage:
    """`run(inputs, outputs_so_far)` performs one gateway call."""

    name: str
    run: StageFn
    timeout: float | None = None


class PipelineState(TypedDict):
    inputs: dict[str, Any]
    outputs: dict[str, dict[str, Any]]
    completed: list[str]
    cost: int
    failure: dict[str, Any] | None


def _stage_node(stage: Stage, default_timeout: float | None):
    timeout = stage.timeout if stage.timeout is not None else default_timeout

    async def node(state: PipelineState) -> dict:
        try:
            out = await asyncio.wait_for(stage.run(state["inputs"], state["outputs"]), timeout=timeout)
        except asyncio.TimeoutError:
            failure = StageFailure(stage=stage.name, reason="timeout", message=f"exceeded {timeout}s")
        except GatewayError as e:
            failure = StageFailure(stage=stage.name, reason=e.kind, message=e.message)
        except Exception as e:
            log.exception("pipeline_stage_error", stage=stage.name)
            failure = StageFailure(stage=stage.name, reason="error", message=str(e))
        else:
            return {
                "outputs": {**state["outputs"], stage.name: out.payload},
                "completed": [*state["completed"], stage.name],
                "cost": state["cost"] + out.cost,
            }
        log.warning(
            "pipeline_stage_failed",
            stage=failure.stage,
            reason=failure.reason,
            accrued_cost=state["cost"],
        )
        return {"failure": failure.model_dump()}

    return node


def _route(next_node: str):
    def route(state: PipelineState) -> str:
        return END if state.get("failure") else next_node

    return route


def build_pipeline_graph(stages: list[Stage], default_timeout: float | None = None):
    if not stages:
        raise ValueError("A pipeline needs at least one stage")
    names = [s.name for s in stages]
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate stage names: {names}")
    builder = StateGraph(PipelineState)
    for stage in stages:
        builder.add_node(stage.name, _stage_node(stage, default_timeout))
    builder.add_edge(START, stages[0].name)
    for current, following in zip(stages, stages[1:]):
        builder.add_conditional_edges(current.name, _route(following.name), [following.name, END])
    builder.add_edge(stages[-1].name, END)
    return builder.compile()


async def run_pipeline(
    stages: list[Stage],
    inputs: dict[str, Any],
    default_timeout: float | None = None,
) -> PipelineResult:
    """Run stages strictly in order; returns accrued cost and the first failure, if any."""
    graph = build_pipeline_graph(stages, default_timeout)
    initial: PipelineState = {"inputs": inputs, "outputs": {}, "completed": [], "cost": 0, "failure": None}
    state = await graph.ainvoke(initial)
    failure = state.get("failure")
    return PipelineResult(
        outputs=state["outputs"],
        total_cost=state["cost"],
        failure=StageFailure(**failure) if failure else None,
        completed=state["completed"],
    )


class ArtifactDraft(BaseModel):
    """Binary deliverable produced by a successful run, not yet stored."""

    data: bytes
    content_type: str = "image/png"
    prompt: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


@dataclass
class ActionPlan:
    """Everything the orchestrator needs to meter one user action.

    `prepare` runs after access checks and before any stage; it may add to
    `inputs` (e.g. load a source image or chat history). `artifact` turns the
    stage outputs into the deliverable for artifact actions. `record` runs
    after the charge and returns extra fields for the caller (chat actions
    append their messages there).
    """

    feature: str
    label: str
    stages: list[Stage]
    inputs: dict[str, Any]
    prepare: Callable[[Any, dict[str, Any]], Awaitable[None]] | None = None
    artifact: Callable[[dict[str, dict[str, Any]]], ArtifactDraft] | None = None
    record: Callable[[Any, dict[str, Any], dict[str, dict[str, Any]]], Awaitable[dict[str, Any]]] | None = None
