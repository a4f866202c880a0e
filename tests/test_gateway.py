"""Tests for AnalysisGateway: retry ceiling, timeouts, parsing, admission."""

from __future__ import annotations

import asyncio

import pytest

from src.meetflow.analysis.errors import CapabilityError, ValidationError
from src.meetflow.analysis.gateway import AnalysisGateway, GatewayPolicy
from src.meetflow.analysis.schemas import StageKind
from src.meetflow.analysis.validation import parse_mindmap, parse_tasks
from src.meetflow.config import Settings


STAGE = StageKind.SUMMARIZATION


@pytest.mark.asyncio
async def test_success_on_first_attempt(make_capability, fast_policy):
    capability = make_capability()
    gateway = AnalysisGateway(capability, fast_policy)

    call = await gateway.invoke(STAGE, {"transcript": "A: hi"})

    assert call.attempts == 1
    assert call.value["summary"]
    assert capability.calls[STAGE] == 1


@pytest.mark.asyncio
async def test_transient_failure_retried(make_capability, fast_policy):
    capability = make_capability(failures={STAGE: 2})
    gateway = AnalysisGateway(capability, fast_policy)

    call = await gateway.invoke(STAGE, {})

    assert call.attempts == 3
    assert capability.calls[STAGE] == 3


@pytest.mark.asyncio
async def test_attempt_ceiling_then_stage_scoped_error(make_capability, fast_policy):
    capability = make_capability(failures={STAGE: 99})
    gateway = AnalysisGateway(capability, fast_policy)

    with pytest.raises(CapabilityError) as exc_info:
        await gateway.invoke(STAGE, {})

    assert capability.calls[STAGE] == fast_policy.max_attempts
    assert exc_info.value.stage == STAGE.value
    assert exc_info.value.attempts == fast_policy.max_attempts
    info = exc_info.value.to_info()
    assert info.kind.value == "capability"
    assert "upstream" not in info.message


@pytest.mark.asyncio
async def test_timeout_is_capability_error(make_capability):
    capability = make_capability(delays={STAGE: 0.5})
    policy = GatewayPolicy(
        timeout_seconds=0.05, max_attempts=2, backoff_min_seconds=0, backoff_max_seconds=0
    )
    gateway = AnalysisGateway(capability, policy)

    with pytest.raises(CapabilityError, match="timed out"):
        await gateway.invoke(STAGE, {})
    assert capability.calls[STAGE] == 2


@pytest.mark.asyncio
async def test_per_stage_timeout_override(make_capability):
    capability = make_capability(delays={STAGE: 0.1})
    policy = GatewayPolicy(
        timeout_seconds=0.01,
        timeout_overrides={STAGE: 1.0},
        max_attempts=1,
        backoff_min_seconds=0,
        backoff_max_seconds=0,
    )
    gateway = AnalysisGateway(capability, policy)

    call = await gateway.invoke(STAGE, {})
    assert call.attempts == 1


@pytest.mark.asyncio
async def test_invalid_output_retried_then_validation_error(make_capability, fast_policy):
    capability = make_capability(
        responses={StageKind.MINDMAP_GENERATION: {"label": "root", "children": []}}
    )
    gateway = AnalysisGateway(capability, fast_policy)

    with pytest.raises(ValidationError) as exc_info:
        await gateway.invoke(StageKind.MINDMAP_GENERATION, {"topic": "t"}, parse=parse_mindmap)

    assert capability.calls[StageKind.MINDMAP_GENERATION] == fast_policy.max_attempts
    assert exc_info.value.to_info().kind.value == "validation"


@pytest.mark.asyncio
async def test_parse_applied_to_output(make_capability, fast_policy):
    gateway = AnalysisGateway(make_capability(), fast_policy)

    call = await gateway.invoke(StageKind.TASK_EXTRACTION, {}, parse=parse_tasks)

    assert [d.summary for d in call.value] == [
        "Send revised budget to finance",
        "Schedule hiring review",
    ]


@pytest.mark.asyncio
async def test_global_admission_bound(make_capability):
    capability = make_capability(delays={STAGE: 0.02})
    policy = GatewayPolicy(
        timeout_seconds=1.0,
        max_attempts=1,
        backoff_min_seconds=0,
        backoff_max_seconds=0,
        max_in_flight_global=2,
    )
    gateway = AnalysisGateway(capability, policy)

    await asyncio.gather(*[gateway.invoke(STAGE, {}) for _ in range(6)])

    assert capability.calls[STAGE] == 6
    assert capability.max_in_flight == 2


@pytest.mark.asyncio
async def test_per_call_limiter_bound(make_capability, fast_policy):
    capability = make_capability(delays={STAGE: 0.02})
    gateway = AnalysisGateway(capability, fast_policy)
    limiter = asyncio.Semaphore(1)

    await asyncio.gather(*[gateway.invoke(STAGE, {}, limiter=limiter) for _ in range(3)])

    assert capability.max_in_flight == 1


@pytest.mark.asyncio
async def test_cancellation_not_retried(make_capability, fast_policy):
    capability = make_capability(delays={STAGE: 10})
    gateway = AnalysisGateway(capability, fast_policy)

    task = asyncio.ensure_future(gateway.invoke(STAGE, {}))
    await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert capability.calls[STAGE] == 1


def test_policy_from_settings():
    settings = Settings(
        STAGE_TIMEOUT_SECONDS=30,
        STAGE_TIMEOUT_OVERRIDES={"summarization": 90},
        STAGE_MAX_ATTEMPTS=5,
        MAX_IN_FLIGHT_GLOBAL=8,
    )
    policy = GatewayPolicy.from_settings(settings)

    assert policy.max_attempts == 5
    assert policy.max_in_flight_global == 8
    assert policy.timeout_for(StageKind.SUMMARIZATION) == 90
    assert policy.timeout_for(StageKind.TASK_EXTRACTION) == 30
