"""Analysis capability gateway -- the single seam to AI-backed stages.

Every stage invocation goes through AnalysisGateway.invoke(), which
applies:
- Admission control: a process-wide semaphore plus an optional
  per-meeting semaphore bound the number of in-flight capability calls.
- A per-stage timeout on each attempt.
- Retry with exponential backoff (tenacity) up to a fixed attempt
  ceiling, then a stage-scoped CapabilityError.
- Output parsing: an optional parser turns the raw payload into domain
  objects; invariant violations raise ValidationError and are retried
  like any other capability failure.

Cancellation (asyncio.CancelledError) is never retried and propagates
immediately from the pending capability call.

The capability itself is any object satisfying AnalysisCapability, so
tests substitute a deterministic stub.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Any, Generic, Protocol, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.meetflow.analysis.errors import CapabilityError
from src.meetflow.analysis.schemas import StageKind
from src.meetflow.config import Settings, get_settings

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class AnalysisCapability(Protocol):
    """Whatever computes a stage's answer (LLM call, graph, retrieval...)."""

    async def run(self, stage: StageKind, payload: dict[str, Any]) -> Any: ...


@dataclass(frozen=True)
class GatewayPolicy:
    """Timeout, retry and admission limits for capability calls."""

    timeout_seconds: float = 60.0
    timeout_overrides: dict[StageKind, float] = field(default_factory=dict)
    max_attempts: int = 3
    backoff_min_seconds: float = 1.0
    backoff_max_seconds: float = 10.0
    max_in_flight_global: int = 16

    def timeout_for(self, stage: StageKind) -> float:
        return self.timeout_overrides.get(stage, self.timeout_seconds)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> GatewayPolicy:
        settings = settings or get_settings()
        return cls(
            timeout_seconds=settings.STAGE_TIMEOUT_SECONDS,
            timeout_overrides={
                StageKind(kind): float(seconds)
                for kind, seconds in settings.STAGE_TIMEOUT_OVERRIDES.items()
            },
            max_attempts=settings.STAGE_MAX_ATTEMPTS,
            backoff_min_seconds=settings.STAGE_BACKOFF_MIN_SECONDS,
            backoff_max_seconds=settings.STAGE_BACKOFF_MAX_SECONDS,
            max_in_flight_global=settings.MAX_IN_FLIGHT_GLOBAL,
        )


@dataclass
class Invocation(Generic[T]):
    """Successful gateway call: parsed value plus attempts used."""

    value: T
    attempts: int


class AnalysisGateway:
    """Uniform, bounded invocation of analysis stages.

    Args:
        capability: The external analysis implementation.
        policy: Timeout/retry/admission limits. Defaults to settings.
    """

    def __init__(
        self,
        capability: AnalysisCapability,
        policy: GatewayPolicy | None = None,
    ) -> None:
        self._capability = capability
        self._policy = policy or GatewayPolicy.from_settings()
        self._global_slots = asyncio.Semaphore(self._policy.max_in_flight_global)

    @property
    def policy(self) -> GatewayPolicy:
        return self._policy

    async def invoke(
        self,
        stage: StageKind,
        payload: dict[str, Any],
        *,
        parse: Callable[[Any], T] | None = None,
        limiter: asyncio.Semaphore | None = None,
    ) -> Invocation[T]:
        """Invoke a stage with timeout, retry and optional output parsing.

        Args:
            stage: Which analysis stage to run.
            payload: Structured stage input.
            parse: Converts the raw result into domain objects; raises
                ValidationError when an invariant is violated.
            limiter: Per-meeting semaphore, held for each attempt.

        Returns:
            Invocation with the parsed (or raw) value and attempt count.

        Raises:
            CapabilityError: All attempts failed. ValidationError when the
                final attempt produced invalid output.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._policy.max_attempts),
            wait=wait_exponential(
                multiplier=1,
                min=self._policy.backoff_min_seconds,
                max=self._policy.backoff_max_seconds,
            ),
            retry=retry_if_exception_type(CapabilityError),
            before_sleep=_log_retry(stage),
            reraise=True,
        )

        attempts = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    raw = await self._attempt(stage, payload, limiter)
                    value = parse(raw) if parse is not None else raw
        except CapabilityError as exc:
            exc.stage = exc.stage or stage.value
            exc.attempts = attempts
            logger.warning(
                "stage_invocation_failed",
                stage=stage.value,
                attempts=attempts,
                error_kind=exc.kind.value,
                error=str(exc),
            )
            raise

        return Invocation(value=value, attempts=attempts)

    async def _attempt(
        self,
        stage: StageKind,
        payload: dict[str, Any],
        limiter: asyncio.Semaphore | None,
    ) -> Any:
        timeout = self._policy.timeout_for(stage)
        async with limiter if limiter is not None else nullcontext():
            async with self._global_slots:
                try:
                    return await asyncio.wait_for(
                        self._capability.run(stage, payload), timeout=timeout
                    )
                except asyncio.TimeoutError as exc:
                    raise CapabilityError(
                        f"{stage.value} timed out after {timeout}s", stage=stage.value
                    ) from exc
                except CapabilityError:
                    raise
                except Exception as exc:
                    raise CapabilityError(
                        f"{stage.value} capability raised {type(exc).__name__}",
                        stage=stage.value,
                    ) from exc


def _log_retry(stage: StageKind) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.info(
            "stage_invocation_retry",
            stage=stage.value,
            attempt=retry_state.attempt_number,
            next_wait_s=round(retry_state.next_action.sleep, 2) if retry_state.next_action else None,
            error=str(exc) if exc else None,
        )

    return before_sleep
