# flint/services/polling.py
"""
Fixed-interval polling for long-running provider operations (payments,
orders) and the small state machine those operations move through.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 30
    interval: float = 2.0
    timeout: Optional[float] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.interval < 0:
            raise ValueError("interval must be >= 0")

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.poll_max_attempts,
            interval=settings.poll_interval_seconds,
            timeout=settings.poll_timeout_seconds,
        )


@dataclass
class PollResult:
    value: Any = None
    done: bool = False
    attempts: int = 0
    timed_out: bool = False
    last_error: Optional[str] = None


async def poll(
    fetch: Callable[[], Awaitable[Any]],
    is_done: Callable[[Any], bool],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> PollResult:
    """
    Call ``fetch`` until ``is_done`` accepts its value, the attempts run out,
    or ``policy.timeout`` seconds have passed. A raising ``fetch`` uses up an
    attempt and polling carries on.
    """
    result = PollResult()
    started = clock()

    for attempt in range(1, policy.max_attempts + 1):
        result.attempts = attempt
        try:
            result.value = await fetch()
            result.last_error = None
            if is_done(result.value):
                result.done = True
                return result
        except Exception as e:
            result.last_error = f"{type(e).__name__}: {e}"
            logger.warning("Poll attempt %d/%d failed: %s", attempt, policy.max_attempts, result.last_error)

        if attempt == policy.max_attempts:
            break
        if policy.timeout is not None and clock() - started + policy.interval > policy.timeout:
            result.timed_out = True
            break
        await sleep(policy.interval)

    return result


class FlowState(str, enum.Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    CREATING = "creating"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


_NEXT = {
    FlowState.IDLE: {FlowState.PREPARING},
    FlowState.PREPARING: {FlowState.CREATING},
    FlowState.CREATING: {FlowState.PROCESSING},
    FlowState.PROCESSING: {FlowState.COMPLETED},
}
TERMINAL = {FlowState.COMPLETED, FlowState.FAILED}


class InvalidTransition(Exception):
    pass


@dataclass
class OperationFlow:
    """idle -> preparing -> creating -> processing -> completed; any live state may fail."""

    state: FlowState = FlowState.IDLE
    error: Optional[str] = None
    history: List[Tuple[FlowState, float]] = field(default_factory=list)

    def advance(self, to: FlowState) -> "OperationFlow":
        to = FlowState(to)
        if self.state in TERMINAL:
            raise InvalidTransition(f"{self.state.value} is terminal")
        if to == FlowState.FAILED or to in _NEXT.get(self.state, set()):
            self.history.append((self.state, time.time()))
            self.state = to
            return self
        raise InvalidTransition(f"{self.state.value} -> {to.value}")

    def fail(self, error: str) -> "OperationFlow":
        self.error = error
        return self.advance(FlowState.FAILED)

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL
