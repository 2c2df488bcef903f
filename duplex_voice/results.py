"""Outcome types for cancellable generations and bounded waits."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

log = logging.getLogger("duplex_voice.results")

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Generation outcome
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GenerationCompleted:
    text: str


@dataclass(frozen=True)
class GenerationAborted:
    """Intentional cancellation (barge-in, superseded turn).  Never an error."""


@dataclass(frozen=True)
class GenerationFailed:
    reason: str


GenerationResult = Union[GenerationCompleted, GenerationAborted, GenerationFailed]


# ---------------------------------------------------------------------------
# Bounded wait
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ResolvedInTime(Generic[T]):
    value: T


@dataclass(frozen=True)
class TimedOut:
    timeout_sec: float


@dataclass(frozen=True)
class TaskFailed:
    error: BaseException


BoundedWaitResult = Union[ResolvedInTime[Any], TimedOut, TaskFailed]


async def wait_bounded(task: asyncio.Future, timeout_sec: float) -> BoundedWaitResult:
    """Wait for *task* at most *timeout_sec* seconds without cancelling it.

    The task keeps running on timeout; the caller decides whether to
    cancel it.  A task that was cancelled by someone else is reported as
    ``TaskFailed(CancelledError())``.
    """
    done, _pending = await asyncio.wait({task}, timeout=max(0.0, timeout_sec))
    if not done:
        return TimedOut(timeout_sec)
    if task.cancelled():
        return TaskFailed(asyncio.CancelledError())
    exc = task.exception()
    if exc is not None:
        return TaskFailed(exc)
    return ResolvedInTime(task.result())
