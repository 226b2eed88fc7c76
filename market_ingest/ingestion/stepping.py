from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, Iterable, List, Optional, TypeVar, Union

T = TypeVar("T")
V = TypeVar("V")


@dataclass(frozen=True)
class Continue:
    """Step result: move on to the next item, keeping a diagnostic note.

    ``failed`` marks a provider call that errored, which lengthens the
    pacer gap before the next call.
    """

    note: Optional[str] = None
    failed: bool = False


@dataclass(frozen=True)
class Stop(Generic[V]):
    """Step result: stop the fold with this value."""

    value: V


StepResult = Union[Continue, Stop]


@dataclass
class FoldOutcome(Generic[V]):
    value: Optional[V] = None
    stopped: bool = False
    attempted: int = 0
    notes: List[str] = field(default_factory=list)


class RequestPacer:
    """Keeps a minimum gap between consecutive provider calls.

    The gap is measured from the end of one call to the start of the next.
    After a failed call the gap grows to ``error_interval``.
    """

    def __init__(
        self,
        min_interval: float,
        error_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.min_interval = max(0.0, min_interval)
        self.error_interval = max(self.min_interval, error_interval if error_interval is not None else self.min_interval)
        self._clock = clock
        self._sleep = sleep
        self._last_finished: Optional[float] = None
        self._next_gap = self.min_interval

    async def wait(self) -> None:
        if self._last_finished is None:
            return
        remaining = self._next_gap - (self._clock() - self._last_finished)
        if remaining > 0:
            await self._sleep(remaining)

    def record(self, failed: bool = False) -> None:
        self._last_finished = self._clock()
        self._next_gap = self.error_interval if failed else self.min_interval


class RequestBudget:
    """Caps provider calls per fixed window (one minute by default).

    ``try_acquire`` counts a call and returns False once the window's
    allowance is spent; the count resets when the window elapses. A limit of
    0 disables the cap.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = max(0, limit)
        self.window_seconds = window_seconds
        self._clock = clock
        self._window_started: Optional[float] = None
        self.used = 0

    def try_acquire(self) -> bool:
        if not self.limit:
            return True
        now = self._clock()
        if self._window_started is None or now - self._window_started >= self.window_seconds:
            self._window_started = now
            self.used = 0
        if self.used >= self.limit:
            return False
        self.used += 1
        return True


async def fold_ordered(
    items: Iterable[T],
    step: Callable[[T], Awaitable[StepResult]],
    pacer: Optional[RequestPacer] = None,
) -> FoldOutcome:
    """Run ``step`` over ``items`` in order until one returns ``Stop``.

    When a pacer is given, each step waits on it first and is recorded as
    failed if it raised or returned a failed ``Continue``.
    """
    outcome: FoldOutcome = FoldOutcome()
    for item in items:
        if pacer is not None:
            await pacer.wait()
        outcome.attempted += 1
        try:
            result = await step(item)
        except BaseException:
            if pacer is not None:
                pacer.record(failed=True)
            raise
        if isinstance(result, Stop):
            if pacer is not None:
                pacer.record()
            outcome.value = result.value
            outcome.stopped = True
            return outcome
        if pacer is not None:
            pacer.record(failed=result.failed)
        if result.note:
            outcome.notes.append(result.note)
    return outcome
