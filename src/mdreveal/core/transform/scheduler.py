"""Timer seam for the display transformer: asyncio loops or a virtual clock"""

import heapq
import itertools
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol


class Handle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Anything with asyncio-style ``call_later`` and ``time``; an event loop qualifies."""

    def call_later(self, delay: float, callback: Callable[[], Any]) -> Handle: ...

    def time(self) -> float: ...


@dataclass(order=True)
class _Timer:
    when: float
    seq: int
    callback: Callable[[], Any] = field(compare=False)
    cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Virtual clock for tests and synchronous hosts; nothing runs until advanced."""

    def __init__(self, start: float = 0.0):
        self._now = start
        self._queue: list[_Timer] = []
        self._seq = itertools.count()

    def time(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], Any]) -> _Timer:
        timer = _Timer(self._now + max(0.0, delay), next(self._seq), callback)
        heapq.heappush(self._queue, timer)
        return timer

    @property
    def pending(self) -> int:
        return sum(1 for t in self._queue if not t.cancelled)

    def _pop_due(self, until: float):
        while self._queue and self._queue[0].when <= until:
            timer = heapq.heappop(self._queue)
            if not timer.cancelled:
                return timer
        return None

    def advance(self, seconds: float) -> int:
        """Move the clock forward, running due callbacks in order. Returns how many ran."""
        until = self._now + seconds
        ran = 0
        while (timer := self._pop_due(until)) is not None:
            self._now = max(self._now, timer.when)
            timer.callback()
            ran += 1
        self._now = until
        return ran

    def run_until_idle(self, max_callbacks: int = 100_000) -> int:
        """Run every scheduled callback, jumping the clock to each one."""
        ran = 0
        while (timer := self._pop_due(float("inf"))) is not None:
            if ran >= max_callbacks:
                raise RuntimeError(f"Scheduler still busy after {max_callbacks} callbacks")
            self._now = max(self._now, timer.when)
            timer.callback()
            ran += 1
        return ran
