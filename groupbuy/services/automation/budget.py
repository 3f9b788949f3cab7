import time
from typing import Callable


class RunBudget:
    """Wall-clock budget for one tick; work is not started once it is spent."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self._started = clock()

    @classmethod
    def unlimited(cls) -> "RunBudget":
        return cls(0)

    def elapsed(self) -> float:
        return self._clock() - self._started

    def elapsed_ms(self) -> int:
        return int(self.elapsed() * 1000)

    def exhausted(self) -> bool:
        """A non-positive budget never runs out."""
        return self.seconds > 0 and self.elapsed() >= self.seconds
