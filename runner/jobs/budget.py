import time
from typing import Callable


class StageBudget:
    """Wall-clock allowance for one stage, checked between units of work.

    The safety margin is taken off the nominal budget up front, so
    ``expired()`` turns true that much before the hard limit.
    """

    def __init__(self, budget_ms: int, safety_ms: int = 0, clock: Callable[[], float] = time.monotonic):
        self.budget_ms = budget_ms
        self.safety_ms = safety_ms
        self.clock = clock
        self.started = clock()
        self.deadline = self.started + max(0, budget_ms - safety_ms) / 1000.0

    @classmethod
    def for_stage(cls, budget_ms: int, settings, clock: Callable[[], float] = time.monotonic) -> "StageBudget":
        return cls(budget_ms, settings.stage_safety_ms, clock=clock)

    def remaining_s(self) -> float:
        return max(0.0, self.deadline - self.clock())

    def remaining_ms(self) -> int:
        return int(self.remaining_s() * 1000)

    def elapsed_ms(self) -> int:
        return int((self.clock() - self.started) * 1000)

    def expired(self) -> bool:
        return self.clock() >= self.deadline
