"""rosetta_core.search.schedule
=============================

Annealing schedule and stop signal for the relaxation loop.

TemperatureSchedule   Monotone non-increasing temperature per step
StopSignal            Iteration count / wall clock / external event
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class TemperatureSchedule:
    """Temperature as a function of the step index.

    ``exponential``: T_k = T0 * (T1 / T0) ** (k / (n - 1))
    ``linear``:      T_k = T0 + (T1 - T0) * k / (n - 1)

    Steps past the end stay at ``final``.
    """

    initial: float = 1.0
    final: float = 0.05
    steps: int = 60
    kind: str = "exponential"

    def __post_init__(self) -> None:
        if not 0 < self.final <= self.initial:
            raise ValueError("TemperatureSchedule requires 0 < final <= initial")
        if self.kind not in ("exponential", "linear"):
            raise ValueError(f"Unknown schedule kind {self.kind!r}")

    def temperature(self, step: int) -> float:
        if self.steps <= 1:
            return self.final if step > 0 else self.initial
        frac = min(max(step, 0), self.steps - 1) / (self.steps - 1)
        if self.kind == "linear":
            return self.initial + (self.final - self.initial) * frac
        return self.initial * (self.final / self.initial) ** frac

    def __call__(self, step: int) -> float:
        return self.temperature(step)


@dataclass
class StopSignal:
    """Cooperative stop condition checked once per optimisation step.

    Parameters
    ----------
    max_steps : int, optional
        Stop once this many steps have run.
    max_seconds : float, optional
        Wall-clock limit measured from :meth:`start`.
    event : threading.Event, optional
        External cancellation; set it from any thread.
    """

    max_steps: Optional[int] = None
    max_seconds: Optional[float] = None
    event: threading.Event = field(default_factory=threading.Event)
    reason: Optional[str] = None
    _started: Optional[float] = field(default=None, repr=False)

    def start(self) -> None:
        self._started = time.monotonic()
        self.reason = None

    def cancel(self) -> None:
        self.event.set()

    @property
    def elapsed(self) -> float:
        if self._started is None:
            return 0.0
        return time.monotonic() - self._started

    def should_stop(self, step: int) -> bool:
        if self.event.is_set():
            self.reason = "cancelled"
        elif self.max_steps is not None and step >= self.max_steps:
            self.reason = "max_steps"
        elif self.max_seconds is not None and self.elapsed >= self.max_seconds:
            self.reason = "max_seconds"
        else:
            return False
        return True
