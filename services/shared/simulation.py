"""
Simulated Work
==============
Every saga stage "does" its work by sleeping for a while and then rolling a
die. Both halves are injectable:

  OutcomeSource  decides SUCCESS/FAILED per stage. RandomOutcomeSource uses
                 the configured probabilities; ScriptedOutcomeSource lets a
                 test force the exact path an order takes.
  LatencyModel   awaits a randomized, non-blocking delay per stage. A scale
                 of 0 turns delays into a bare event-loop yield.

Services take a Simulation (outcomes + latency + rng) in their constructor
instead of calling the random module directly.
"""
from __future__ import annotations

import asyncio
import random
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Iterable, Mapping, Protocol


class Stage(str, Enum):
    PAYMENT = "payment"
    INVENTORY = "inventory"
    SHIPPING = "shipping"
    NOTIFICATION = "notification"


DEFAULT_SUCCESS_PROBABILITIES: dict[Stage, float] = {
    Stage.PAYMENT: 0.9,
    Stage.INVENTORY: 0.8,
    Stage.SHIPPING: 0.95,
    Stage.NOTIFICATION: 0.98,
}

# Seconds, (low, high)
DEFAULT_LATENCY_RANGES: dict[Stage, tuple[float, float]] = {
    Stage.PAYMENT: (0.5, 2.0),
    Stage.INVENTORY: (0.5, 1.5),
    Stage.SHIPPING: (0.7, 1.9),
    Stage.NOTIFICATION: (0.3, 1.0),
}


class OutcomeSource(Protocol):
    def succeeds(self, stage: Stage) -> bool: ...


class RandomOutcomeSource:
    def __init__(
        self,
        probabilities: Mapping[Stage, float] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._probabilities = {**DEFAULT_SUCCESS_PROBABILITIES, **(probabilities or {})}
        self._rng = rng or random.Random()

    def probability(self, stage: Stage) -> float:
        return self._probabilities[stage]

    def succeeds(self, stage: Stage) -> bool:
        return self._rng.random() < self._probabilities[stage]


class ScriptedOutcomeSource:
    """
    Deterministic outcomes for tests.

    Each stage maps to either a single bool (always that outcome) or a
    sequence consumed one value per call; once a sequence runs out the
    default applies.

        ScriptedOutcomeSource({Stage.PAYMENT: False})
        ScriptedOutcomeSource({Stage.SHIPPING: [True, False]}, default=True)
    """

    def __init__(
        self,
        outcomes: Mapping[Stage, bool | Iterable[bool]] | None = None,
        default: bool = True,
    ) -> None:
        self._fixed: dict[Stage, bool] = {}
        self._queued: dict[Stage, deque[bool]] = {}
        for stage, value in (outcomes or {}).items():
            if isinstance(value, bool):
                self._fixed[stage] = value
            else:
                self._queued[stage] = deque(value)
        self._default = default
        self.calls: list[Stage] = []

    def succeeds(self, stage: Stage) -> bool:
        self.calls.append(stage)
        if stage in self._fixed:
            return self._fixed[stage]
        queue = self._queued.get(stage)
        if queue:
            return queue.popleft()
        return self._default


class LatencyModel:
    def __init__(
        self,
        scale: float = 1.0,
        ranges: Mapping[Stage, tuple[float, float]] | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._scale = scale
        self._ranges = {**DEFAULT_LATENCY_RANGES, **(ranges or {})}
        self._rng = rng or random.Random()
        self._sleep = sleep

    def delay_for(self, stage: Stage) -> float:
        low, high = self._ranges[stage]
        return self._rng.uniform(low, high) * self._scale

    async def wait(self, stage: Stage) -> float:
        """Sleep without blocking the loop; other messages keep flowing meanwhile."""
        delay = self.delay_for(stage)
        await self._sleep(delay)
        return delay


@dataclass
class Simulation:
    outcomes: OutcomeSource
    latency: LatencyModel
    rng: random.Random = field(default_factory=random.Random)

    @classmethod
    def from_settings(cls, settings) -> "Simulation":
        rng = random.Random(settings.random_seed)
        probabilities = {
            Stage.PAYMENT: settings.p_payment,
            Stage.INVENTORY: settings.p_inventory,
            Stage.SHIPPING: settings.p_shipping,
            Stage.NOTIFICATION: settings.p_notification,
        }
        return cls(
            outcomes=RandomOutcomeSource(probabilities, rng=rng),
            latency=LatencyModel(scale=settings.latency_scale, rng=rng),
            rng=rng,
        )

    @classmethod
    def scripted(
        cls,
        outcomes: Mapping[Stage, bool | Iterable[bool]] | None = None,
        default: bool = True,
        seed: int = 0,
    ) -> "Simulation":
        rng = random.Random(seed)
        return cls(
            outcomes=ScriptedOutcomeSource(outcomes, default=default),
            latency=LatencyModel(scale=0.0, rng=rng),
            rng=rng,
        )
