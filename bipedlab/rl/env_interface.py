"""Minimal environment interface contract.

This is *not* tied to Gym; it's intentionally tiny.

An RL environment should provide:
- reset() -> obs
- step(action, params) -> StepResult(state, reward, done)
- dist() -> horizontal progress since the last reset

Where:
- obs is a flat list of floats (the observation projection, the only part of
  environment state that ever leaves the environment)
- params carries the operator-adjustable reward/physics knobs, passed per call
  rather than stored as environment defaults
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Protocol, Sequence, runtime_checkable

from .params import RewardParams


Obs = List[float]
Action = Sequence[float]


@dataclass(frozen=True)
class StepResult:
    state: Obs
    reward: float
    done: bool


@runtime_checkable
class Env(Protocol):
    def reset(self) -> Obs: ...

    def get_state(self) -> Obs: ...

    def step(self, action: Action, params: RewardParams) -> StepResult: ...

    def dist(self) -> float: ...
