"""Episode collection for the biped walker."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

from .biped_env import make_biped_env
from .env_interface import Env
from .params import RewardParams
from .policy import GaussianPolicy


@dataclass(frozen=True)
class TrajectoryStep:
    """Pre-step observation, the sampled action, and the distribution used."""
    state: List[float]
    action: List[float]
    mean: List[float]
    std: List[float]

    def to_dict(self) -> Dict[str, List[float]]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TrajectoryStep":
        return cls(
            state=[float(v) for v in d["state"]],
            action=[float(v) for v in d["action"]],
            mean=[float(v) for v in d["mean"]],
            std=[float(v) for v in d["std"]],
        )


@dataclass
class EpisodeResult:
    total_reward: float = 0.0
    trajectory: List[TrajectoryStep] = field(default_factory=list)
    distance: float = 0.0

    @property
    def length(self) -> int:
        return len(self.trajectory)


def run_episode(
    policy: GaussianPolicy,
    params: RewardParams,
    max_steps: int,
) -> EpisodeResult:
    """
    Run one exploring episode in a freshly built environment.

    Args:
        policy: Policy sampled at every step.
        params: Reward/physics parameters, fixed for the whole episode.
        max_steps: Step limit; the episode stops earlier on a fall.

    Returns:
        EpisodeResult with the total reward, per-step records and the final
        torso displacement.
    """
    env: Env = make_biped_env(params)
    env.reset()

    result = EpisodeResult()
    for _ in range(max_steps):
        state = env.get_state()
        sample = policy.sample_action(state, explore=True)
        step = env.step(sample.action, params)
        result.total_reward += step.reward
        result.trajectory.append(
            TrajectoryStep(state=state, action=sample.action, mean=sample.mean, std=sample.std)
        )
        if step.done:
            break

    result.distance = env.dist()
    return result
