"""
GRPO (Group Relative Policy Optimization) for the biped walker
==============================================================

GRPO drops the value network: each rollout's return is normalized against
the mean/std of a group of rollouts collected under the same policy, and that
scalar advantage is broadcast to every step of the rollout.

Per round:
```
    1. Collect G episodes under one policy snapshot
    2. A_i = (R_i - mean(R)) / (std(R) + eps)          (population std)
    3. Flatten (state, action, old_mean, old_std, A_i) over all steps
    4. ratio = exp(logp_new - logp_old), clipped to [1 - clip, 1 + clip]
    5. loss = -mean(min(ratio * A, clip(ratio) * A)) - ent * mean(sum log std)
    6. One Adam step on the policy parameters
```

Usage:
    from bipedlab.rl.grpo import GRPOConfig, GRPOTrainer

    trainer = GRPOTrainer(policy, GRPOConfig())
    result = trainer.train(TrainParams(group_size=4, episode_length=20), RewardParams())

Reference: DeepSeek-Math (arXiv:2402.03300)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import torch

from .errors import ConfigurationError, TrainingRoundFailed
from .params import RewardParams, TrainParams
from .policy import GaussianPolicy, WeightBlob
from .rollout import EpisodeResult, TrajectoryStep, run_episode

logger = logging.getLogger(__name__)


# ============================================================================
# Configuration
# ============================================================================

@dataclass
class GRPOConfig:
    """
    Fixed algorithm constants (per-round knobs live in TrainParams).

    Attributes:
        - clip_epsilon: importance ratio is clipped to [1 - eps, 1 + eps]
        - advantage_eps: added to the group std before dividing
        - prob_eps: added to std inside log-prob divisions and logs
    """
    clip_epsilon: float = 0.2
    advantage_eps: float = 1e-8
    prob_eps: float = 1e-8

    def __post_init__(self):
        if not 0 < self.clip_epsilon <= 1.0:
            raise ConfigurationError("clip_epsilon must be in (0, 1]")
        if self.advantage_eps <= 0 or self.prob_eps <= 0:
            raise ConfigurationError("advantage_eps and prob_eps must be positive")


# ============================================================================
# Core GRPO math
# ============================================================================

def compute_group_advantages(rewards: Sequence[float], eps: float = 1e-8) -> np.ndarray:
    """
    Group-relative advantages.

    Args:
        rewards: [G] total reward per rollout

    Returns:
        advantages: [G], (r - mean) / (population std + eps). When every
        reward ties, every advantage is exactly 0.
    """
    r = np.asarray(rewards, dtype=np.float64)
    if r.size == 0:
        return r
    std = float(np.sqrt(np.mean((r - r.mean()) ** 2))) + eps
    return (r - r.mean()) / std


def gaussian_log_prob(
    x: torch.Tensor,
    mean: torch.Tensor,
    std: torch.Tensor,
    eps: float = 1e-8,
) -> torch.Tensor:
    """
    Diagonal Gaussian log-density without the constant term.

    Returns:
        [B] sum over action dims of -0.5 * ((x - mean) / (std + eps))^2 - log(std + eps)
    """
    z = (x - mean) / (std + eps)
    return (-0.5 * z.pow(2) - torch.log(std + eps)).sum(dim=-1)


@dataclass
class GRPOBatch:
    """All steps of a group, flattened. Nothing here carries gradients."""
    states: torch.Tensor       # [N, obs_dim]
    actions: torch.Tensor      # [N, action_dim]
    old_means: torch.Tensor    # [N, action_dim]
    old_stds: torch.Tensor     # [N, action_dim]
    advantages: torch.Tensor   # [N]

    def __len__(self) -> int:
        return int(self.states.shape[0])


def flatten_group(
    episodes: Sequence[EpisodeResult],
    advantages: Sequence[float],
) -> Optional[GRPOBatch]:
    """Broadcast each episode's advantage to its steps; None if there are no steps."""
    states, actions, means, stds, advs = [], [], [], [], []
    for episode, adv in zip(episodes, advantages):
        for step in episode.trajectory:
            states.append(step.state)
            actions.append(step.action)
            means.append(step.mean)
            stds.append(step.std)
            advs.append(float(adv))

    if not states:
        return None

    def as_tensor(rows):
        return torch.tensor(np.asarray(rows, dtype=np.float32))

    return GRPOBatch(
        states=as_tensor(states),
        actions=as_tensor(actions),
        old_means=as_tensor(means),
        old_stds=as_tensor(stds),
        advantages=as_tensor(advs),
    )


def grpo_objective(
    policy: GaussianPolicy,
    batch: GRPOBatch,
    entropy_coef: float,
    clip_epsilon: float = 0.2,
    eps: float = 1e-8,
) -> Tuple[torch.Tensor, Dict[str, float]]:
    """
    Clipped surrogate plus entropy bonus.

    Returns:
        loss: scalar tensor with gradients w.r.t. the policy parameters
        metrics: policy_loss, entropy, clip_fraction, approx_kl, mean_ratio
    """
    new_mean, new_std = policy(batch.states)

    logp_new = gaussian_log_prob(batch.actions, new_mean, new_std, eps)
    logp_old = gaussian_log_prob(batch.actions, batch.old_means, batch.old_stds, eps)

    ratio = torch.exp(logp_new - logp_old)
    clipped = torch.clamp(ratio, 1 - clip_epsilon, 1 + clip_epsilon)

    surr1 = ratio * batch.advantages
    surr2 = clipped * batch.advantages
    policy_loss = -torch.min(surr1, surr2).mean()

    entropy_bonus = torch.log(new_std + eps).sum(dim=-1).mean()
    loss = policy_loss - entropy_coef * entropy_bonus

    with torch.no_grad():
        clip_fraction = ((ratio - 1).abs() > clip_epsilon).float().mean()
        log_ratio = logp_new - logp_old
        approx_kl = ((ratio - 1) - log_ratio).mean()

    metrics = {
        "policy_loss": float(policy_loss.item()),
        "entropy": float(entropy_bonus.item()),
        "clip_fraction": float(clip_fraction.item()),
        "approx_kl": float(approx_kl.item()),
        "mean_ratio": float(ratio.mean().item()),
    }
    return loss, metrics


# ============================================================================
# Round result
# ============================================================================

@dataclass
class RoundResult:
    """What one training round reports back to the foreground."""
    loss: float = 0.0
    avg_reward: float = 0.0
    best_reward: float = 0.0
    best_distance: float = 0.0
    best_trajectory: List[TrajectoryStep] = field(default_factory=list)
    weights: List[WeightBlob] = field(default_factory=list)
    policy_loss: float = 0.0
    entropy: float = 0.0
    clip_fraction: float = 0.0
    num_steps: int = 0
    rewards: List[float] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loss": self.loss,
            "avgReward": self.avg_reward,
            "bestReward": self.best_reward,
            "bestDistance": self.best_distance,
            "bestTrajectory": [s.to_dict() for s in self.best_trajectory],
            "weights": [w.to_dict() for w in self.weights],
            "policyLoss": self.policy_loss,
            "entropy": self.entropy,
            "clipFraction": self.clip_fraction,
            "numSteps": self.num_steps,
            "rewards": list(self.rewards),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RoundResult":
        return cls(
            loss=float(d["loss"]),
            avg_reward=float(d["avgReward"]),
            best_reward=float(d["bestReward"]),
            best_distance=float(d.get("bestDistance", 0.0)),
            best_trajectory=[TrajectoryStep.from_dict(s) for s in d.get("bestTrajectory", [])],
            weights=[WeightBlob.from_dict(w) for w in d.get("weights", [])],
            policy_loss=float(d.get("policyLoss", 0.0)),
            entropy=float(d.get("entropy", 0.0)),
            clip_fraction=float(d.get("clipFraction", 0.0)),
            num_steps=int(d.get("numSteps", 0)),
            rewards=[float(r) for r in d.get("rewards", [])],
        )


# ============================================================================
# GRPO Trainer
# ============================================================================

class GRPOTrainer:
    """
    Runs GRPO rounds against a policy it owns.

    Handles:
    - Group collection under a fixed snapshot
    - Advantage computation and flattening
    - One optimizer step with a non-finite guard
    """

    def __init__(self, policy: GaussianPolicy, config: Optional[GRPOConfig] = None):
        self.policy = policy
        self.config = config or GRPOConfig()
        self.rounds_completed = 0

    def collect_group(
        self,
        train_params: TrainParams,
        reward_params: RewardParams,
    ) -> List[EpisodeResult]:
        """Collect ``group_size`` episodes; the policy is not modified in between."""
        return [
            run_episode(self.policy, reward_params, train_params.episode_length)
            for _ in range(train_params.group_size)
        ]

    def update(
        self,
        episodes: Sequence[EpisodeResult],
        train_params: TrainParams,
    ) -> RoundResult:
        """
        Compute advantages from ``episodes`` and take one policy step.

        Raises:
            TrainingRoundFailed: loss or updated weights are non-finite. The
                policy is restored to its pre-step weights.
        """
        if not episodes:
            return RoundResult(weights=self.policy.get_weights())

        rewards = [e.total_reward for e in episodes]
        advantages = compute_group_advantages(rewards, self.config.advantage_eps)
        batch = flatten_group(episodes, advantages)

        if batch is None:
            logger.warning("GRPO round produced no steps; skipping update")
            return RoundResult(weights=self.policy.get_weights(), rewards=rewards)

        snapshot = {k: v.detach().clone() for k, v in self.policy.state_dict().items()}
        # Adam state does not carry over between rounds.
        optimizer = torch.optim.Adam(self.policy.parameters(), lr=train_params.learning_rate)

        loss, metrics = grpo_objective(
            self.policy,
            batch,
            entropy_coef=train_params.entropy_coef,
            clip_epsilon=self.config.clip_epsilon,
            eps=self.config.prob_eps,
        )
        loss_value = float(loss.item())
        if not math.isfinite(loss_value):
            raise TrainingRoundFailed(f"non-finite GRPO loss: {loss_value}")

        optimizer.zero_grad()
        loss.backward()
        optimizer.step()

        if not self.policy.weights_finite():
            self.policy.load_state_dict(snapshot)
            raise TrainingRoundFailed("optimizer step produced non-finite weights; update discarded")

        best = max(episodes, key=lambda e: e.total_reward)
        self.rounds_completed += 1

        result = RoundResult(
            loss=loss_value,
            avg_reward=float(np.mean(rewards)),
            best_reward=float(max(rewards)),
            best_distance=float(best.distance),
            best_trajectory=list(best.trajectory),
            weights=self.policy.get_weights(),
            policy_loss=metrics["policy_loss"],
            entropy=metrics["entropy"],
            clip_fraction=metrics["clip_fraction"],
            num_steps=len(batch),
            rewards=rewards,
        )
        logger.debug(
            f"GRPO round {self.rounds_completed}: loss={result.loss:.4f} "
            f"avg={result.avg_reward:.2f} best={result.best_reward:.2f} steps={result.num_steps}"
        )
        return result

    def train(self, train_params: TrainParams, reward_params: RewardParams) -> RoundResult:
        """One full round: validate, collect G rollouts, one policy step."""
        train_params.validate()
        reward_params.validate()
        episodes = self.collect_group(train_params, reward_params)
        return self.update(episodes, train_params)
