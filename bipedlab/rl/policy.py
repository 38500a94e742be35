"""
Gaussian policy for the biped walker.

Small MLP that maps the 18-float observation to a diagonal Gaussian over the
6 joint commands:

    obs[18] -> Linear(48) -> tanh -> Linear(32) -> tanh -> Linear(12)
    out[:6]  = mean
    out[6:]  = log_std, clamped to [LOG_STD_MIN, LOG_STD_MAX] then exp'd

Usage:
    policy = GaussianPolicy(seed=0)
    mean, std = policy.predict(obs)
    sample = policy.sample_action(obs, explore=True)
    blobs = policy.get_weights()
    other.set_weights(blobs)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import torch
import torch.nn as nn

from .biped_env import ACTION_DIM, OBS_DIM
from .errors import ConfigurationError


LOG_STD_MIN = -2.0
LOG_STD_MAX = 0.5
HIDDEN_DIMS = (48, 32)


@dataclass(frozen=True)
class WeightBlob:
    """One parameter tensor as a flat list plus its shape (wire format)."""
    data: List[float]
    shape: Tuple[int, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {"data": list(self.data), "shape": list(self.shape)}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "WeightBlob":
        return cls(data=[float(v) for v in d["data"]], shape=tuple(int(s) for s in d["shape"]))


@dataclass(frozen=True)
class ActionSample:
    """A sampled action and the distribution that produced it."""
    action: List[float]
    mean: List[float]
    std: List[float]


class GaussianPolicy(nn.Module):
    """
    Diagonal Gaussian policy network.

    Both execution contexts build their own instance; weights move between
    them only as ``WeightBlob`` copies.
    """

    def __init__(
        self,
        obs_dim: int = OBS_DIM,
        action_dim: int = ACTION_DIM,
        hidden_dims: Sequence[int] = HIDDEN_DIMS,
        seed: Optional[int] = None,
    ):
        super().__init__()
        self.obs_dim = obs_dim
        self.action_dim = action_dim

        self.rng = np.random.default_rng(seed)

        h1, h2 = hidden_dims
        self.net = nn.Sequential(
            nn.Linear(obs_dim, h1),
            nn.Tanh(),
            nn.Linear(h1, h2),
            nn.Tanh(),
            nn.Linear(h2, 2 * action_dim),  # mean + log_std
        )
        self._init_weights(torch.Generator().manual_seed(seed) if seed is not None else None)

    def _init_weights(self, generator: Optional[torch.Generator] = None):
        """Glorot-normal input layer, Glorot-uniform elsewhere, zero biases."""
        linears = [m for m in self.net if isinstance(m, nn.Linear)]
        nn.init.xavier_normal_(linears[0].weight, generator=generator)
        for m in linears[1:]:
            nn.init.xavier_uniform_(m.weight, generator=generator)
        for m in linears:
            nn.init.zeros_(m.bias)

    def forward(self, obs: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Args:
            obs: [B, obs_dim]

        Returns:
            mean: [B, action_dim]
            std: [B, action_dim], in [exp(LOG_STD_MIN), exp(LOG_STD_MAX)]
        """
        out = self.net(obs)
        mean, log_std = out.split(self.action_dim, dim=-1)
        std = log_std.clamp(LOG_STD_MIN, LOG_STD_MAX).exp()
        return mean, std

    @torch.no_grad()
    def predict(self, obs: Sequence[float]) -> Tuple[np.ndarray, np.ndarray]:
        """Single forward pass for one observation."""
        x = torch.as_tensor(np.asarray(obs, dtype=np.float32)).reshape(1, self.obs_dim)
        mean, std = self.forward(x)
        return mean[0].numpy().astype(np.float64), std[0].numpy().astype(np.float64)

    def sample_action(self, obs: Sequence[float], explore: bool = True) -> ActionSample:
        """
        Sample an action, clamped to [-1, 1].

        With ``explore=False`` the mean is returned (pure function of the
        weights and ``obs``).
        """
        mean, std = self.predict(obs)
        action = mean.copy()
        if explore:
            action = action + self.rng.standard_normal(self.action_dim) * std
        action = np.clip(action, -1.0, 1.0)
        return ActionSample(action=action.tolist(), mean=mean.tolist(), std=std.tolist())

    # ------------------------------------------------------------------
    # Weight transfer
    # ------------------------------------------------------------------

    def get_weights(self) -> List[WeightBlob]:
        """Copy every parameter tensor out, in ``parameters()`` order."""
        return [
            WeightBlob(
                data=p.detach().cpu().reshape(-1).tolist(),
                shape=tuple(p.shape),
            )
            for p in self.parameters()
        ]

    def set_weights(self, weights: Sequence[WeightBlob]) -> None:
        """Overwrite every parameter from ``weights`` (exact inverse of get_weights)."""
        params = list(self.parameters())
        weights = [w if isinstance(w, WeightBlob) else WeightBlob.from_dict(w) for w in weights]
        if len(weights) != len(params):
            raise ConfigurationError(f"expected {len(params)} weight tensors, got {len(weights)}")

        tensors = []
        for i, (p, w) in enumerate(zip(params, weights)):
            if tuple(w.shape) != tuple(p.shape):
                raise ConfigurationError(
                    f"weight {i} has shape {tuple(w.shape)}, expected {tuple(p.shape)}"
                )
            if len(w.data) != p.numel():
                raise ConfigurationError(
                    f"weight {i} has {len(w.data)} values, expected {p.numel()}"
                )
            tensors.append(torch.tensor(w.data, dtype=p.dtype).reshape(p.shape))

        # All blobs are validated before the first copy so a bad payload
        # leaves the policy untouched.
        with torch.no_grad():
            for p, t in zip(params, tensors):
                p.copy_(t)

    def weights_finite(self) -> bool:
        return all(bool(torch.isfinite(p).all()) for p in self.parameters())
