"""Operator-adjustable parameters.

Two groups cross the execution boundary:

- ``RewardParams``: reward shaping weights plus the torque scale and ground
  friction used when building/stepping the environment.
- ``TrainParams``: per-round GRPO hyperparameters.

Both convert to and from the camelCase wire dicts used by the message
protocol (``{"rVel": ..., "groupSize": ...}``).
"""

from __future__ import annotations

import math
from dataclasses import dataclass, fields
from typing import Any, Dict

from .errors import ConfigurationError


def _require_finite(name: str, value: float) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from e
    if not math.isfinite(value):
        raise ConfigurationError(f"{name} must be finite, got {value}")
    return value


def _require_positive_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    if isinstance(value, float) and not value.is_integer():
        raise ConfigurationError(f"{name} must be an integer, got {value}")
    value = int(value)
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value}")
    return value


@dataclass(frozen=True)
class RewardParams:
    """Reward shaping and physics knobs.

    Attributes:
        r_vel: Weight on torso forward velocity.
        r_up: Weight on the upright term (1 - |torso angle|).
        r_h: Weight on the torso height term.
        r_eff: Weight on the squared-action effort penalty.
        r_fall: Penalty magnitude returned on every fallen step.
        torque: Angular velocity kick per unit action (rad/step).
        friction: Ground contact friction; feet use 1.5x.

    With these defaults a still, standing biped earns about 0.22 per step:
    0.1 from the upright term, 0.1 from the height term and the 0.02
    survival bonus. The bonus alone is what remains with r_vel, r_up, r_h
    and r_eff set to zero.
    """
    r_vel: float = 1.0
    r_up: float = 1.0
    r_h: float = 1.0
    r_eff: float = 0.01
    r_fall: float = 10.0
    torque: float = 0.05
    friction: float = 1.0

    _WIRE_KEYS = {
        "r_vel": "rVel",
        "r_up": "rUp",
        "r_h": "rH",
        "r_eff": "rEff",
        "r_fall": "rFall",
        "torque": "torque",
        "friction": "friction",
    }

    def validate(self) -> "RewardParams":
        for f in fields(self):
            _require_finite(self._WIRE_KEYS[f.name], getattr(self, f.name))
        if self.torque < 0:
            raise ConfigurationError(f"torque must be >= 0, got {self.torque}")
        if self.friction < 0:
            raise ConfigurationError(f"friction must be >= 0, got {self.friction}")
        return self

    def to_dict(self) -> Dict[str, float]:
        return {self._WIRE_KEYS[f.name]: float(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RewardParams":
        missing = [wire for wire in cls._WIRE_KEYS.values() if wire not in data]
        if missing:
            raise ConfigurationError(f"missing reward params: {', '.join(missing)}")
        kwargs = {
            name: _require_finite(wire, data[wire])
            for name, wire in cls._WIRE_KEYS.items()
        }
        return cls(**kwargs).validate()


@dataclass(frozen=True)
class TrainParams:
    """Hyperparameters for one GRPO round."""
    group_size: int = 8
    episode_length: int = 300
    learning_rate: float = 1e-3
    entropy_coef: float = 0.01

    def validate(self) -> "TrainParams":
        _require_positive_int("groupSize", self.group_size)
        _require_positive_int("episodeLength", self.episode_length)
        lr = _require_finite("learningRate", self.learning_rate)
        if lr <= 0:
            raise ConfigurationError(f"learningRate must be positive, got {lr}")
        ent = _require_finite("entropyCoefficient", self.entropy_coef)
        if ent < 0:
            raise ConfigurationError(f"entropyCoefficient must be >= 0, got {ent}")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "groupSize": int(self.group_size),
            "episodeLength": int(self.episode_length),
            "learningRate": float(self.learning_rate),
            "entropyCoefficient": float(self.entropy_coef),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrainParams":
        try:
            params = cls(
                group_size=_require_positive_int("groupSize", data["groupSize"]),
                episode_length=_require_positive_int("episodeLength", data["episodeLength"]),
                learning_rate=_require_finite("learningRate", data["learningRate"]),
                entropy_coef=_require_finite("entropyCoefficient", data["entropyCoefficient"]),
            )
        except KeyError as e:
            raise ConfigurationError(f"missing train param: {e.args[0]}") from e
        return params.validate()
