"""
RL module for the 2D biped walker.
"""
from .errors import (
    BipedLabError,
    ConfigurationError,
    TrainingRoundFailed,
    UnavailableCollaboratorError,
)
from .params import RewardParams, TrainParams
from .biped_env import BipedEnv, make_biped_env
from .policy import GaussianPolicy, WeightBlob
from .rollout import EpisodeResult, TrajectoryStep, run_episode
from .grpo import GRPOConfig, GRPOTrainer, RoundResult, compute_group_advantages

__all__ = [
    'BipedLabError',
    'ConfigurationError',
    'TrainingRoundFailed',
    'UnavailableCollaboratorError',
    'RewardParams',
    'TrainParams',
    'BipedEnv',
    'make_biped_env',
    'GaussianPolicy',
    'WeightBlob',
    'EpisodeResult',
    'TrajectoryStep',
    'run_episode',
    'GRPOConfig',
    'GRPOTrainer',
    'RoundResult',
    'compute_group_advantages',
]
