"""
Foreground application state for the biped walker.

The foreground owns a policy copy used for live inference, the environment
being displayed, and the bookkeeping for the training session. It never
trains; rounds run in the worker and come back as ``Trained`` messages.

All state lives in one ``AppState``. Every function here takes the state,
updates it and returns it, so a UI (or the headless CLI) drives the session
with a loop like:

    state = AppState.create(seed=0)
    client = WorkerClient().start()
    while running:
        for msg in client.poll():
            state = handle_message(state, msg, client)
        state = advance_frame(state)

Frame behavior:
- Replay: while training and a best trajectory is known, its recorded
  actions are replayed in a fresh environment, restarting at the end of the
  trajectory or on a fall.
- Live: otherwise the foreground policy drives the environment (exploring
  unless testing), restarting on a fall or after ``max_frame_steps`` steps.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .biped_env import ACTION_DIM, BipedEnv, make_biped_env
from .params import RewardParams, TrainParams
from .policy import GaussianPolicy
from .protocol import (
    Failed,
    FromWorker,
    Ready,
    SetParams,
    SetWeights,
    Train,
    Trained,
    Weights,
    WeightsSet,
)
from .rollout import TrajectoryStep

logger = logging.getLogger(__name__)


REWARD_HISTORY_LEN = 100
SPEED_STEPS = (1, 3, 6)


@dataclass
class AppState:
    env: BipedEnv
    policy: GaussianPolicy
    reward_params: RewardParams = field(default_factory=RewardParams)
    train_params: TrainParams = field(default_factory=TrainParams)

    training: bool = False
    testing: bool = False
    worker_ready: bool = False
    train_in_flight: bool = False

    episode: int = 0
    step_count: int = 0
    total_reward: float = 0.0
    last_loss: float = 0.0
    reward_history: List[float] = field(default_factory=list)
    best_trajectory: Optional[List[TrajectoryStep]] = None
    traj_idx: int = 0
    speed_mult: int = 1
    cur_actions: List[float] = field(default_factory=lambda: [0.0] * ACTION_DIM)

    failed_rounds: int = 0
    last_error: Optional[str] = None
    max_frame_steps: int = 600

    @classmethod
    def create(
        cls,
        reward_params: Optional[RewardParams] = None,
        train_params: Optional[TrainParams] = None,
        seed: Optional[int] = None,
    ) -> "AppState":
        reward_params = (reward_params or RewardParams()).validate()
        train_params = (train_params or TrainParams()).validate()
        return cls(
            env=make_biped_env(reward_params),
            policy=GaussianPolicy(seed=seed),
            reward_params=reward_params,
            train_params=train_params,
        )

    @property
    def in_replay(self) -> bool:
        return self.training and bool(self.best_trajectory)


# ============================================================================
# Worker messages
# ============================================================================

def push_weights(state: AppState, client) -> AppState:
    client.send(SetWeights(state.policy.get_weights()))
    return state


def request_round(state: AppState, client) -> AppState:
    """Ask the worker for one round unless one is already running.

    The foreground weights go out right before the request, so every round
    starts from the latest weights the foreground holds.
    """
    if not state.training or state.train_in_flight or not state.worker_ready:
        return state
    push_weights(state, client)
    client.send(Train(state.train_params))
    state.train_in_flight = True
    return state


def handle_message(state: AppState, msg: FromWorker, client) -> AppState:
    """Apply one worker reply to the foreground state."""
    if isinstance(msg, Ready):
        state.worker_ready = True
        logger.info("worker ready")
        push_weights(state, client)
    elif isinstance(msg, WeightsSet):
        logger.debug("worker weights synced")
    elif isinstance(msg, Trained):
        result = msg.result
        state.train_in_flight = False
        state.last_loss = result.loss
        state.reward_history.append(result.avg_reward)
        del state.reward_history[:-REWARD_HISTORY_LEN]
        state.best_trajectory = list(result.best_trajectory)
        state.episode += 1
        state.policy.set_weights(result.weights)
        logger.info(
            f"EP{state.episode}: avg={result.avg_reward:.1f} "
            f"best={result.best_reward:.1f} d={result.best_distance:.0f}"
        )
        request_round(state, client)
    elif isinstance(msg, Weights):
        state.policy.set_weights(msg.weights)
    elif isinstance(msg, Failed):
        state.last_error = f"{msg.stage}: {msg.kind}: {msg.message}"
        logger.error(f"worker request failed ({state.last_error})")
        if msg.stage == "init":
            state.worker_ready = False
        if msg.stage == "train":
            state.failed_rounds += 1
            state.train_in_flight = False
        if msg.stage in ("init", "train"):
            state.training = False
    else:
        raise TypeError(f"unexpected worker message: {msg!r}")
    return state


# ============================================================================
# Operator actions
# ============================================================================

def reset_episode(state: AppState) -> AppState:
    state.env.reset(state.reward_params.friction)
    state.total_reward = 0.0
    state.step_count = 0
    state.traj_idx = 0
    return state


def start_training(state: AppState, client) -> AppState:
    """Begin a training session. Requires a ready worker."""
    if not state.worker_ready:
        logger.warning("cannot start training: worker not ready")
        return state
    state.training = True
    state.testing = False
    state.best_trajectory = None
    reset_episode(state)
    client.send(SetParams(state.reward_params))
    logger.info("training started")
    return request_round(state, client)


def stop_training(state: AppState) -> AppState:
    """Stop requesting rounds; a round already in flight still lands."""
    state.training = False
    logger.info("training paused")
    return state


def toggle_testing(state: AppState) -> AppState:
    state.testing = not state.testing
    state.training = False
    state.best_trajectory = None
    return reset_episode(state)


def cycle_speed(state: AppState) -> AppState:
    i = SPEED_STEPS.index(state.speed_mult) if state.speed_mult in SPEED_STEPS else -1
    state.speed_mult = SPEED_STEPS[(i + 1) % len(SPEED_STEPS)]
    return state


def update_params(
    state: AppState,
    client,
    reward_params: Optional[RewardParams] = None,
    train_params: Optional[TrainParams] = None,
) -> AppState:
    """
    Replace the operator parameters.

    Reward params are pushed to the worker immediately and apply from the
    next round; train params are read when the next round is requested.

    Raises:
        ConfigurationError: either group is invalid. Nothing is changed.
    """
    if reward_params is not None:
        reward_params.validate()
    if train_params is not None:
        train_params.validate()

    if reward_params is not None:
        state.reward_params = reward_params
        client.send(SetParams(reward_params))
    if train_params is not None:
        state.train_params = train_params
    return state


# ============================================================================
# Frame loop
# ============================================================================

def _replay_frame(state: AppState) -> AppState:
    trajectory = state.best_trajectory
    if state.traj_idx >= len(trajectory) or state.env.fallen:
        reset_episode(state)
    for _ in range(state.speed_mult):
        if state.traj_idx >= len(trajectory):
            break
        action = trajectory[state.traj_idx].action
        state.traj_idx += 1
        state.cur_actions = list(action)
        result = state.env.step(action, state.reward_params)
        state.total_reward += result.reward
        state.step_count += 1
    return state


def _live_frame(state: AppState) -> AppState:
    if state.env.fallen or state.step_count > state.max_frame_steps:
        reset_episode(state)
    for _ in range(state.speed_mult):
        obs = state.env.get_state()
        sample = state.policy.sample_action(obs, explore=not state.testing)
        state.cur_actions = sample.action
        result = state.env.step(sample.action, state.reward_params)
        state.total_reward += result.reward
        state.step_count += 1
        if result.done:
            break
    return state


def advance_frame(state: AppState) -> AppState:
    """Advance the displayed simulation by one frame (``speed_mult`` steps)."""
    if state.in_replay:
        return _replay_frame(state)
    return _live_frame(state)


__all__ = [
    "AppState",
    "advance_frame",
    "cycle_speed",
    "handle_message",
    "push_weights",
    "request_round",
    "reset_episode",
    "start_training",
    "stop_training",
    "toggle_testing",
    "update_params",
]
