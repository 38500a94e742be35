#!/usr/bin/env python3
"""
Tests for the foreground application state and frame loop.
"""

import sys

from bipedlab.rl.app import (
    AppState,
    advance_frame,
    cycle_speed,
    handle_message,
    request_round,
    reset_episode,
    start_training,
    stop_training,
    toggle_testing,
    update_params,
)
from bipedlab.rl.biped_env import ACTION_DIM
from bipedlab.rl.errors import ConfigurationError
from bipedlab.rl.grpo import RoundResult
from bipedlab.rl.params import RewardParams, TrainParams
from bipedlab.rl.policy import GaussianPolicy
from bipedlab.rl.protocol import Failed, Ready, SetParams, SetWeights, Train, Trained
from bipedlab.rl.rollout import TrajectoryStep
from bipedlab.rl.worker import InlineWorkerClient

SMALL_ROUND = TrainParams(group_size=2, episode_length=12)


class RecordingClient:
    """Collects sent messages without serving them."""

    def __init__(self):
        self.sent = []

    def send(self, msg):
        self.sent.append(msg)


def _state(**kw) -> AppState:
    return AppState.create(train_params=SMALL_ROUND, seed=0, **kw)


def _pump(state: AppState, client) -> AppState:
    for msg in client.poll():
        state = handle_message(state, msg, client)
    return state


def _trajectory(n: int):
    return [
        TrajectoryStep(state=[0.0] * 18, action=[0.1 * (i % 3)] * ACTION_DIM,
                       mean=[0.0] * ACTION_DIM, std=[0.5] * ACTION_DIM)
        for i in range(n)
    ]


def test_ready_pushes_weights():
    print("Testing worker handshake...")
    state = _state()
    client = RecordingClient()
    state = handle_message(state, Ready(), client)

    assert state.worker_ready
    assert len(client.sent) == 1 and isinstance(client.sent[0], SetWeights)
    assert client.sent[0].weights == state.policy.get_weights()
    print("  ✓ Ready -> weights pushed")


def test_request_round_is_gated():
    state = _state()
    client = RecordingClient()

    request_round(state, client)
    assert client.sent == []  # not training

    state.worker_ready = True
    state.training = True
    request_round(state, client)
    request_round(state, client)
    assert [type(m) for m in client.sent] == [SetWeights, Train]
    assert state.train_in_flight
    print("  ✓ at most one round in flight")


def test_start_training_requires_ready_worker():
    state = _state()
    client = RecordingClient()
    start_training(state, client)
    assert not state.training and client.sent == []

    state.worker_ready = True
    start_training(state, client)
    assert state.training and not state.testing
    assert [type(m) for m in client.sent] == [SetParams, SetWeights, Train]
    assert client.sent[-1].params == SMALL_ROUND
    print("  ✓ start sends params, weights, then a round")


def test_training_loop_with_inline_worker():
    print("\nTesting training session...")
    state = _state()
    client = InlineWorkerClient(seed=0).start()
    state = _pump(state, client)
    assert state.worker_ready

    state = start_training(state, client)
    state = _pump(state, client)

    assert state.episode == 1
    assert state.best_trajectory and len(state.best_trajectory) <= SMALL_ROUND.episode_length
    assert len(state.reward_history) == 1
    assert state.train_in_flight  # next round already requested
    assert state.policy.get_weights() == client.worker.policy.get_weights()

    state = stop_training(state)
    state = _pump(state, client)
    assert state.episode == 2
    assert not state.train_in_flight
    assert client.poll() == []
    client.close()
    print(f"  ✓ {state.episode} rounds, last loss={state.last_loss:.4f}")


def test_trained_message_updates_state():
    state = _state()
    state.worker_ready = True
    state.training = True
    state.train_in_flight = True
    source = GaussianPolicy(seed=9)
    result = RoundResult(loss=0.3, avg_reward=2.5, best_reward=4.0,
                         best_trajectory=_trajectory(4), weights=source.get_weights())
    client = RecordingClient()

    state = handle_message(state, Trained(result), client)

    assert state.last_loss == 0.3
    assert state.reward_history == [2.5]
    assert state.best_trajectory == _trajectory(4)
    assert state.policy.get_weights() == source.get_weights()
    assert [type(m) for m in client.sent] == [SetWeights, Train]
    assert client.sent[0].weights == source.get_weights()


def test_reward_history_is_bounded():
    state = _state()
    weights = state.policy.get_weights()
    client = RecordingClient()
    for i in range(130):
        handle_message(state, Trained(RoundResult(avg_reward=float(i), weights=weights)), client)
    assert len(state.reward_history) == 100
    assert state.reward_history[0] == 30.0
    assert state.episode == 130
    print("  ✓ reward history keeps the last 100 rounds")


def test_failed_round_stops_training():
    state = _state()
    state.worker_ready = True
    state.training = True
    state.train_in_flight = True
    state = handle_message(state, Failed("train", "TrainingRoundFailed", "nan"), RecordingClient())

    assert not state.training
    assert not state.train_in_flight
    assert state.failed_rounds == 1
    assert "TrainingRoundFailed" in state.last_error

    state = handle_message(state, Failed("init", "UnavailableCollaboratorError"), RecordingClient())
    assert not state.worker_ready
    print("  ✓ failures recorded, training stopped")


def test_rejected_push_keeps_session_running():
    state = _state()
    state.worker_ready = True
    state.training = True
    state.train_in_flight = True
    for stage in ("params", "weights"):
        state = handle_message(state, Failed(stage, "ConfigurationError", "bad"), RecordingClient())
        assert state.training
        assert state.train_in_flight
        assert state.last_error.startswith(stage)
    assert state.failed_rounds == 0
    print("  ✓ rejected params/weights reported without stopping training")


def test_restart_while_round_in_flight():
    """A stop/start during a running round must not roll the worker back."""
    print("\nTesting restart during a round...")
    state = _state()
    client = InlineWorkerClient(seed=0).start()
    state = _pump(state, client)

    state = start_training(state, client)
    assert state.train_in_flight
    state = stop_training(state)
    state = start_training(state, client)

    state = _pump(state, client)  # round 1 lands, round 2 requested
    assert state.episode == 1
    round_1 = state.policy.get_weights()
    assert client.worker.policy.get_weights() == round_1
    state = stop_training(state)
    state = _pump(state, client)  # round 2 lands

    assert state.episode == 2
    assert state.policy.get_weights() != round_1
    assert state.policy.get_weights() == client.worker.policy.get_weights()
    client.close()
    print("  ✓ every round starts from the latest foreground weights")


def test_replay_frames():
    print("\nTesting replay mode...")
    state = _state()
    state.training = True
    state.best_trajectory = _trajectory(5)
    state.speed_mult = 3

    advance_frame(state)
    assert state.traj_idx == 3 and state.step_count == 3
    assert state.cur_actions == list(state.best_trajectory[2].action)
    advance_frame(state)
    assert state.traj_idx == 5 and state.step_count == 5
    advance_frame(state)  # end of trajectory -> restart
    assert state.traj_idx == 3 and state.step_count == 3
    print("  ✓ replay steps through and restarts")


def test_live_frames():
    print("\nTesting live mode...")
    state = _state()
    state.testing = True
    advance_frame(state)
    assert state.step_count == 1
    assert len(state.cur_actions) == ACTION_DIM

    state.step_count = state.max_frame_steps + 1
    state.total_reward = 99.0
    advance_frame(state)
    assert state.step_count == 1
    assert state.total_reward != 99.0
    print("  ✓ live inference steps and restarts past the step cap")


def test_operator_toggles():
    state = _state()
    assert [cycle_speed(state).speed_mult for _ in range(4)] == [3, 6, 1, 3]

    state.training = True
    state.best_trajectory = _trajectory(2)
    toggle_testing(state)
    assert state.testing and not state.training and state.best_trajectory is None

    state.step_count = 10
    reset_episode(state)
    assert state.step_count == 0 and state.env.dist() == 0.0
    print("  ✓ speed cycle, test toggle and reset")


def test_update_params():
    state = _state()
    client = RecordingClient()
    new_reward = RewardParams(r_vel=2.0)
    update_params(state, client, reward_params=new_reward, train_params=TrainParams(group_size=3))
    assert state.reward_params == new_reward
    assert state.train_params.group_size == 3
    assert client.sent == [SetParams(new_reward)]

    try:
        update_params(state, client, reward_params=RewardParams(friction=-1.0),
                      train_params=TrainParams(group_size=5))
    except ConfigurationError:
        pass
    else:
        raise AssertionError("invalid params should be rejected")
    assert state.reward_params == new_reward
    assert state.train_params.group_size == 3
    print("  ✓ params validated before they are applied")


def main():
    """Run all app tests."""
    print("=" * 60)
    print("Foreground App - Tests")
    print("=" * 60)

    try:
        test_ready_pushes_weights()
        test_request_round_is_gated()
        test_start_training_requires_ready_worker()
        test_training_loop_with_inline_worker()
        test_trained_message_updates_state()
        test_reward_history_is_bounded()
        test_failed_round_stops_training()
        test_rejected_push_keeps_session_running()
        test_restart_while_round_in_flight()
        test_replay_frames()
        test_live_frames()
        test_operator_toggles()
        test_update_params()

        print("\n" + "=" * 60)
        print("All app tests PASSED!")
        print("=" * 60)

    except Exception as e:
        print(f"\n❌ App test FAILED: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
