#!/usr/bin/env python3
"""
Tests for the biped environment.

Covers reset/determinism, the observation layout, the fall rule and the
shaped reward.
"""

import math
import sys

import numpy as np

from bipedlab.rl.biped_env import (
    ACTION_DIM,
    DT,
    GROUND_Y,
    OBS_DIM,
    OBS_NAMES,
    SURVIVAL_BONUS,
    BipedEnv,
    make_biped_env,
)
from bipedlab.rl.env_interface import Env
from bipedlab.rl.errors import ConfigurationError
from bipedlab.rl.params import RewardParams


def _shaping_off(**overrides) -> RewardParams:
    kw = dict(r_vel=0.0, r_up=0.0, r_h=0.0, r_eff=0.0, r_fall=10.0, torque=0.05, friction=1.0)
    kw.update(overrides)
    return RewardParams(**kw)


def _tip_over(env: BipedEnv, angle: float) -> None:
    """Rotate the whole skeleton rigidly about the torso so joints stay satisfied."""
    pivot = env.segments["torso"].position
    for body in env.segments.values():
        body.position = pivot + (body.position - pivot).rotated(angle)
        body.angle += angle


def test_reset_is_idempotent():
    """Two resets give the same observation and zero displacement."""
    print("Testing reset...")
    env = BipedEnv()
    s1 = env.reset()
    for _ in range(5):
        env.step([0.3] * ACTION_DIM, RewardParams())
    s2 = env.reset()
    s3 = env.reset()

    assert s1 == s2 == s3
    assert env.dist() == 0.0
    assert env.fallen is False
    assert env.steps == 0
    print("  ✓ reset restores the initial pose")


def test_observation_layout():
    print("\nTesting observation layout...")
    env = make_biped_env()
    state = env.get_state()

    assert isinstance(env, Env)
    assert len(state) == OBS_DIM == len(OBS_NAMES)
    assert all(math.isfinite(v) for v in state)
    obs = dict(zip(OBS_NAMES, state))
    assert obs["l_contact"] in (-1.0, 1.0)
    assert obs["r_contact"] in (-1.0, 1.0)
    # Torso starts 115 px above the ground.
    assert abs(obs["height"] - 1.15) < 1e-6
    assert obs["torso_vx"] == 0.0
    print(f"  ✓ {OBS_DIM} values, height={obs['height']:.2f}")


def test_zero_action_survival_bonus():
    """With shaping off, a surviving step is worth the survival bonus alone."""
    print("\nTesting survival bonus...")
    env = make_biped_env()
    result = env.step([0.0] * ACTION_DIM, _shaping_off())

    assert result.done is False
    assert abs(result.reward - SURVIVAL_BONUS) < 1e-9
    assert len(result.state) == OBS_DIM
    print(f"  ✓ reward={result.reward:.4f}")


def test_zero_action_default_reward():
    """Default weights add the upright and height terms to the bonus."""
    env = make_biped_env()
    params = RewardParams()
    result = env.step([0.0] * ACTION_DIM, params)

    torso = env.segments["torso"]
    height = min(max((GROUND_Y - torso.position.y) / 90.0, 0.0), 1.0)
    expected = (
        torso.velocity.x * DT * params.r_vel
        + 0.1 * params.r_up * (1.0 - abs(torso.angle))
        + 0.1 * params.r_h * height
        + SURVIVAL_BONUS
    )
    assert result.done is False
    assert abs(result.reward - expected) < 1e-6
    assert result.reward > SURVIVAL_BONUS + 0.15
    print(f"  ✓ default reward={result.reward:.4f}")


def test_forced_tilt_falls():
    print("\nTesting fall detection...")
    env = make_biped_env()
    params = RewardParams()
    _tip_over(env, 2.0)
    result = env.step([0.0] * ACTION_DIM, params)

    assert result.done is True
    assert env.fallen is True
    assert result.reward == -params.r_fall
    print(f"  ✓ tilted torso -> done, reward={result.reward}")


def test_fallen_env_is_frozen():
    print("\nTesting post-fall steps...")
    env = make_biped_env()
    params = RewardParams(r_fall=7.5)
    _tip_over(env, -2.0)
    first = env.step([0.0] * ACTION_DIM, params)
    steps_at_fall = env.steps

    later = [env.step([1.0] * ACTION_DIM, params) for _ in range(3)]
    for r in later:
        assert r.done is True
        assert r.reward == -7.5
        assert r.state == first.state
    assert env.steps == steps_at_fall
    print("  ✓ simulation does not advance after a fall")


def test_random_actions_never_raise():
    print("\nTesting random rollouts...")
    rng = np.random.default_rng(0)
    env = make_biped_env()
    params = RewardParams(torque=0.2)
    for _ in range(200):
        action = rng.uniform(-1.0, 1.0, ACTION_DIM).tolist()
        result = env.step(action, params)
        assert math.isfinite(result.reward)
        assert all(math.isfinite(v) for v in result.state)
        if result.done:
            assert result.reward == -params.r_fall
            break
    print(f"  ✓ {env.steps} steps, fallen={env.fallen}")


def test_bad_action_length():
    env = make_biped_env()
    try:
        env.step([0.0] * (ACTION_DIM - 1), RewardParams())
    except ConfigurationError:
        pass
    else:
        raise AssertionError("short action should be rejected")
    print("  ✓ wrong action length rejected")


def test_friction_applies_on_reset():
    env = make_biped_env(RewardParams(friction=0.3))
    assert env.friction == 0.3
    env.reset(0.8)
    assert env.friction == 0.8
    try:
        env.reset(-1.0)
    except ConfigurationError:
        pass
    else:
        raise AssertionError("negative friction should be rejected")
    assert env.ground_y == GROUND_Y
    print("  ✓ friction rebuilt on reset")


def main():
    """Run all environment tests."""
    print("=" * 60)
    print("Biped Environment - Tests")
    print("=" * 60)

    try:
        test_reset_is_idempotent()
        test_observation_layout()
        test_zero_action_survival_bonus()
        test_zero_action_default_reward()
        test_forced_tilt_falls()
        test_fallen_env_is_frozen()
        test_random_actions_never_raise()
        test_bad_action_length()
        test_friction_applies_on_reset()

        print("\n" + "=" * 60)
        print("All environment tests PASSED!")
        print("=" * 60)

    except Exception as e:
        print(f"\n❌ Environment test FAILED: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
