#!/usr/bin/env python3
"""
Tests for the Gaussian policy and weight transfer.
"""

import sys

import numpy as np
import torch

from bipedlab.rl.biped_env import ACTION_DIM, OBS_DIM
from bipedlab.rl.errors import ConfigurationError
from bipedlab.rl.policy import LOG_STD_MAX, LOG_STD_MIN, GaussianPolicy, WeightBlob


def _obs(seed: int = 0):
    return np.random.default_rng(seed).normal(size=OBS_DIM).tolist()


def test_forward_shapes():
    print("Testing GaussianPolicy forward...")
    policy = GaussianPolicy(seed=0)
    mean, std = policy(torch.randn(5, OBS_DIM))

    assert mean.shape == (5, ACTION_DIM)
    assert std.shape == (5, ACTION_DIM)
    assert torch.all(std >= np.exp(LOG_STD_MIN) - 1e-6)
    assert torch.all(std <= np.exp(LOG_STD_MAX) + 1e-6)
    print(f"  ✓ mean {tuple(mean.shape)}, std in [{std.min():.3f}, {std.max():.3f}]")


def test_layer_layout():
    policy = GaussianPolicy(seed=0)
    shapes = [tuple(p.shape) for p in policy.parameters()]
    assert shapes == [(48, OBS_DIM), (48,), (32, 48), (32,), (2 * ACTION_DIM, 32), (2 * ACTION_DIM,)]
    for p in list(policy.parameters())[1::2]:
        assert torch.all(p == 0), "biases start at zero"
    print(f"  ✓ parameter shapes: {shapes}")


def test_seed_reproducible():
    a = GaussianPolicy(seed=7)
    b = GaussianPolicy(seed=7)
    for wa, wb in zip(a.get_weights(), b.get_weights()):
        assert wa == wb
    print("  ✓ same seed -> same weights")


def test_seed_leaves_global_rng_alone():
    """Seeding a policy must not reset torch's global generator."""
    torch.manual_seed(5)
    GaussianPolicy(seed=0)
    after_a = torch.rand(4)

    torch.manual_seed(5)
    GaussianPolicy(seed=1)
    after_b = torch.rand(4)

    assert torch.equal(after_a, after_b)
    print("  ✓ policy seed is local to its own initialization")


def test_deterministic_without_exploration():
    print("\nTesting sample_action(explore=False)...")
    policy = GaussianPolicy(seed=0)
    obs = _obs()
    first = policy.sample_action(obs, explore=False)
    for _ in range(3):
        again = policy.sample_action(obs, explore=False)
        assert again.action == first.action
    mean, _ = policy.predict(obs)
    assert first.action == np.clip(mean, -1.0, 1.0).tolist()
    print(f"  ✓ action = clip(mean): {np.round(first.action, 3).tolist()}")


def test_exploration_is_clipped():
    policy = GaussianPolicy(seed=1)
    for i in range(50):
        sample = policy.sample_action(_obs(i), explore=True)
        assert len(sample.action) == ACTION_DIM
        assert all(-1.0 <= a <= 1.0 for a in sample.action)
        assert len(sample.mean) == len(sample.std) == ACTION_DIM
    print("  ✓ sampled actions stay in [-1, 1]")


def test_weight_round_trip():
    print("\nTesting weight transfer...")
    src = GaussianPolicy(seed=0)
    dst = GaussianPolicy(seed=1)
    obs = _obs(3)

    dst.set_weights(src.get_weights())

    for a, b in zip(src.get_weights(), dst.get_weights()):
        assert a.shape == b.shape
        assert a.data == b.data
    m1, s1 = src.predict(obs)
    m2, s2 = dst.predict(obs)
    assert np.array_equal(m1, m2) and np.array_equal(s1, s2)

    # Wire dicts are accepted too.
    dst2 = GaussianPolicy(seed=2)
    dst2.set_weights([w.to_dict() for w in src.get_weights()])
    assert dst2.get_weights() == src.get_weights()
    print("  ✓ get_weights/set_weights is exact")


def test_bad_weights_leave_policy_untouched():
    policy = GaussianPolicy(seed=0)
    before = policy.get_weights()

    wrong_shape = list(before)
    wrong_shape[-1] = WeightBlob(data=[0.0] * 3, shape=(3,))
    too_few = before[:-1]
    wrong_count = list(before)
    wrong_count[0] = WeightBlob(data=[1.0] * 5, shape=before[0].shape)

    for bad in (wrong_shape, too_few, wrong_count):
        try:
            policy.set_weights(bad)
        except ConfigurationError:
            pass
        else:
            raise AssertionError("invalid weights should be rejected")
        assert policy.get_weights() == before
    print("  ✓ invalid payloads rejected without partial writes")


def test_weights_finite():
    policy = GaussianPolicy(seed=0)
    assert policy.weights_finite()
    with torch.no_grad():
        next(policy.parameters())[0, 0] = float("nan")
    assert not policy.weights_finite()
    print("  ✓ non-finite weights detected")


def main():
    """Run all policy tests."""
    print("=" * 60)
    print("Gaussian Policy - Tests")
    print("=" * 60)

    try:
        test_forward_shapes()
        test_layer_layout()
        test_seed_reproducible()
        test_seed_leaves_global_rng_alone()
        test_deterministic_without_exploration()
        test_exploration_is_clipped()
        test_weight_round_trip()
        test_bad_weights_leave_policy_untouched()
        test_weights_finite()

        print("\n" + "=" * 60)
        print("All policy tests PASSED!")
        print("=" * 60)

    except Exception as e:
        print(f"\n❌ Policy test FAILED: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
