#!/usr/bin/env python3
"""
Headless GRPO training session for the biped walker.

Drives the same foreground loop a UI would: a background worker process runs
GRPO rounds while the foreground keeps stepping its own environment (replaying
the best trajectory of the last round, or running the current policy live).
After each round the foreground adopts the returned weights and immediately
requests the next round.

Outputs (under --output-dir):
    metrics.json                 per-round history + summary + config
    checkpoints/latest.pt        final policy ({"step", "cfg", "model"})
    checkpoints/round_<n>.pt     every --save-interval rounds

Usage:
    python -m bipedlab.rl.train_grpo_biped --rounds 20 --group-size 8 --episode-length 300
    python -m bipedlab.rl.train_grpo_biped --rounds 20 --resume latest
"""

from __future__ import annotations

import argparse
import json
import logging
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import torch

from bipedlab.rl.app import AppState, advance_frame, handle_message, start_training, stop_training
from bipedlab.rl.errors import UnavailableCollaboratorError
from bipedlab.rl.params import RewardParams, TrainParams
from bipedlab.rl.protocol import Failed, Ready, Trained
from bipedlab.rl.worker import InlineWorkerClient, WorkerClient
from bipedlab.utils.checkpointing import maybe_load_checkpoint, save_checkpoint

logger = logging.getLogger(__name__)


# ============================================================================
# Configuration
# ============================================================================

@dataclass
class BipedTrainConfig:
    """Configuration for a headless training session."""

    # Session
    rounds: int = 20
    seed: int = 42
    inline: bool = False
    init_timeout: float = 60.0
    frame_interval: float = 1.0 / 60.0
    max_frame_steps: int = 600

    # GRPO round
    group_size: int = 8
    episode_length: int = 300
    learning_rate: float = 1e-3
    entropy_coef: float = 0.01

    # Reward / physics
    r_vel: float = 1.0
    r_up: float = 1.0
    r_h: float = 1.0
    r_eff: float = 0.01
    r_fall: float = 10.0
    torque: float = 0.05
    friction: float = 1.0

    # Output
    output_dir: str = "out/grpo_biped"
    save_interval: int = 10
    resume: Optional[str] = None

    def reward_params(self) -> RewardParams:
        return RewardParams(
            r_vel=self.r_vel,
            r_up=self.r_up,
            r_h=self.r_h,
            r_eff=self.r_eff,
            r_fall=self.r_fall,
            torque=self.torque,
            friction=self.friction,
        ).validate()

    def train_params(self) -> TrainParams:
        return TrainParams(
            group_size=self.group_size,
            episode_length=self.episode_length,
            learning_rate=self.learning_rate,
            entropy_coef=self.entropy_coef,
        ).validate()


def _round_record(state: AppState, msg: Trained) -> Dict[str, Any]:
    r = msg.result
    return {
        "round": state.episode,
        "loss": r.loss,
        "policy_loss": r.policy_loss,
        "entropy": r.entropy,
        "clip_fraction": r.clip_fraction,
        "avg_reward": r.avg_reward,
        "best_reward": r.best_reward,
        "best_distance": r.best_distance,
        "num_steps": r.num_steps,
    }


# ============================================================================
# Session
# ============================================================================

def train_grpo_biped(config: BipedTrainConfig) -> Dict[str, Any]:
    """
    Run ``config.rounds`` GRPO rounds through the worker.

    Returns:
        Summary dictionary (also written to metrics.json)
    """
    print(f"\n{'='*60}")
    print("GRPO Biped Walker Training")
    print(f"{'='*60}")
    print(f"Output: {config.output_dir}")
    print(f"Rounds: {config.rounds}  G={config.group_size}  T={config.episode_length}")
    print(f"Worker: {'inline' if config.inline else 'process'}")
    print()

    torch.manual_seed(config.seed)
    np.random.seed(config.seed)

    output_dir = Path(config.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    state = AppState.create(config.reward_params(), config.train_params(), seed=config.seed)
    state.max_frame_steps = config.max_frame_steps

    ckpt = maybe_load_checkpoint(resume=config.resume, out_dir=output_dir)
    if ckpt is not None:
        state.policy.load_state_dict(ckpt["model"])
        state.episode = int(ckpt["step"])
        print(f"Resumed from round {state.episode}")

    target = state.episode + config.rounds
    history: List[Dict[str, Any]] = []
    frames = 0

    if config.inline:
        client = InlineWorkerClient(seed=config.seed)
    else:
        client = WorkerClient(seed=config.seed, log_level=logging.getLogger().level)
    client.start()
    try:
        reply = client.wait_for(Ready, Failed, timeout=config.init_timeout)
        state = handle_message(state, reply, client)
        if isinstance(reply, Failed):
            raise UnavailableCollaboratorError(f"worker failed to start: {reply.message}")

        state = start_training(state, client)
        while state.training and state.episode < target:
            for msg in client.poll():
                if isinstance(msg, Trained) and state.episode + 1 >= target:
                    state = stop_training(state)
                state = handle_message(state, msg, client)
                if isinstance(msg, Trained):
                    history.append(_round_record(state, msg))
                    if state.episode % config.save_interval == 0:
                        path = save_checkpoint(
                            out_dir=output_dir,
                            step=state.episode,
                            cfg=config,
                            model_state=state.policy.state_dict(),
                            name=f"round_{state.episode}.pt",
                        )
                        print(f"  Saved checkpoint: {path}")

            state = advance_frame(state)
            frames += 1
            if not config.inline and config.frame_interval > 0:
                time.sleep(config.frame_interval)
    finally:
        client.close()

    final_path = save_checkpoint(
        out_dir=output_dir,
        step=state.episode,
        cfg=config,
        model_state=state.policy.state_dict(),
    )
    print(f"\nModel saved: {final_path}")

    rewards = [h["avg_reward"] for h in history]
    summary = {
        "rounds_completed": len(history),
        "total_rounds": state.episode,
        "final_avg_reward": float(rewards[-1]) if rewards else 0.0,
        "best_avg_reward": float(max(rewards)) if rewards else 0.0,
        "best_distance": float(max(h["best_distance"] for h in history)) if history else 0.0,
        "final_loss": float(state.last_loss),
        "failed_rounds": state.failed_rounds,
        "last_error": state.last_error,
        "frames": frames,
    }

    metrics_path = output_dir / "metrics.json"
    with open(metrics_path, "w") as f:
        json.dump({"summary": summary, "history": history, "config": asdict(config)}, f, indent=2)
    print(f"Metrics saved: {metrics_path}")

    return summary


# ============================================================================
# Main
# ============================================================================

def main():
    parser = argparse.ArgumentParser(
        description="GRPO training for the 2D biped walker"
    )

    # Session
    parser.add_argument("--rounds", type=int, default=20,
                        help="Number of GRPO rounds to run")
    parser.add_argument("--seed", type=int, default=42,
                        help="Random seed")
    parser.add_argument("--inline", action="store_true",
                        help="Run the worker in-process instead of a separate process")
    parser.add_argument("--max-frame-steps", type=int, default=600,
                        help="Live-mode steps before the displayed episode restarts")

    # GRPO
    parser.add_argument("--group-size", type=int, default=8,
                        help="Rollouts per round")
    parser.add_argument("--episode-length", type=int, default=300,
                        help="Max steps per rollout")
    parser.add_argument("--lr", type=float, default=1e-3,
                        help="Learning rate")
    parser.add_argument("--entropy-coef", type=float, default=0.01,
                        help="Entropy coefficient")

    # Reward / physics
    parser.add_argument("--r-vel", type=float, default=1.0, help="Forward velocity weight")
    parser.add_argument("--r-up", type=float, default=1.0, help="Upright weight")
    parser.add_argument("--r-h", type=float, default=1.0, help="Torso height weight")
    parser.add_argument("--r-eff", type=float, default=0.01, help="Effort penalty weight")
    parser.add_argument("--r-fall", type=float, default=10.0, help="Fall penalty")
    parser.add_argument("--torque", type=float, default=0.05, help="Joint kick per unit action")
    parser.add_argument("--friction", type=float, default=1.0, help="Ground friction")

    # Output
    parser.add_argument("--output-dir", type=str, default="out/grpo_biped",
                        help="Output directory")
    parser.add_argument("--save-interval", type=int, default=10,
                        help="Rounds between checkpoints")
    parser.add_argument("--resume", type=str, default=None,
                        help="Checkpoint path or 'latest'")
    parser.add_argument("--verbose", action="store_true",
                        help="Debug logging")

    args = parser.parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    config = BipedTrainConfig(
        rounds=args.rounds,
        seed=args.seed,
        inline=args.inline,
        max_frame_steps=args.max_frame_steps,
        group_size=args.group_size,
        episode_length=args.episode_length,
        learning_rate=args.lr,
        entropy_coef=args.entropy_coef,
        r_vel=args.r_vel,
        r_up=args.r_up,
        r_h=args.r_h,
        r_eff=args.r_eff,
        r_fall=args.r_fall,
        torque=args.torque,
        friction=args.friction,
        output_dir=args.output_dir,
        save_interval=args.save_interval,
        resume=args.resume,
    )

    summary = train_grpo_biped(config)

    print(f"\n{'='*60}")
    print("Training Complete!")
    print(f"{'='*60}")
    print(f"Rounds: {summary['rounds_completed']} (total {summary['total_rounds']})")
    print(f"Final Avg Reward: {summary['final_avg_reward']:.2f}")
    print(f"Best Distance: {summary['best_distance']:.1f}")
    if summary["last_error"]:
        print(f"Stopped on error: {summary['last_error']}")


if __name__ == "__main__":
    main()
