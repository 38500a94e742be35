from __future__ import annotations

from dataclasses import asdict
from pathlib import Path
from typing import Any

import torch


def _ensure_dir(p: Path) -> Path:
    p.mkdir(parents=True, exist_ok=True)
    return p


def checkpoint_dir(out_dir: str | Path) -> Path:
    return Path(out_dir) / "checkpoints"


def save_checkpoint(
    *,
    out_dir: str | Path,
    step: int,
    cfg: Any,
    model_state: dict[str, Any],
    extra: dict[str, Any] | None = None,
    name: str = "latest.pt",
) -> Path:
    """Save a policy checkpoint under ``<out_dir>/checkpoints/<name>``.

    step is the number of completed training rounds.
    cfg can be a dataclass or plain dict.
    """

    path = _ensure_dir(checkpoint_dir(out_dir)) / name

    if hasattr(cfg, "__dataclass_fields__"):
        cfg_blob = asdict(cfg)
    elif isinstance(cfg, dict):
        cfg_blob = dict(cfg)
    else:
        cfg_blob = {"repr": repr(cfg)}

    payload = {
        "step": int(step),
        "cfg": cfg_blob,
        "model": model_state,
    }
    if extra:
        payload.update(extra)

    torch.save(payload, path)
    return path


def maybe_load_checkpoint(
    *,
    resume: str | None,
    out_dir: str | Path | None = None,
) -> dict[str, Any] | None:
    """Load a checkpoint if requested.

    resume supports:
      - None: return None
      - "latest": <out_dir>/checkpoints/latest.pt
      - explicit path
    """

    if resume is None:
        return None

    if resume == "latest":
        if out_dir is None:
            raise ValueError("resume='latest' needs out_dir")
        p = checkpoint_dir(out_dir) / "latest.pt"
    else:
        p = Path(resume)
    if not p.exists():
        raise FileNotFoundError(f"Checkpoint not found: {p}")

    ckpt = torch.load(p, map_location="cpu")
    if not isinstance(ckpt, dict) or "model" not in ckpt:
        raise ValueError(f"Unexpected checkpoint format: {p}")
    return ckpt
