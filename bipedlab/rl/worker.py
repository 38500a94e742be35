"""
Background training worker.

The worker owns its own policy copy, its own environments (built per episode
by the rollout collector) and a GRPOTrainer. It shares no memory with the
foreground: every request and reply crosses a multiprocessing queue in its
plain-dict wire form (``to_wire``/``from_wire``), so both sides only ever see
copies.

Rules:
- Messages are served strictly in order, one at a time. A SetParams that
  arrives while a round runs is applied to the next round.
- Nothing is trained until Init succeeded; before that every request is
  answered with Failed(kind="UnavailableCollaboratorError").
- A round either completes (Trained) or leaves the policy exactly as it was
  (Failed).

Usage:
    with WorkerClient(seed=0) as client:
        client.send(SetParams(RewardParams()))
        client.send(SetWeights(policy.get_weights()))
        client.send(Train(TrainParams(group_size=4, episode_length=50)))
        reply = client.wait_for(Trained, Failed)
"""

from __future__ import annotations

import logging
import multiprocessing as mp
import queue
from typing import List, Optional, Tuple, Type

import torch

from .biped_env import make_biped_env
from .errors import ConfigurationError, TrainingRoundFailed, UnavailableCollaboratorError
from .grpo import GRPOConfig, GRPOTrainer
from .params import RewardParams
from .policy import GaussianPolicy
from .protocol import (
    Failed,
    FromWorker,
    GetWeights,
    Init,
    Ready,
    SetParams,
    SetWeights,
    Shutdown,
    ToWorker,
    Train,
    Trained,
    Weights,
    WeightsSet,
    from_wire,
    to_wire,
)

logger = logging.getLogger(__name__)


def _failed(stage: str, err: BaseException) -> Failed:
    return Failed(stage=stage, kind=type(err).__name__, message=str(err))


_STAGE_BY_TAG = {SetParams.TYPE: "params", SetWeights.TYPE: "weights", Train.TYPE: "train"}


def decode_request(wire: dict) -> Tuple[Optional[ToWorker], List[FromWorker]]:
    """Decode one request; an invalid payload becomes a Failed reply instead."""
    try:
        return from_wire(wire), []
    except ConfigurationError as e:
        logger.warning(f"rejected {wire.get('type')!r} request: {e}")
        return None, [_failed(_STAGE_BY_TAG.get(wire.get("type"), "params"), e)]


class TrainingWorker:
    """Message handler for the background context."""

    def __init__(self, config: Optional[GRPOConfig] = None, seed: Optional[int] = None):
        self.config = config or GRPOConfig()
        self.seed = seed
        self.params = RewardParams()
        self.policy: Optional[GaussianPolicy] = None
        self.trainer: Optional[GRPOTrainer] = None

    @property
    def ready(self) -> bool:
        return self.trainer is not None

    def handle(self, msg: ToWorker) -> List[FromWorker]:
        """Serve one request and return the replies to post back."""
        if isinstance(msg, Init):
            return self._on_init()
        elif isinstance(msg, SetParams):
            return self._on_params(msg)
        elif isinstance(msg, SetWeights):
            return self._on_weights(msg)
        elif isinstance(msg, Train):
            return self._on_train(msg)
        elif isinstance(msg, GetWeights):
            if not self.ready:
                return [self._not_ready("weights")]
            return [Weights(self.policy.get_weights())]
        elif isinstance(msg, Shutdown):
            return []
        raise TypeError(f"worker cannot handle message: {msg!r}")

    def _not_ready(self, stage: str) -> Failed:
        return _failed(stage, UnavailableCollaboratorError("training worker is not initialized"))

    def _on_init(self) -> List[FromWorker]:
        try:
            # Building one environment checks the physics library end to end.
            make_biped_env(self.params)
            self.policy = GaussianPolicy(seed=self.seed)
            self.trainer = GRPOTrainer(self.policy, self.config)
        except UnavailableCollaboratorError as e:
            logger.error(f"worker init failed: {e}")
            self.policy, self.trainer = None, None
            return [_failed("init", e)]
        except Exception as e:
            logger.error(f"worker init failed: {e}")
            self.policy, self.trainer = None, None
            return [_failed("init", UnavailableCollaboratorError(str(e)))]
        logger.info("training worker ready")
        return [Ready()]

    def _on_params(self, msg: SetParams) -> List[FromWorker]:
        try:
            self.params = msg.params.validate()
        except ConfigurationError as e:
            logger.warning(f"rejected reward params: {e}")
            return [_failed("params", e)]
        return []

    def _on_weights(self, msg: SetWeights) -> List[FromWorker]:
        if not self.ready:
            return [self._not_ready("weights")]
        try:
            self.policy.set_weights(msg.weights)
        except ConfigurationError as e:
            logger.warning(f"rejected weights: {e}")
            return [_failed("weights", e)]
        return [WeightsSet()]

    def _on_train(self, msg: Train) -> List[FromWorker]:
        if not self.ready:
            return [self._not_ready("train")]

        params = self.params
        snapshot = {k: v.detach().clone() for k, v in self.policy.state_dict().items()}
        try:
            result = self.trainer.train(msg.params, params)
        except (ConfigurationError, TrainingRoundFailed) as e:
            logger.warning(f"training round failed: {e}")
            self.policy.load_state_dict(snapshot)
            return [_failed("train", e)]
        except Exception as e:
            logger.exception("unexpected error during training round")
            self.policy.load_state_dict(snapshot)
            return [_failed("train", e)]
        return [Trained(result)]


# ============================================================================
# Process entry point
# ============================================================================

def worker_main(inbox, outbox, seed: Optional[int] = None, log_level: int = logging.INFO) -> None:
    """Serve messages from ``inbox`` until Shutdown."""
    logging.basicConfig(level=log_level)
    torch.set_num_threads(1)
    worker = TrainingWorker(seed=seed)
    while True:
        msg, replies = decode_request(inbox.get())
        if isinstance(msg, Shutdown):
            logger.info("training worker shutting down")
            break
        if msg is not None:
            replies = worker.handle(msg)
        for reply in replies:
            outbox.put(to_wire(reply))


# ============================================================================
# Foreground side
# ============================================================================

class WorkerClient:
    """Spawns the worker process and exchanges messages with it."""

    def __init__(
        self,
        seed: Optional[int] = None,
        start_method: str = "spawn",
        log_level: int = logging.INFO,
    ):
        ctx = mp.get_context(start_method)
        self._inbox = ctx.Queue()
        self._outbox = ctx.Queue()
        self._pending: List[FromWorker] = []
        self.process = ctx.Process(
            target=worker_main,
            args=(self._inbox, self._outbox, seed, log_level),
            daemon=True,
        )

    def start(self) -> "WorkerClient":
        self.process.start()
        self.send(Init())
        return self

    def send(self, msg: ToWorker) -> None:
        self._inbox.put(to_wire(msg))

    def _check_alive(self) -> None:
        if not self.process.is_alive():
            raise UnavailableCollaboratorError(
                f"training worker exited (code {self.process.exitcode})"
            )

    def poll(self) -> List[FromWorker]:
        """Return every reply received so far without blocking."""
        replies, self._pending = self._pending, []
        while True:
            try:
                replies.append(from_wire(self._outbox.get_nowait()))
            except queue.Empty:
                break
        if not replies:
            self._check_alive()
        return replies

    def wait_for(self, *types: Type, timeout: Optional[float] = None) -> FromWorker:
        """Block until a reply of one of ``types`` arrives; others stay queued for poll()."""
        for i, msg in enumerate(self._pending):
            if isinstance(msg, types):
                return self._pending.pop(i)
        while True:
            try:
                msg = from_wire(self._outbox.get(timeout=timeout if timeout is not None else 1.0))
            except queue.Empty:
                self._check_alive()
                if timeout is not None:
                    raise TimeoutError(f"no {[t.__name__ for t in types]} reply within {timeout}s")
                continue
            if isinstance(msg, types):
                return msg
            self._pending.append(msg)

    def close(self, timeout: float = 5.0) -> None:
        if self.process.is_alive():
            self.send(Shutdown())
            self.process.join(timeout)
        if self.process.is_alive():
            logger.warning("training worker did not exit; terminating")
            self.process.terminate()
            self.process.join(timeout)

    def __enter__(self) -> "WorkerClient":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.close()


class InlineWorkerClient:
    """Same interface as WorkerClient, served in-process on poll().

    ``send`` only queues; the queued requests are handled when the
    foreground polls. Messages go through the same wire form as the process
    client, so neither side shares objects with the other. Used by tests and
    for single-process debugging.
    """

    def __init__(self, seed: Optional[int] = None, config: Optional[GRPOConfig] = None):
        self.worker = TrainingWorker(config=config, seed=seed)
        self._requests: List[dict] = []
        self._pending: List[FromWorker] = []
        self.closed = False

    def start(self) -> "InlineWorkerClient":
        self.send(Init())
        return self

    def send(self, msg: ToWorker) -> None:
        self._requests.append(to_wire(msg))

    def _drain(self) -> None:
        requests, self._requests = self._requests, []
        for wire in requests:
            msg, replies = decode_request(wire)
            if isinstance(msg, Shutdown):
                self.closed = True
                continue
            if msg is not None:
                replies = self.worker.handle(msg)
            self._pending.extend(from_wire(to_wire(r)) for r in replies)

    def poll(self) -> List[FromWorker]:
        self._drain()
        replies, self._pending = self._pending, []
        return replies

    def wait_for(self, *types: Type, timeout: Optional[float] = None) -> FromWorker:
        self._drain()
        for i, msg in enumerate(self._pending):
            if isinstance(msg, types):
                return self._pending.pop(i)
        raise TimeoutError(f"no {[t.__name__ for t in types]} reply pending")

    def close(self, timeout: float = 5.0) -> None:
        self.send(Shutdown())
        self._drain()

    def __enter__(self) -> "InlineWorkerClient":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.close()
