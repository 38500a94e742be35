"""Messages exchanged between the foreground and the training worker.

One frozen dataclass per message kind. Each message has a plain-dict wire
form ``{"type": <tag>, "data": <payload or None>}``; ``to_wire`` and
``from_wire`` convert between the two and reject unknown tags.

Foreground -> worker: Init, SetParams, SetWeights, Train, GetWeights, Shutdown
Worker -> foreground: Ready, WeightsSet, Trained, Weights, Failed
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Union

from .grpo import RoundResult
from .params import RewardParams, TrainParams
from .policy import WeightBlob


@dataclass(frozen=True)
class Init:
    TYPE = "init"


@dataclass(frozen=True)
class Ready:
    TYPE = "ready"


@dataclass(frozen=True)
class SetParams:
    TYPE = "params"
    params: RewardParams


@dataclass(frozen=True)
class SetWeights:
    TYPE = "weights"
    weights: List[WeightBlob]


@dataclass(frozen=True)
class Train:
    TYPE = "train"
    params: TrainParams


@dataclass(frozen=True)
class WeightsSet:
    TYPE = "weightsSet"


@dataclass(frozen=True)
class Trained:
    TYPE = "trained"
    result: RoundResult


@dataclass(frozen=True)
class GetWeights:
    TYPE = "getWeights"


@dataclass(frozen=True)
class Weights:
    TYPE = "currentWeights"
    weights: List[WeightBlob]


@dataclass(frozen=True)
class Failed:
    """A request could not be served.

    stage: "init", "params", "weights" or "train"
    kind: error class name (ConfigurationError, TrainingRoundFailed, ...)
    """
    TYPE = "failed"
    stage: str
    kind: str
    message: str = ""


@dataclass(frozen=True)
class Shutdown:
    TYPE = "shutdown"


ToWorker = Union[Init, SetParams, SetWeights, Train, GetWeights, Shutdown]
FromWorker = Union[Ready, WeightsSet, Trained, Weights, Failed]
Message = Union[ToWorker, FromWorker]

_PAYLOAD_FREE = (Init, Ready, WeightsSet, GetWeights, Shutdown)
_BY_TYPE = {
    cls.TYPE: cls
    for cls in (Init, Ready, SetParams, SetWeights, Train, WeightsSet,
                Trained, GetWeights, Weights, Failed, Shutdown)
}


def to_wire(msg: Message) -> Dict[str, Any]:
    """Encode a message as plain values."""
    if isinstance(msg, _PAYLOAD_FREE):
        data = None
    elif isinstance(msg, SetParams):
        data = msg.params.to_dict()
    elif isinstance(msg, (SetWeights, Weights)):
        data = [w.to_dict() for w in msg.weights]
    elif isinstance(msg, Train):
        data = msg.params.to_dict()
    elif isinstance(msg, Trained):
        data = msg.result.to_dict()
    elif isinstance(msg, Failed):
        data = {"stage": msg.stage, "kind": msg.kind, "message": msg.message}
    else:
        raise TypeError(f"not a protocol message: {msg!r}")
    return {"type": msg.TYPE, "data": data}


def from_wire(wire: Dict[str, Any]) -> Message:
    """Decode a plain-dict message. Unknown tags raise ValueError."""
    tag = wire.get("type")
    cls = _BY_TYPE.get(tag)
    if cls is None:
        raise ValueError(f"unknown message type: {tag!r}")
    data = wire.get("data")

    if cls in _PAYLOAD_FREE:
        return cls()
    if cls is SetParams:
        return SetParams(RewardParams.from_dict(data))
    if cls is SetWeights:
        return SetWeights([WeightBlob.from_dict(w) for w in data])
    if cls is Weights:
        return Weights([WeightBlob.from_dict(w) for w in data])
    if cls is Train:
        return Train(TrainParams.from_dict(data))
    if cls is Trained:
        return Trained(RoundResult.from_dict(data))
    if cls is Failed:
        return Failed(stage=data["stage"], kind=data["kind"], message=data.get("message", ""))
    raise ValueError(f"unhandled message type: {tag!r}")
