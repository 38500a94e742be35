"""Error kinds raised by the biped training stack.

Episode termination (the biped falling) is a normal terminal signal and never
raises. Everything here is surfaced to the operator; nothing is retried
automatically.
"""

from __future__ import annotations


class BipedLabError(Exception):
    """Base class for all bipedlab errors."""


class ConfigurationError(BipedLabError, ValueError):
    """Missing or invalid hyperparameter; rejected before any state is mutated."""


class UnavailableCollaboratorError(BipedLabError, RuntimeError):
    """The physics or learning library could not be loaded or initialized."""


class TrainingRoundFailed(BipedLabError, RuntimeError):
    """A gradient step produced a non-finite loss or non-finite weights.

    The previous policy weights are kept; the round counts as not having
    happened.
    """
