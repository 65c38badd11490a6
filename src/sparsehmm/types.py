"""Type aliases and named tuples for sparsehmm."""

from collections.abc import Hashable
from typing import Any, NamedTuple

import numpy as np

# Array type alias (numpy arrays)
Array = np.ndarray

# States and observations are opaque; states must be hashable.
State = Hashable
Obs = Any


class Transition(NamedTuple):
    """A directed edge between two hidden states."""
    from_state: State
    to_state: State


class HMM(NamedTuple):
    """Full HMM description.

    states: ordered, deduplicated tuple of hidden states
    emitter: object implementing the Emitter protocol
    init: {state: log initial probability}; absent states have -inf
    transitions: {Transition: log probability}; absent edges have -inf
    terminal_state: absorbing end-of-sequence state, or None
    """
    states: tuple
    emitter: Any
    init: dict
    transitions: dict
    terminal_state: State | None = None


class ViterbiResult(NamedTuple):
    """Results from Viterbi decoding.

    states: most likely state sequence (None if no path explains the data)
    log_prob: log probability of that path (-inf if absent)
    """
    states: list | None
    log_prob: float


class EMResult(NamedTuple):
    """Results from repeated Baum-Welch steps.

    model: HMM final parameters
    log_likelihoods: per-iteration total log-likelihood
    converged: bool
    n_iter: int
    """
    model: HMM
    log_likelihoods: Array
    converged: bool
    n_iter: int
