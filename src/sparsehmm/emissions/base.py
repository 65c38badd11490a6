"""Emitter protocol shared by all emission models."""

from typing import Protocol, Sequence, runtime_checkable

import numpy as np

from sparsehmm.types import Array, Obs, State


@runtime_checkable
class Emitter(Protocol):
    """Per-state observation distribution.

    Any object with these two methods can be plugged into an HMM; no base
    class is required.
    """

    def sample(self, rng: np.random.Generator, state: State) -> Obs:
        """Draw one observation from state. Only defined for states with mass."""
        ...

    def log_probs(self, obs: Obs, states: Sequence[State]) -> Array:
        """(len(states),) log P(obs | state), -inf for impossible pairs."""
        ...
