"""Tabular (categorical) emission model for discrete observations.

Stores log P(obs | state) in a nested dict {state: {obs: log prob}}.
Unlisted (state, obs) pairs have probability zero. This is the emitter that
Baum-Welch re-estimates.
"""

from typing import Sequence

import numpy as np

from sparsehmm.types import Array, Obs, State

NEG_INF = -np.inf


class TabularEmitter:
    """Categorical emitter backed by a {state: {obs: log prob}} table."""

    def __init__(self, table: dict):
        self.table = {state: dict(row) for state, row in table.items()}

    @classmethod
    def from_probs(cls, probs: dict) -> "TabularEmitter":
        """Build from linear-space probabilities {state: {obs: p}}."""
        table = {}
        with np.errstate(divide="ignore"):
            for state, row in probs.items():
                table[state] = {o: float(np.log(p)) for o, p in row.items()}
        return cls(table)

    def log_probs(self, obs: Obs, states: Sequence[State]) -> Array:
        out = np.full(len(states), NEG_INF, dtype=np.float64)
        for i, state in enumerate(states):
            row = self.table.get(state)
            if row is not None:
                out[i] = row.get(obs, NEG_INF)
        return out

    def sample(self, rng: np.random.Generator, state: State) -> Obs:
        # Local import avoids a cycle: sampling builds TabularEmitters
        from sparsehmm.sampling import sample_index

        row = self.table[state]
        observations = list(row)
        probs = np.exp(np.fromiter(row.values(), dtype=np.float64, count=len(row)))
        return observations[sample_index(rng, probs)]

    def __eq__(self, other) -> bool:
        if not isinstance(other, TabularEmitter):
            return NotImplemented
        return self.table == other.table

    def __repr__(self) -> str:
        return f"TabularEmitter({self.table!r})"
