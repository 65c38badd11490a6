"""Index-based performance layer shared by all HMM algorithms.

States are opaque hashable values. Every inference call first builds an
IndexCache mapping states to dense integers and flattening the transition
table into parallel numpy arrays, so the inner loops run over integer
indices instead of hashing states.

Distributions over states are held in StateAccumulator objects: a dense
float64 array of log values plus a boolean presence mask. Absent entries
always hold -inf, which lets numpy ufuncs treat them as zero probability.
"""

import math
from dataclasses import dataclass

import numpy as np

from sparsehmm.types import Array, HMM

NEG_INF = -math.inf


def log_add_exp(x: float, y: float) -> float:
    """log(exp(x) + exp(y)) with max-shifting.

    Returns -inf when both inputs are -inf instead of evaluating log(0).
    """
    m = max(x, y)
    if m == NEG_INF:
        return NEG_INF
    return m + math.log(math.exp(x - m) + math.exp(y - m))


def log_sum_exp(values) -> float:
    """Log-sum-exp over an array or iterable. Empty input gives -inf."""
    if isinstance(values, np.ndarray):
        arr = values.astype(np.float64, copy=False)
    else:
        arr = np.fromiter(values, dtype=np.float64)
    if arr.size == 0:
        return NEG_INF
    m = arr.max()
    if m == NEG_INF:
        return NEG_INF
    return float(m + np.log(np.sum(np.exp(arr - m))))


class StateAccumulator:
    """Presence-tracked map from state index to an accumulated log value."""

    __slots__ = ("values", "present")

    def __init__(self, size: int):
        self.values = np.full(size, NEG_INF, dtype=np.float64)
        self.present = np.zeros(size, dtype=bool)

    @classmethod
    def from_dict(cls, mapping: dict, index: dict) -> "StateAccumulator":
        """Build from a {state: log value} mapping; unknown states are ignored."""
        acc = cls(len(index))
        for state, value in mapping.items():
            i = index.get(state)
            if i is not None:
                acc.set(i, value)
        return acc

    def __len__(self) -> int:
        return len(self.values)

    def get(self, i: int) -> tuple[float, bool]:
        return float(self.values[i]), bool(self.present[i])

    def set(self, i: int, value: float) -> None:
        self.values[i] = value
        self.present[i] = True

    def accumulate_log(self, i: int, value: float) -> None:
        """Add exp(value) to entry i in the log domain. -inf is a no-op."""
        if value == NEG_INF:
            return
        if self.present[i]:
            self.set(i, log_add_exp(float(self.values[i]), value))
        else:
            self.set(i, value)

    def accumulate_log_many(self, indices: Array, values: Array) -> None:
        """Vectorized accumulate_log; repeated indices are combined."""
        keep = values > NEG_INF
        if not keep.any():
            return
        idx = indices[keep]
        # Absent entries hold -inf, so logaddexp(-inf, v) == v initializes them.
        np.logaddexp.at(self.values, idx, values[keep])
        self.present[idx] = True

    def accumulate_from(self, other: "StateAccumulator") -> None:
        """Accumulate every present entry of another accumulator."""
        idx = np.flatnonzero(other.present)
        self.accumulate_log_many(idx, other.values[idx])

    def shift_all(self, delta: float) -> None:
        """Add delta to every present entry."""
        self.values[self.present] += delta

    def indices(self) -> Array:
        return np.flatnonzero(self.present)

    def items(self):
        """Yield (index, value) for present entries in index order."""
        for i in np.flatnonzero(self.present):
            yield int(i), float(self.values[i])

    def total(self) -> float:
        """Log-sum-exp over the present entries."""
        return log_sum_exp(self.values[self.present])

    def to_dict(self, states: tuple) -> dict:
        return {states[i]: value for i, value in self.items()}


@dataclass(frozen=True)
class IndexCache:
    """State<->index bijection and flattened transition records for one model.

    trans_from, trans_to: (M,) int64 state indices of each transition record
    trans_log_prob: (M,) float64 log probabilities, copied verbatim
    """
    states: tuple
    index: dict
    trans_from: Array
    trans_to: Array
    trans_log_prob: Array
    terminal_index: int | None = None

    @classmethod
    def from_model(cls, model: HMM) -> "IndexCache":
        states = tuple(model.states)
        index = {state: i for i, state in enumerate(states)}

        n_trans = len(model.transitions)
        trans_from = np.empty(n_trans, dtype=np.int64)
        trans_to = np.empty(n_trans, dtype=np.int64)
        trans_log_prob = np.empty(n_trans, dtype=np.float64)
        for r, (trans, log_prob) in enumerate(model.transitions.items()):
            from_state, to_state = trans
            if from_state not in index or to_state not in index:
                raise ValueError(
                    f"Transition {from_state!r} -> {to_state!r} references a "
                    f"state that is not in the model"
                )
            trans_from[r] = index[from_state]
            trans_to[r] = index[to_state]
            trans_log_prob[r] = log_prob

        terminal_index = None
        if model.terminal_state is not None:
            if model.terminal_state not in index:
                raise ValueError(
                    f"Terminal state {model.terminal_state!r} is not in the model"
                )
            terminal_index = index[model.terminal_state]

        return cls(
            states=states,
            index=index,
            trans_from=trans_from,
            trans_to=trans_to,
            trans_log_prob=trans_log_prob,
            terminal_index=terminal_index,
        )

    @property
    def n_states(self) -> int:
        return len(self.states)

    @property
    def n_transitions(self) -> int:
        return len(self.trans_log_prob)

    def new_accumulator(self) -> StateAccumulator:
        return StateAccumulator(self.n_states)

    def emission_log_probs(self, emitter, obs) -> Array:
        """(K,) log P(obs | state) for every state, in index order."""
        log_probs = np.asarray(emitter.log_probs(obs, self.states), dtype=np.float64)
        if log_probs.shape != (self.n_states,):
            raise ValueError(
                f"Emitter returned shape {log_probs.shape}, expected ({self.n_states},)"
            )
        return log_probs
