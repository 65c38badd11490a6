"""Log-space Viterbi algorithm over sparse state distributions.

Finds the most likely hidden state sequence (MAP estimate). Paths are kept
per final state as a score accumulator plus one backpointer array per
transition step; the winning sequence is recovered by backtracking.
"""

import logging
from typing import Sequence

import numpy as np

from sparsehmm.types import Array, HMM, Obs, State, ViterbiResult
from sparsehmm.hmm.index import NEG_INF, IndexCache, StateAccumulator

log = logging.getLogger(__name__)


def _transition_step(
    scores: StateAccumulator,
    cache: IndexCache,
) -> tuple[StateAccumulator, Array]:
    """Extend every live path through every transition.

    For each destination only the best incoming path survives. Exact ties go
    to the transition record examined later.

    Returns:
        new_scores: scores of the surviving paths, keyed by destination.
        backpointer: (K,) source index for each destination (-1 if none).
    """
    candidates = scores.values[cache.trans_from] + cache.trans_log_prob
    live = np.flatnonzero(scores.present[cache.trans_from] & (candidates > NEG_INF))

    new_scores = cache.new_accumulator()
    backpointer = np.full(cache.n_states, -1, dtype=np.int64)
    if live.size == 0:
        return new_scores, backpointer

    # Sort by destination, then score, then record order; the last record of
    # each destination group is the (latest) best one.
    order = live[np.lexsort((live, candidates[live], cache.trans_to[live]))]
    dest = cache.trans_to[order]
    is_last = np.append(dest[1:] != dest[:-1], True)
    winners = order[is_last]

    new_scores.values[cache.trans_to[winners]] = candidates[winners]
    new_scores.present[cache.trans_to[winners]] = True
    backpointer[cache.trans_to[winners]] = cache.trans_from[winners]
    return new_scores, backpointer


def _backtrack(final: int, backpointers: list[Array]) -> list[int]:
    path = [final]
    for backpointer in reversed(backpointers):
        path.append(int(backpointer[path[-1]]))
    path.reverse()
    return path


def _best_index(scores: StateAccumulator) -> int | None:
    """Highest-scoring present index; ties go to the later index."""
    best = None
    best_score = NEG_INF
    for i, score in scores.items():
        if score >= best_score:
            best = i
            best_score = score
    return best


def viterbi(model: HMM, obs: Sequence[Obs]) -> ViterbiResult:
    """Viterbi decoding of a single observation sequence.

    Args:
        model: HMM to decode with.
        obs: Observation sequence.

    Returns:
        ViterbiResult with the most likely state sequence and its log
        probability. If no hidden sequence can explain the observations
        (or the model has no states) states is None and log_prob is -inf.
    """
    obs = list(obs)
    cache = IndexCache.from_model(model)
    T = len(obs)
    terminal = cache.terminal_index

    scores = StateAccumulator.from_dict(model.init, cache.index)
    backpointers: list[Array] = []

    for t, o in enumerate(obs):
        # Paths collapsing to -inf stay present; transitions will not extend them.
        emission = cache.emission_log_probs(model.emitter, o)
        scores.values[scores.present] += emission[scores.present]

        if terminal is not None or t + 1 < T:
            scores, backpointer = _transition_step(scores, cache)
            backpointers.append(backpointer)

    if terminal is not None:
        score, present = scores.get(terminal)
        if not present:
            log.debug(f"No path reaches terminal state after {T} observations")
            return ViterbiResult(states=None, log_prob=NEG_INF)
        path = _backtrack(terminal, backpointers)[:-1]
        return ViterbiResult(states=[cache.states[i] for i in path], log_prob=score)

    if T == 0:
        # Zero timesteps are explained by the empty path with certainty.
        if cache.n_states == 0:
            return ViterbiResult(states=None, log_prob=NEG_INF)
        return ViterbiResult(states=[], log_prob=0.0)

    best = _best_index(scores)
    if best is None:
        return ViterbiResult(states=None, log_prob=NEG_INF)
    path = _backtrack(best, backpointers)
    return ViterbiResult(
        states=[cache.states[i] for i in path],
        log_prob=float(scores.values[best]),
    )


def most_likely(model: HMM, obs: Sequence[Obs]) -> list | None:
    """Most probable hidden state sequence, or None if none explains obs."""
    return viterbi(model, obs).states


def path_log_prob(model: HMM, states: Sequence[State], obs: Sequence[Obs]) -> float:
    """Joint log probability of a hidden path and the observations.

    Sums initial, transition and emission log probabilities along the path,
    plus the final hop into the terminal state when the model has one.
    """
    states = list(states)
    obs = list(obs)
    if len(states) != len(obs):
        raise ValueError(
            f"Path length {len(states)} does not match {len(obs)} observations"
        )

    terminal = model.terminal_state
    if not states:
        if terminal is None:
            return 0.0
        return model.init.get(terminal, NEG_INF)

    total = model.init.get(states[0], NEG_INF)
    for t, (state, o) in enumerate(zip(states, obs)):
        if t > 0:
            total += model.transitions.get((states[t - 1], state), NEG_INF)
        total += float(model.emitter.log_probs(o, [state])[0])
    if terminal is not None:
        total += model.transitions.get((states[-1], terminal), NEG_INF)
    return total
