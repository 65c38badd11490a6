"""Log-space forward-backward algorithm over sparse state distributions.

All computation in log-space for numerical stability. States with zero
probability are omitted from every distribution rather than stored as -inf.

The forward and backward passes are generators producing one distribution
per observation. ForwardBackward runs both passes concurrently on a
ThreadPoolExecutor, drains them, and answers smoothing queries.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Iterator, Sequence

import numpy as np

from sparsehmm.types import Array, HMM, Obs
from sparsehmm.hmm.index import NEG_INF, IndexCache, StateAccumulator, log_sum_exp


def _forward_pass(
    model: HMM,
    obs: Sequence[Obs],
    cache: IndexCache,
) -> Iterator[StateAccumulator]:
    """Forward pass yielding index-level joint distributions.

    Yields, for each timestep t, log P(obs[:t+1], state_t) for every state
    with nonzero probability.
    """
    # Running distribution before the current emission: starts as the prior
    running = StateAccumulator.from_dict(model.init, cache.index)

    for o in obs:
        emission = cache.emission_log_probs(model.emitter, o)
        joint = running.values + emission  # absent entries stay -inf

        output = cache.new_accumulator()
        keep = running.present & (joint > NEG_INF)
        output.values[keep] = joint[keep]
        output.present[keep] = True
        yield output

        # sum_i joint[i] * A[i, j] for each destination j
        nxt = cache.new_accumulator()
        has_prior = running.present[cache.trans_from]
        contrib = joint[cache.trans_from] + cache.trans_log_prob
        nxt.accumulate_log_many(cache.trans_to[has_prior], contrib[has_prior])
        running = nxt


def _backward_init(cache: IndexCache) -> StateAccumulator:
    """Backward distribution for the state at the last observation.

    Without a terminal state every state is certain (log 1). With one, only
    states holding a direct edge into the terminal state can end the
    sequence; all others start absent.
    """
    running = cache.new_accumulator()
    if cache.terminal_index is None:
        running.values[:] = 0.0
        running.present[:] = True
        return running

    into_terminal = cache.trans_to == cache.terminal_index
    running.values[cache.trans_from[into_terminal]] = cache.trans_log_prob[into_terminal]
    running.present[cache.trans_from[into_terminal]] = True
    return running


def _backward_pass(
    model: HMM,
    obs: Sequence[Obs],
    cache: IndexCache,
) -> Iterator[StateAccumulator]:
    """Backward pass yielding index-level distributions in reverse time order.

    The k-th yielded distribution holds log P(obs[t+1:] | state_t) for
    t = len(obs) - 1 - k.
    """
    running = _backward_init(cache)

    for o in reversed(obs):
        yield running

        # sum_j A[i, j] * emission[j] * beta_next[j] for each source i
        emission = cache.emission_log_probs(model.emitter, o)
        nxt = cache.new_accumulator()
        has_next = running.present[cache.trans_to]
        contrib = (
            cache.trans_log_prob
            + running.values[cache.trans_to]
            + emission[cache.trans_to]
        )
        nxt.accumulate_log_many(cache.trans_from[has_next], contrib[has_next])
        running = nxt


def forward_probs(
    model: HMM,
    obs: Sequence[Obs],
    cache: IndexCache | None = None,
) -> Iterator[dict]:
    """Forward probabilities as {state: log joint} dicts, one per observation.

    The returned generator is one-shot: once consumed it cannot be replayed.
    """
    if cache is None:
        cache = IndexCache.from_model(model)
    for dist in _forward_pass(model, obs, cache):
        yield dist.to_dict(cache.states)


def backward_probs(
    model: HMM,
    obs: Sequence[Obs],
    cache: IndexCache | None = None,
) -> Iterator[dict]:
    """Backward probabilities as {state: log prob} dicts, last timestep first."""
    if cache is None:
        cache = IndexCache.from_model(model)
    for dist in _backward_pass(model, obs, cache):
        yield dist.to_dict(cache.states)


class ForwardBackward:
    """Smoothing results for a single observation sequence.

    Runs the forward and backward passes as two concurrent tasks sharing a
    read-only IndexCache, and blocks until both have been fully drained.

    Args:
        model: HMM to evaluate.
        obs: Observation sequence.
        cache: Optional prebuilt IndexCache for model.
        fork_join: Run the two passes on separate threads (default True).
    """

    def __init__(
        self,
        model: HMM,
        obs: Sequence[Obs],
        cache: IndexCache | None = None,
        fork_join: bool = True,
    ):
        self.model = model
        self.obs = list(obs)
        self.cache = cache if cache is not None else IndexCache.from_model(model)

        if fork_join:
            with ThreadPoolExecutor(max_workers=2) as pool:
                fwd = pool.submit(list, _forward_pass(model, self.obs, self.cache))
                bwd = pool.submit(list, _backward_pass(model, self.obs, self.cache))
                self._forward = fwd.result()
                self._backward = bwd.result()
        else:
            self._forward = list(_forward_pass(model, self.obs, self.cache))
            self._backward = list(_backward_pass(model, self.obs, self.cache))

        self._posteriors: dict[int, StateAccumulator] = {}

    def __len__(self) -> int:
        return len(self.obs)

    @property
    def forward(self) -> list[dict]:
        """Forward distributions in temporal order."""
        return [d.to_dict(self.cache.states) for d in self._forward]

    @property
    def backward(self) -> list[dict]:
        """Backward distributions in reverse temporal order."""
        return [d.to_dict(self.cache.states) for d in self._backward]

    def log_likelihood(self) -> float:
        """Log probability of the whole observation sequence."""
        if not self.obs:
            if self.model.terminal_state is None:
                return 0.0
            return self.model.init.get(self.model.terminal_state, NEG_INF)

        last_fwd = self._forward[-1]
        first_bwd = self._backward[0]
        both = last_fwd.present & first_bwd.present
        return log_sum_exp(last_fwd.values[both] + first_bwd.values[both])

    def posterior(self, t: int) -> StateAccumulator:
        """Index-level smoothed posterior at timestep t (memoized)."""
        T = len(self.obs)
        if not 0 <= t < T:
            raise ValueError(f"Timestep {t} outside [0, {T})")

        cached = self._posteriors.get(t)
        if cached is not None:
            return cached

        fwd = self._forward[t]
        bwd = self._backward[T - 1 - t]
        joint = fwd.values + bwd.values
        keep = fwd.present & bwd.present & (joint > NEG_INF)

        result = self.cache.new_accumulator()
        result.values[keep] = joint[keep]
        result.present[keep] = True
        result.shift_all(-result.total())

        self._posteriors[t] = result
        return result

    def dist(self, t: int) -> dict:
        """Smoothed posterior {state: log P(state_t | obs)}."""
        return self.posterior(t).to_dict(self.cache.states)

    def transition_records(self, t: int) -> tuple[Array, Array]:
        """Per-record conditional log P(state_t = to | state_{t-1} = from, obs).

        Args:
            t: Timestep in [1, len(obs)]. t == len(obs) refers to the state
                after the last observation.

        Returns:
            records: (R,) indices into the cache's transition arrays.
            log_cond: (R,) conditional log probabilities for those records.
        """
        T = len(self.obs)
        if not 1 <= t <= T:
            raise ValueError(f"Timestep {t} outside [1, {T}]")

        cache = self.cache
        prior = self.posterior(t - 1)

        keep = prior.present[cache.trans_from].copy()
        joint = prior.values[cache.trans_from] + cache.trans_log_prob

        if t < T:
            emission = cache.emission_log_probs(self.model.emitter, self.obs[t])
            bwd = self._backward[T - 1 - t]
            keep &= bwd.present[cache.trans_to]
            joint = joint + emission[cache.trans_to] + bwd.values[cache.trans_to]
        elif cache.terminal_index is not None:
            keep &= cache.trans_to == cache.terminal_index

        keep &= joint > NEG_INF
        records = np.flatnonzero(keep)

        from_totals = cache.new_accumulator()
        from_totals.accumulate_log_many(cache.trans_from[records], joint[records])
        log_cond = joint[records] - from_totals.values[cache.trans_from[records]]
        return records, log_cond

    def cond_dist(self, t: int) -> dict:
        """Conditional transition posteriors {from: {to: log P(to | from, obs)}}."""
        records, log_cond = self.transition_records(t)
        states = self.cache.states
        result: dict = {}
        for r, value in zip(records, log_cond):
            from_state = states[self.cache.trans_from[r]]
            to_state = states[self.cache.trans_to[r]]
            result.setdefault(from_state, {})[to_state] = float(value)
        return result


def log_likelihood(model: HMM, obs: Sequence[Obs]) -> float:
    """Log probability of an observation sequence under model."""
    return ForwardBackward(model, obs).log_likelihood()
