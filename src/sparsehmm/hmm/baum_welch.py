"""Baum-Welch EM over sparse HMMs with multi-threaded sequence workers.

One EM step pulls observation sequences from a shared source, runs
forward-backward on each in a pool of worker threads, and accumulates
expected counts into shared log-space tallies guarded by a single lock.
The tallies are normalized once all sequences are consumed.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Sequence

import numpy as np

from sparsehmm.config import DEFAULT_N_WORKERS, EMConfig
from sparsehmm.types import HMM, EMResult, Obs, Transition
from sparsehmm.emissions.tabular import TabularEmitter
from sparsehmm.hmm.forward_backward import ForwardBackward
from sparsehmm.hmm.index import (
    NEG_INF,
    IndexCache,
    StateAccumulator,
    log_add_exp,
)

log = logging.getLogger(__name__)

_EXHAUSTED = object()


class _Tallies:
    """Expected counts for one EM step, in log space.

    Every mutation happens under self.lock and covers exactly one
    accumulation step (init, one timestep of transitions, or one timestep
    of emissions).
    """

    def __init__(self, cache: IndexCache):
        self.cache = cache
        self.lock = threading.Lock()
        self.init = cache.new_accumulator()
        self.init_total = NEG_INF
        self.from_totals = cache.new_accumulator()
        self.trans = StateAccumulator(cache.n_transitions)
        self.emissions: dict[int, dict] = {}
        self.emission_totals = cache.new_accumulator()
        self.log_likelihood = 0.0
        self.n_sequences = 0

    def add_sequence(self, model: HMM, obs: Sequence[Obs], fork_join: bool = True) -> None:
        cache = self.cache
        terminal = cache.terminal_index

        if not obs:
            if terminal is None:
                return
            with self.lock:
                self.init.accumulate_log(terminal, 0.0)
                self.init_total = log_add_exp(self.init_total, 0.0)
                self.log_likelihood += model.init.get(model.terminal_state, NEG_INF)
                self.n_sequences += 1
            return

        fb = ForwardBackward(model, obs, cache=cache, fork_join=fork_join)
        T = len(obs)
        ll = fb.log_likelihood()
        first = fb.posterior(0)
        with self.lock:
            self.init.accumulate_from(first)
            self.init_total = log_add_exp(self.init_total, 0.0)
            self.log_likelihood += ll
            self.n_sequences += 1

        last_t = T if terminal is not None else T - 1
        for t in range(1, last_t + 1):
            prior = fb.posterior(t - 1)
            records, log_cond = fb.transition_records(t)
            weights = log_cond + prior.values[cache.trans_from[records]]
            with self.lock:
                self.from_totals.accumulate_from(prior)
                self.trans.accumulate_log_many(records, weights)

        for t, o in enumerate(obs):
            post = fb.posterior(t)
            with self.lock:
                for i, value in post.items():
                    row = self.emissions.setdefault(i, {})
                    row[o] = log_add_exp(row.get(o, NEG_INF), value)
                self.emission_totals.accumulate_from(post)

    def to_model(self, model: HMM) -> HMM:
        """Normalize the tallies into a fresh HMM over the same states."""
        cache = self.cache
        states = cache.states

        init = {states[i]: value - self.init_total for i, value in self.init.items()}

        transitions = {}
        for r, value in self.trans.items():
            i = cache.trans_from[r]
            j = cache.trans_to[r]
            transitions[Transition(states[i], states[j])] = (
                value - float(self.from_totals.values[i])
            )

        table = {}
        for i, row in self.emissions.items():
            total = float(self.emission_totals.values[i])
            table[states[i]] = {o: value - total for o, value in row.items()}

        return model._replace(
            init=init,
            transitions=transitions,
            emitter=TabularEmitter(table),
        )


def _baum_welch_step(
    model: HMM,
    sequences: Iterable[Sequence[Obs]],
    n_workers: int,
    fork_join: bool = True,
) -> tuple[HMM, float]:
    """One EM step. Returns the updated model and the input model's total log-likelihood."""
    if n_workers < 1:
        raise ValueError(f"n_workers must be >= 1, got {n_workers}")

    cache = IndexCache.from_model(model)
    tallies = _Tallies(cache)

    source = iter(sequences)
    source_lock = threading.Lock()

    def next_sequence():
        with source_lock:
            return next(source, _EXHAUSTED)

    def worker() -> None:
        while True:
            obs = next_sequence()
            if obs is _EXHAUSTED:
                return
            tallies.add_sequence(model, list(obs), fork_join)

    with ThreadPoolExecutor(max_workers=n_workers) as pool:
        futures = [pool.submit(worker) for _ in range(n_workers)]
        for future in futures:
            future.result()

    log.debug(
        f"Baum-Welch step: {tallies.n_sequences} sequences on {n_workers} workers, "
        f"log-likelihood = {tallies.log_likelihood:.4f}"
    )
    return tallies.to_model(model), tallies.log_likelihood


def baum_welch(
    model: HMM,
    sequences: Iterable[Sequence[Obs]],
    n_workers: int | None = None,
) -> HMM:
    """Run one Baum-Welch step and return the re-estimated model.

    Args:
        model: Current HMM. Not modified.
        sequences: Finite iterable of observation sequences; consumed once.
        n_workers: Worker threads (default DEFAULT_N_WORKERS).

    Returns:
        HMM with the same states and terminal state, re-estimated init and
        transitions, and a TabularEmitter built from expected emission counts.
    """
    if n_workers is None:
        n_workers = DEFAULT_N_WORKERS
    new_model, _ = _baum_welch_step(model, sequences, n_workers)
    return new_model


def fit(
    model: HMM,
    sequences: Iterable[Sequence[Obs]],
    config: EMConfig | None = None,
) -> EMResult:
    """Run Baum-Welch EM until the log-likelihood stops improving.

    Args:
        model: Initial HMM.
        sequences: Observation sequences. Materialized once, reused every
            iteration.
        config: EM settings (default EMConfig()).

    Returns:
        EMResult with the fitted model and convergence info.
    """
    if config is None:
        config = EMConfig()
    sequences = [list(obs) for obs in sequences]

    log_likelihoods = []

    for iteration in range(config.max_iter):
        new_model, total_ll = _baum_welch_step(
            model, sequences, config.n_workers, config.inference.fork_join,
        )
        log_likelihoods.append(total_ll)
        log.info(f"EM iter {iteration}: log-likelihood = {total_ll:.4f}")

        if iteration > 0:
            prev_ll = log_likelihoods[-2]
            scale = max(abs(prev_ll), 1.0)
            if total_ll < prev_ll - config.decrease_tol * scale:
                log.warning(
                    f"Log-likelihood decreased at iteration {iteration}: "
                    f"{prev_ll:.6f} -> {total_ll:.6f}"
                )
            rel_change = abs(total_ll - prev_ll) / scale
            if rel_change < config.tol:
                log.info(
                    f"Converged at iteration {iteration} "
                    f"(rel_change={rel_change:.2e} < tol={config.tol:.2e})"
                )
                return EMResult(
                    model=model,
                    log_likelihoods=np.array(log_likelihoods),
                    converged=True,
                    n_iter=iteration + 1,
                )

        model = new_model

    log.warning(f"EM did not converge after {config.max_iter} iterations")
    return EMResult(
        model=model,
        log_likelihoods=np.array(log_likelihoods),
        converged=False,
        n_iter=config.max_iter,
    )
