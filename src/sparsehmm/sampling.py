"""Generative sampling from an HMM and random model construction."""

from typing import Sequence

import numpy as np

from sparsehmm.types import Array, HMM, Obs, State, Transition
from sparsehmm.emissions.tabular import TabularEmitter


def sample_index(rng: np.random.Generator, probs: Sequence[float] | Array) -> int:
    """Draw an index from a categorical distribution by inverse CDF.

    probs need not be exactly normalized: if rounding leaves the uniform draw
    past the cumulative sum, the last index is returned.
    """
    probs = np.asarray(probs, dtype=np.float64)
    if probs.size == 0:
        raise ValueError("Cannot sample from an empty distribution")
    offset = rng.random()
    i = int(np.searchsorted(np.cumsum(probs), offset, side="right"))
    return min(i, probs.size - 1)


class _TransitionSampler:
    """Outgoing transition targets and linear probabilities per source state."""

    def __init__(self, transitions: dict):
        targets: dict = {}
        probs: dict = {}
        for (from_state, to_state), log_prob in transitions.items():
            targets.setdefault(from_state, []).append(to_state)
            probs.setdefault(from_state, []).append(np.exp(log_prob))
        self.targets = targets
        self.probs = {s: np.array(p) for s, p in probs.items()}

    def sample(self, rng: np.random.Generator, from_state: State) -> State:
        targets = self.targets.get(from_state)
        if not targets:
            raise ValueError(f"No transitions out of state {from_state!r}")
        return targets[sample_index(rng, self.probs[from_state])]


def _sample_start(model: HMM, rng: np.random.Generator) -> State:
    states = list(model.init)
    probs = np.exp(np.fromiter(model.init.values(), dtype=np.float64, count=len(states)))
    return states[sample_index(rng, probs)]


def sample(
    model: HMM,
    rng: np.random.Generator | None = None,
) -> tuple[list, list]:
    """Sample one (states, observations) pair until the terminal state.

    The terminal state itself is not part of the returned state sequence.
    Raises ValueError when the model has no terminal state, since the chain
    would never finish.
    """
    if model.terminal_state is None:
        raise ValueError("Cannot sample without a terminal state")
    if rng is None:
        rng = np.random.default_rng()

    states: list = []
    obs: list = []
    state = _sample_start(model, rng)

    sampler = None
    while state != model.terminal_state:
        states.append(state)
        obs.append(model.emitter.sample(rng, state))
        if sampler is None:
            sampler = _TransitionSampler(model.transitions)
        state = sampler.sample(rng, state)

    return states, obs


def sample_len(
    model: HMM,
    rng: np.random.Generator | None,
    n: int,
) -> tuple[list, list]:
    """Sample exactly n (state, observation) steps.

    Works without a terminal state. Raises ValueError if the chain enters the
    terminal state before n observations have been drawn.
    """
    if rng is None:
        rng = np.random.default_rng()

    states: list = []
    obs: list = []
    if n <= 0:
        return states, obs

    sampler = _TransitionSampler(model.transitions)
    state = _sample_start(model, rng)
    for step in range(n):
        if step > 0:
            state = sampler.sample(rng, states[-1])
        if model.terminal_state is not None and state == model.terminal_state:
            raise ValueError(f"Reached terminal state after {step} of {n} steps")
        states.append(state)
        obs.append(model.emitter.sample(rng, state))

    return states, obs


def random_model(
    rng: np.random.Generator,
    states: Sequence[State],
    observations: Sequence[Obs],
    terminal_state: State | None = None,
) -> HMM:
    """Fully connected HMM with Dirichlet(1) parameters and a tabular emitter.

    The terminal state (if given) has no initial mass, no outgoing
    transitions and no emissions; every other state can move to any state,
    the terminal included.
    """
    states = tuple(states)
    observations = list(observations)
    emitting = [s for s in states if s != terminal_state]

    init = dict(zip(emitting, np.log(rng.dirichlet(np.ones(len(emitting))))))

    transitions = {}
    for from_state in emitting:
        row = np.log(rng.dirichlet(np.ones(len(states))))
        for to_state, log_prob in zip(states, row):
            transitions[Transition(from_state, to_state)] = float(log_prob)

    table = {}
    for state in emitting:
        row = np.log(rng.dirichlet(np.ones(len(observations))))
        table[state] = {o: float(lp) for o, lp in zip(observations, row)}

    return HMM(
        states=states,
        emitter=TabularEmitter(table),
        init={s: float(lp) for s, lp in init.items()},
        transitions=transitions,
        terminal_state=terminal_state,
    )
