"""Pytest configuration and shared fixtures."""

import itertools
import math
import sys
from pathlib import Path

import pytest

# Ensure src is on the path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from sparsehmm.types import HMM, Transition  # noqa: E402
from sparsehmm.emissions.tabular import TabularEmitter  # noqa: E402


def make_testing_hmm() -> HMM:
    """4-state model A, B, C with terminal D over observations x, y, z."""
    emitter = TabularEmitter.from_probs({
        "A": {"x": 0.3, "z": 0.7},
        "B": {"x": 0.01, "y": 0.69, "z": 0.3},
        "C": {"x": 0.8, "y": 0.1, "z": 0.1},
    })
    trans = {
        ("A", "A"): 0.3, ("A", "B"): 0.2, ("A", "C"): 0.5,
        ("B", "A"): 0.5, ("B", "B"): 0.1, ("B", "C"): 0.2, ("B", "D"): 0.2,
        ("C", "A"): 0.3, ("C", "B"): 0.1, ("C", "C"): 0.1, ("C", "D"): 0.5,
    }
    return HMM(
        states=("A", "B", "C", "D"),
        emitter=emitter,
        init={"A": math.log(0.4), "C": math.log(0.5), "D": math.log(0.1)},
        transitions={Transition(*k): math.log(p) for k, p in trans.items()},
        terminal_state="D",
    )


def path_prob(model: HMM, path, obs) -> float:
    """Linear-space joint probability of a hidden path and observations."""
    def p_init(s):
        return math.exp(model.init.get(s, -math.inf))

    def p_trans(a, b):
        return math.exp(model.transitions.get((a, b), -math.inf))

    def p_emit(s, o):
        return math.exp(float(model.emitter.log_probs(o, [s])[0]))

    if not path:
        if model.terminal_state is None:
            return 1.0
        return p_init(model.terminal_state)

    prob = p_init(path[0]) * p_emit(path[0], obs[0])
    for t in range(1, len(path)):
        prob *= p_trans(path[t - 1], path[t]) * p_emit(path[t], obs[t])
    if model.terminal_state is not None:
        prob *= p_trans(path[-1], model.terminal_state)
    return prob


def enumerate_paths(model: HMM, obs) -> dict:
    """Joint probability of every hidden path of len(obs) non-terminal states."""
    hidden = [s for s in model.states if s != model.terminal_state]
    return {
        path: path_prob(model, path, obs)
        for path in itertools.product(hidden, repeat=len(obs))
    }


@pytest.fixture
def testing_hmm() -> HMM:
    return make_testing_hmm()


@pytest.fixture
def open_ended_hmm() -> HMM:
    """Testing model without a terminal state; D becomes a silent sink."""
    model = make_testing_hmm()
    transitions = dict(model.transitions)
    transitions[Transition("D", "D")] = 0.0
    table = dict(model.emitter.table)
    table["D"] = {"x": 0.0}
    return model._replace(
        emitter=TabularEmitter(table),
        transitions=transitions,
        terminal_state=None,
    )
