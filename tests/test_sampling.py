"""Tests for generative sampling and random model construction."""

import math

import numpy as np
import pytest

from sparsehmm.types import HMM, Transition
from sparsehmm.emissions.tabular import TabularEmitter
from sparsehmm.sampling import random_model, sample, sample_index, sample_len


class TestSampleIndex:
    def test_empty_rejected(self):
        with pytest.raises(ValueError, match="empty"):
            sample_index(np.random.default_rng(0), [])

    def test_frequencies(self):
        rng = np.random.default_rng(0)
        counts = np.bincount([sample_index(rng, [0.1, 0.6, 0.3]) for _ in range(30_000)])
        np.testing.assert_allclose(counts / counts.sum(), [0.1, 0.6, 0.3], atol=0.01)

    def test_rounding_shortfall_returns_last(self):
        """Probabilities summing to less than 1 put the leftover on the last index."""
        class FixedRng:
            def random(self):
                return 0.999

        assert sample_index(FixedRng(), [0.5, 0.4]) == 1

    def test_zero_mass_skipped(self):
        rng = np.random.default_rng(2)
        assert {sample_index(rng, [0.0, 1.0, 0.0]) for _ in range(100)} == {1}


class TestSample:
    def test_requires_terminal(self, open_ended_hmm):
        with pytest.raises(ValueError, match="terminal"):
            sample(open_ended_hmm, np.random.default_rng(0))

    def test_sequences_are_feasible(self, testing_hmm):
        """Every sampled (states, obs) pair has nonzero probability and no terminal."""
        rng = np.random.default_rng(0)
        for _ in range(200):
            states, obs = sample(testing_hmm, rng)
            assert len(states) == len(obs)
            assert "D" not in states
            if states:
                assert states[0] in ("A", "C")
                assert states[-1] in ("B", "C")
            for s, o in zip(states, obs):
                assert testing_hmm.emitter.log_probs(o, [s])[0] > -math.inf

    def test_empty_sequence_frequency(self, testing_hmm):
        """The sequence is empty exactly when the start state is terminal."""
        rng = np.random.default_rng(1)
        empties = sum(not sample(testing_hmm, rng)[0] for _ in range(5_000))
        assert empties / 5_000 == pytest.approx(0.1, abs=0.015)

    def test_dead_end_state(self):
        model = HMM(
            states=("a", "end"),
            emitter=TabularEmitter({"a": {0: 0.0}}),
            init={"a": 0.0},
            transitions={},
            terminal_state="end",
        )
        with pytest.raises(ValueError, match="No transitions"):
            sample(model, np.random.default_rng(0))


class TestSampleLen:
    def test_exact_length_without_terminal(self, open_ended_hmm):
        rng = np.random.default_rng(0)
        states, obs = sample_len(open_ended_hmm, rng, 25)
        assert len(states) == len(obs) == 25
        for a, b in zip(states, states[1:]):
            assert (a, b) in open_ended_hmm.transitions

    def test_zero_length(self, open_ended_hmm):
        assert sample_len(open_ended_hmm, np.random.default_rng(0), 0) == ([], [])

    def test_reaching_terminal_raises(self):
        model = HMM(
            states=("a", "end"),
            emitter=TabularEmitter({"a": {0: 0.0}}),
            init={"a": 0.0},
            transitions={Transition("a", "end"): 0.0},
            terminal_state="end",
        )
        with pytest.raises(ValueError, match="terminal"):
            sample_len(model, np.random.default_rng(0), 3)


class TestRandomModel:
    def test_structure(self):
        rng = np.random.default_rng(0)
        model = random_model(rng, range(5), "ab", terminal_state=4)

        assert model.states == (0, 1, 2, 3, 4)
        assert model.terminal_state == 4
        assert 4 not in model.init
        assert 4 not in model.emitter.table
        assert len(model.transitions) == 4 * 5
        assert all(t.from_state != 4 for t in model.transitions)

        assert sum(math.exp(v) for v in model.init.values()) == pytest.approx(1.0)
        for s in range(4):
            row = [math.exp(lp) for (a, _), lp in model.transitions.items() if a == s]
            assert sum(row) == pytest.approx(1.0)
            assert sum(math.exp(v) for v in model.emitter.table[s].values()) == pytest.approx(1.0)

    def test_without_terminal(self):
        model = random_model(np.random.default_rng(0), "pq", [0, 1, 2])
        assert model.terminal_state is None
        assert len(model.transitions) == 4
        assert set(model.init) == {"p", "q"}

    def test_seeded_models_repeat(self):
        a = random_model(np.random.default_rng(9), range(3), "xy")
        b = random_model(np.random.default_rng(9), range(3), "xy")
        assert a.init == b.init
        assert a.transitions == b.transitions
        assert a.emitter == b.emitter
