"""Gaussian emission model for continuous observations.

Each state emits a scalar drawn from its own normal distribution. Used for
continuous-valued sequences and in tests; Baum-Welch does not re-estimate it.
"""

from typing import Sequence

import numpy as np

from sparsehmm.types import Array, Obs, State


def gaussian_log_prob(
    obs: Array,
    means: Array,
    variances: Array,
) -> Array:
    """Compute log emission probabilities under Gaussian model.

    Args:
        obs: (T,) float observations.
        means: (K,) state means.
        variances: (K,) state variances.

    Returns:
        (T, K) log emission densities.
    """
    obs_2d = np.asarray(obs, dtype=np.float64)[:, None]  # (T, 1)
    mu = np.asarray(means, dtype=np.float64)[None, :]  # (1, K)
    var = np.asarray(variances, dtype=np.float64)[None, :]  # (1, K)

    log_prob = -0.5 * (
        np.log(2.0 * np.pi * var) + (obs_2d - mu) ** 2 / var
    )

    return log_prob


class GaussianEmitter:
    """Per-state normal emitter.

    Args:
        params: {state: (mean, variance)}. States not listed (e.g. a terminal
            state) never emit.
    """

    def __init__(self, params: dict):
        for state, (_, var) in params.items():
            if var <= 0:
                raise ValueError(f"Variance for state {state!r} must be positive, got {var}")
        self.params = {state: (float(m), float(v)) for state, (m, v) in params.items()}

    def log_probs(self, obs: Obs, states: Sequence[State]) -> Array:
        out = np.full(len(states), -np.inf, dtype=np.float64)
        idx = [i for i, s in enumerate(states) if s in self.params]
        if idx:
            means = np.array([self.params[states[i]][0] for i in idx])
            variances = np.array([self.params[states[i]][1] for i in idx])
            out[idx] = gaussian_log_prob(np.array([obs]), means, variances)[0]
        return out

    def sample(self, rng: np.random.Generator, state: State) -> float:
        mean, var = self.params[state]
        return float(rng.normal(mean, np.sqrt(var)))
