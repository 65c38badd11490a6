"""Configuration dataclasses for sparsehmm."""

import os
from dataclasses import dataclass, field

# Worker threads for multi-sequence Baum-Welch
DEFAULT_N_WORKERS = min(8, os.cpu_count() or 1)


@dataclass(frozen=True)
class InferenceConfig:
    """Per-sequence inference configuration."""
    fork_join: bool = True  # Run forward and backward passes concurrently


@dataclass(frozen=True)
class EMConfig:
    """Baum-Welch EM configuration."""
    max_iter: int = 100
    tol: float = 1e-4  # Relative log-likelihood convergence
    n_workers: int = DEFAULT_N_WORKERS
    decrease_tol: float = 1e-6  # Log-likelihood drop tolerated as float noise
    inference: InferenceConfig = field(default_factory=InferenceConfig)
