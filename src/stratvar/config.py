"""Run configuration for the sampling-variance pipeline.

Provides:
  1. A frozen ``PipelineConfig`` dataclass holding every tunable of a run
  2. Validation and conversion from plain mappings
  3. Loading from a YAML file
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml


DEFAULT_STRATUM_COUNTS: Tuple[int, ...] = tuple(range(5, 55, 5))

TRANSFORM_POLICIES = ("log", "identity")
DEGENERATE_STRATUM_POLICIES = ("reject", "zero")


@dataclass(frozen=True)
class PipelineConfig:
    """
    Settings shared by every field of a run.

    Attributes:
        transform: Scale the variogram is fitted on, ``"log"`` or ``"identity"``.
        measurement_error_coef: Relative measurement error of a count (0.064).
            On log scale the error variance is ``coef**2``; on natural scale it
            is ``(coef * count)**2`` per observation.
        zero_replacement: Value substituted for zero counts (half the reporting limit).
        mcmc_iterations: Total number of pooled chain states generated by the sampler.
        burn_in: Number of leading pooled states discarded.
        n_posterior: Number of posterior draws retained after thinning.
        n_chains: Number of parallel chains of the population sampler.
        snooker_probability: Probability of a snooker update instead of a
            parallel-direction update.
        archive_interval: Generations between archive updates.
        n_draws: Posterior draws used by the simulation stage.
        nsim: Simulated field replicates per posterior draw.
        stratum_counts: Candidate numbers of geostrata L.
        threshold: Target relative uncertainty (%) for the required sample size.
        degenerate_stratum_policy: ``"reject"`` raises on strata with fewer than
            two nodes, ``"zero"`` treats their variance as 0.
        lambda_prior_factor: Upper bound of the inverse-sill prior is
            ``lambda_prior_factor / var(z)``.
        range_prior_factor: Upper bound of the range prior is
            ``range_prior_factor * max(D)``.
        jitter: Relative diagonal jitter added to grid covariance matrices.
        seed: Base seed; every random stream is derived from it.
        draw_workers: Threads used for posterior draws within a field.
        field_workers: Processes used across fields in a batch run.
    """
    transform: str = "log"
    measurement_error_coef: float = 0.064
    zero_replacement: float = 0.5
    mcmc_iterations: int = 12000
    burn_in: int = 1000
    n_posterior: int = 1000
    n_chains: int = 3
    snooker_probability: float = 0.1
    archive_interval: int = 10
    n_draws: int = 100
    nsim: int = 100
    stratum_counts: Tuple[int, ...] = DEFAULT_STRATUM_COUNTS
    threshold: float = 50.0
    degenerate_stratum_policy: str = "reject"
    lambda_prior_factor: float = 1000.0
    range_prior_factor: float = 3.0
    jitter: float = 1e-10
    seed: int = 314
    draw_workers: int = 1
    field_workers: int = 1

    def __post_init__(self):
        if self.transform not in TRANSFORM_POLICIES:
            raise ValueError(f"transform must be one of {TRANSFORM_POLICIES}, got '{self.transform}'")
        if self.degenerate_stratum_policy not in DEGENERATE_STRATUM_POLICIES:
            raise ValueError(
                f"degenerate_stratum_policy must be one of {DEGENERATE_STRATUM_POLICIES}, "
                f"got '{self.degenerate_stratum_policy}'"
            )
        for name in ("mcmc_iterations", "n_posterior", "n_chains", "archive_interval",
                     "n_draws", "nsim", "draw_workers", "field_workers"):
            if int(getattr(self, name)) < 1:
                raise ValueError(f"{name} must be a positive integer")
        if self.burn_in < 0:
            raise ValueError("burn_in must be non-negative")
        if self.mcmc_iterations <= self.burn_in:
            raise ValueError("mcmc_iterations must exceed burn_in")
        if self.n_chains < 3:
            raise ValueError("n_chains must be at least 3 for differential-evolution proposals")
        if not 0.0 <= self.snooker_probability <= 1.0:
            raise ValueError("snooker_probability must lie in [0, 1]")
        if self.measurement_error_coef < 0:
            raise ValueError("measurement_error_coef must be non-negative")
        if self.zero_replacement <= 0:
            raise ValueError("zero_replacement must be positive")
        if not self.threshold > 0:
            raise ValueError("threshold must be positive")
        if self.lambda_prior_factor <= 0 or self.range_prior_factor <= 0:
            raise ValueError("prior factors must be positive")
        if self.jitter < 0:
            raise ValueError("jitter must be non-negative")
        counts = tuple(int(c) for c in self.stratum_counts)
        if not counts or any(c < 1 for c in counts):
            raise ValueError("stratum_counts must be a non-empty sequence of positive integers")
        if list(counts) != sorted(set(counts)):
            raise ValueError("stratum_counts must be strictly increasing")
        object.__setattr__(self, "stratum_counts", counts)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineConfig":
        """Create a PipelineConfig from a plain mapping, rejecting unknown keys."""
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {unknown}")
        kwargs = dict(data)
        if "stratum_counts" in kwargs:
            kwargs["stratum_counts"] = tuple(kwargs["stratum_counts"])
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        data["stratum_counts"] = list(self.stratum_counts)
        return data

    def replace(self, **changes) -> "PipelineConfig":
        return dataclasses.replace(self, **changes)


def load_config(path: Optional[Union[str, Path]] = None) -> PipelineConfig:
    """
    Load a PipelineConfig from a YAML file.

    Args:
        path: YAML file with top-level configuration keys, optionally nested
            under a ``pipeline`` section. If None, defaults are returned.

    Returns:
        PipelineConfig
    """
    if path is None:
        return PipelineConfig()
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file {path} must contain a mapping")
    if "pipeline" in data:
        data = data["pipeline"] or {}
    return PipelineConfig.from_dict(data)
