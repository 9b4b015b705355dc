"""Posterior sampling of exponential variogram parameters.

Provides:
- DifferentialEvolutionSampler: population MCMC (DE-MC with snooker update and
  a growing archive of past states, "DE-MC-ZS")
- PosteriorSample: immutable sequence of posterior draws of (lam, tau2rel, phi)
- sample_posterior: MLE seeding plus sampling for one field

The sampler does not assess convergence; callers choose the iteration budget.
"""

from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .config import PipelineConfig
from .dataset import SpatialDataset
from .variogram import (
    PARAM_NAMES,
    MaximumLikelihoodInitializer,
    MLEResult,
    PriorBox,
    VariogramLikelihood,
    VariogramParams,
    from_internal,
    log_jacobian,
    to_internal,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PosteriorSample:
    """
    Posterior draws for one field.

    Attributes
    ----------
    draws : np.ndarray
        (n, 3) array of (lam, tau2rel, phi), read-only.
    log_likelihood : np.ndarray
        Log-likelihood of every draw.
    field_id : str | None
    acceptance_rate : float
        Fraction of accepted proposals over the whole run (NaN if unknown).
    """

    draws: np.ndarray
    log_likelihood: np.ndarray
    field_id: Optional[str] = None
    acceptance_rate: float = float("nan")

    def __post_init__(self):
        draws = np.array(self.draws, dtype=float)
        if draws.ndim != 2 or draws.shape[1] != 3:
            raise ValueError(f"draws must have shape (n, 3), got {draws.shape}")
        if draws.shape[0] == 0:
            raise ValueError("A posterior sample needs at least one draw")
        ll = np.array(self.log_likelihood, dtype=float).ravel()
        if ll.size != draws.shape[0]:
            raise ValueError("log_likelihood must have one value per draw")
        draws.setflags(write=False)
        ll.setflags(write=False)
        object.__setattr__(self, "draws", draws)
        object.__setattr__(self, "log_likelihood", ll)

    def __len__(self) -> int:
        return int(self.draws.shape[0])

    def __getitem__(self, index: int) -> VariogramParams:
        return VariogramParams.from_array(self.draws[index])

    def __iter__(self) -> Iterator[VariogramParams]:
        for i in range(len(self)):
            yield self[i]

    @property
    def lam(self) -> np.ndarray:
        return self.draws[:, 0]

    @property
    def tau2rel(self) -> np.ndarray:
        return self.draws[:, 1]

    @property
    def phi(self) -> np.ndarray:
        return self.draws[:, 2]

    @property
    def sill(self) -> np.ndarray:
        return 1.0 / self.lam

    @property
    def nugget(self) -> np.ndarray:
        return self.tau2rel * self.sill

    @property
    def psill(self) -> np.ndarray:
        return self.sill - self.nugget

    def thin(self, n: int) -> List[Tuple[int, VariogramParams]]:
        """Return ``n`` evenly spaced (index, params) pairs."""
        if n < 1:
            raise ValueError("n must be positive")
        if n >= len(self):
            idx = np.arange(len(self))
        else:
            idx = np.unique(np.linspace(0, len(self) - 1, n).round().astype(int))
        return [(int(i), self[int(i)]) for i in idx]

    def credible_interval(self, name: str, level: float = 0.9) -> Tuple[float, float]:
        """Equal-tailed credible interval for a parameter or derived quantity."""
        if not 0 < level < 1:
            raise ValueError("level must lie in (0, 1)")
        values = self._values(name)
        alpha = (1.0 - level) / 2.0
        lo, hi = np.quantile(values, [alpha, 1.0 - alpha])
        return float(lo), float(hi)

    def _values(self, name: str) -> np.ndarray:
        if name not in PARAM_NAMES + ("sill", "nugget", "psill"):
            raise KeyError(f"Unknown quantity '{name}'")
        return np.asarray(getattr(self, name))

    def summary(self) -> pd.DataFrame:
        """Mean, median and 5/95% quantiles of parameters and derived quantities."""
        rows = {}
        for name in PARAM_NAMES + ("sill", "nugget", "psill"):
            v = self._values(name)
            rows[name] = {
                "mean": float(np.mean(v)),
                "median": float(np.median(v)),
                "q05": float(np.quantile(v, 0.05)),
                "q95": float(np.quantile(v, 0.95)),
            }
        return pd.DataFrame.from_dict(rows, orient="index")

    def to_frame(self) -> pd.DataFrame:
        df = pd.DataFrame(self.draws, columns=list(PARAM_NAMES))
        df["log_likelihood"] = self.log_likelihood
        df.index.name = "draw"
        return df

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        field_id: Optional[str] = None,
        acceptance_rate: float = float("nan"),
    ) -> "PosteriorSample":
        missing = set(PARAM_NAMES) - set(df.columns)
        if missing:
            raise ValueError(f"Posterior frame is missing columns: {sorted(missing)}")
        ll = df["log_likelihood"].to_numpy() if "log_likelihood" in df.columns else np.full(len(df), np.nan)
        return cls(
            draws=df[list(PARAM_NAMES)].to_numpy(dtype=float),
            log_likelihood=ll,
            field_id=field_id,
            acceptance_rate=acceptance_rate,
        )


@dataclass
class _ChainState:
    u: np.ndarray
    theta: np.ndarray
    log_post: float
    log_lik: float


@dataclass
class SamplerTrace:
    """Pooled chain states in generation order."""

    states: np.ndarray
    log_likelihood: np.ndarray
    accepted: int = 0
    proposed: int = 0
    archive_size: int = 0

    @property
    def acceptance_rate(self) -> float:
        return self.accepted / self.proposed if self.proposed else float("nan")


class DifferentialEvolutionSampler:
    """
    DE-MC-ZS sampler for a posterior ∝ likelihood × uniform box prior.

    Each generation updates every chain once. With probability
    ``snooker_probability`` the update is a snooker move along the line
    through the current state and a random archive member; otherwise it is a
    parallel-direction move using the difference of two archive members. The
    current chain states are appended to the archive every
    ``archive_interval`` generations.

    Chains move in (log lam, tau2rel, log phi), where the sill / range ridge
    of the exponential likelihood is close to straight. The target includes
    the log-Jacobian of that map, so the draws follow the posterior in
    (lam, tau2rel, phi). Proposals outside the prior box, or with a likelihood
    of ``-inf``, are rejected like any other proposal.
    """

    def __init__(
        self,
        log_likelihood: Callable[[Sequence[float]], float],
        box: PriorBox,
        n_chains: int = 3,
        snooker_probability: float = 0.1,
        archive_interval: int = 10,
        initial_archive_size: Optional[int] = None,
        initial_spread: Tuple[float, float] = (1.0, 1.0),
        epsilon: float = 1e-4,
        seed: Optional[int] = None,
    ):
        if n_chains < 3:
            raise ValueError("n_chains must be at least 3")
        if len(box.lower) != 3 or box.lower[0] <= 0 or box.lower[2] <= 0:
            raise ValueError("The prior box must bound (lam, tau2rel, phi) with positive lower limits for lam and phi")
        self.log_likelihood = log_likelihood
        self.box = box
        self.n_chains = int(n_chains)
        self.snooker_probability = float(snooker_probability)
        self.archive_interval = int(archive_interval)
        self.n_dim = len(box.lower)
        self.initial_archive_size = initial_archive_size or 10 * self.n_dim
        self.initial_spread = np.asarray(initial_spread, dtype=float)
        self.epsilon = float(epsilon)
        self.seed = seed
        self.gamma = 2.38 / math.sqrt(2.0 * self.n_dim)
        self._lower = to_internal(box.lower_array)
        self._upper = to_internal(box.upper_array)

    # ------------------------------------------------------------------ #
    # Target density
    # ------------------------------------------------------------------ #
    def _evaluate(self, u: np.ndarray) -> Tuple[float, float, np.ndarray]:
        """Log target in internal coordinates, log-likelihood and the box point."""
        if np.any(u < self._lower) or np.any(u > self._upper):
            return -np.inf, -np.inf, u
        theta = self.box.clip(from_internal(u))
        lp = self.box.log_prior(theta)
        if not np.isfinite(lp):
            return -np.inf, -np.inf, theta
        ll = self.log_likelihood(theta)
        if not np.isfinite(ll):
            return -np.inf, -np.inf, theta
        return lp + ll + log_jacobian(u), ll, theta

    def _initial_archive(self, start: np.ndarray, rng: np.random.Generator) -> np.ndarray:
        """
        Overdispersed archive in internal coordinates: normal spread of
        log lam and log phi around the start, tau2rel uniform over its prior
        range, clipped to the box. The first row is the start itself.
        """
        m = self.initial_archive_size
        u_start = to_internal(start)
        Z = np.empty((m, self.n_dim))
        Z[:, 0] = u_start[0] + rng.standard_normal(m) * self.initial_spread[0]
        Z[:, 1] = self.box.sample(rng, m)[:, 1]
        Z[:, 2] = u_start[2] + rng.standard_normal(m) * self.initial_spread[1]
        Z = np.clip(Z, self._lower, self._upper)
        Z[0] = u_start
        return Z

    # ------------------------------------------------------------------ #
    # Moves
    # ------------------------------------------------------------------ #
    def _pick(self, archive_len: int, k: int, rng: np.random.Generator) -> np.ndarray:
        return rng.choice(archive_len, size=k, replace=False)

    def _parallel_move(self, u: np.ndarray, Z: np.ndarray, rng: np.random.Generator) -> Tuple[np.ndarray, float]:
        r1, r2 = self._pick(len(Z), 2, rng)
        gamma = 1.0 if rng.random() < 0.1 else self.gamma
        e = rng.standard_normal(self.n_dim) * self.epsilon * (self._upper - self._lower)
        return u + gamma * (Z[r1] - Z[r2]) + e, 0.0

    def _snooker_move(self, u: np.ndarray, Z: np.ndarray, rng: np.random.Generator) -> Tuple[np.ndarray, float]:
        rz, r1, r2 = self._pick(len(Z), 3, rng)
        z = Z[rz]
        direction = u - z
        norm_x = float(np.linalg.norm(direction))
        if norm_x == 0.0:
            return u.copy(), -np.inf
        unit = direction / norm_x
        gamma = rng.uniform(1.2, 2.2)
        proj = float(np.dot(Z[r1] - Z[r2], unit))
        proposal = u + gamma * proj * unit
        norm_p = float(np.linalg.norm(proposal - z))
        if norm_p == 0.0:
            return proposal, -np.inf
        return proposal, (self.n_dim - 1) * (math.log(norm_p) - math.log(norm_x))

    # ------------------------------------------------------------------ #
    # Driver
    # ------------------------------------------------------------------ #
    def run_chains(self, start: Sequence[float], n_iterations: int) -> SamplerTrace:
        """
        Generate ``n_iterations`` pooled chain states (chains interleaved
        generation by generation), reported as (lam, tau2rel, phi).
        """
        rng = np.random.default_rng(self.seed)
        start = self.box.clip(np.asarray(start, dtype=float))
        Z = self._initial_archive(start, rng)

        chains: List[_ChainState] = []
        for c in range(self.n_chains):
            u = Z[c] if c > 0 else Z[0]
            log_post, log_lik, theta = self._evaluate(u)
            if not np.isfinite(log_post):
                u = Z[0]
                log_post, log_lik, theta = self._evaluate(u)
            chains.append(_ChainState(np.array(u), theta, log_post, log_lik))
        if not all(np.isfinite(ch.log_post) for ch in chains):
            raise ValueError("Starting point has zero posterior density; check the prior box and the data")

        n_generations = int(math.ceil(n_iterations / self.n_chains))
        states = np.empty((n_generations * self.n_chains, self.n_dim))
        lls = np.empty(n_generations * self.n_chains)
        accepted = 0
        proposed = 0

        for gen in range(n_generations):
            for c, chain in enumerate(chains):
                if rng.random() < self.snooker_probability:
                    proposal, log_jac = self._snooker_move(chain.u, Z, rng)
                else:
                    proposal, log_jac = self._parallel_move(chain.u, Z, rng)
                proposed += 1
                if np.isfinite(log_jac):
                    log_post, log_lik, theta = self._evaluate(proposal)
                    log_alpha = log_post - chain.log_post + log_jac
                    if np.isfinite(log_post) and math.log(rng.random()) < log_alpha:
                        chain.u = proposal
                        chain.theta = theta
                        chain.log_post = log_post
                        chain.log_lik = log_lik
                        accepted += 1
                row = gen * self.n_chains + c
                states[row] = chain.theta
                lls[row] = chain.log_lik
            if (gen + 1) % self.archive_interval == 0:
                Z = np.vstack([Z] + [chain.u[None, :] for chain in chains])

        return SamplerTrace(
            states=states[:n_iterations],
            log_likelihood=lls[:n_iterations],
            accepted=accepted,
            proposed=proposed,
            archive_size=len(Z),
        )

    def sample(
        self,
        start: Sequence[float],
        n_iterations: int,
        burn_in: int = 1000,
        n_samples: int = 1000,
        field_id: Optional[str] = None,
    ) -> PosteriorSample:
        """
        Run the chains, drop ``burn_in`` pooled states and thin the remainder
        to ``n_samples`` evenly spaced draws.
        """
        if n_iterations <= burn_in:
            raise ValueError("n_iterations must exceed burn_in")
        trace = self.run_chains(start, n_iterations)
        kept = trace.states[burn_in:]
        kept_ll = trace.log_likelihood[burn_in:]
        if len(kept) < n_samples:
            warnings.warn(
                f"Only {len(kept)} post-burn-in states available; returning all instead of {n_samples}"
            )
            idx = np.arange(len(kept))
        else:
            idx = np.linspace(0, len(kept) - 1, n_samples).round().astype(int)
        return PosteriorSample(
            draws=kept[idx],
            log_likelihood=kept_ll[idx],
            field_id=field_id,
            acceptance_rate=trace.acceptance_rate,
        )


def sample_posterior(
    dataset: SpatialDataset,
    config: PipelineConfig,
    field_id: Optional[str] = None,
    seed: Optional[int] = None,
) -> Tuple[PosteriorSample, MLEResult]:
    """
    Seed with the maximum-likelihood point and draw the posterior sample of
    one field.

    Args:
        dataset: Sample data of the field.
        config: Run configuration (iteration budget, burn-in, sample size).
        field_id: Identifier stored with the sample.
        seed: Sampler seed; defaults to ``config.seed``.

    Returns:
        (PosteriorSample, MLEResult)
    """
    box = PriorBox.from_config(dataset, config)
    mle = MaximumLikelihoodInitializer(dataset, box).fit()
    logger.info(
        f"Field {field_id}: ML seed lam={mle.params.lam:.4g}, tau2rel={mle.params.tau2rel:.3f}, "
        f"phi={mle.params.phi:.4g} (fallback={mle.used_fallback})"
    )
    sampler = DifferentialEvolutionSampler(
        VariogramLikelihood(dataset),
        box,
        n_chains=config.n_chains,
        snooker_probability=config.snooker_probability,
        archive_interval=config.archive_interval,
        seed=config.seed if seed is None else seed,
    )
    posterior = sampler.sample(
        mle.params.as_array(),
        n_iterations=config.mcmc_iterations,
        burn_in=config.burn_in,
        n_samples=config.n_posterior,
        field_id=field_id,
    )
    logger.info(
        f"Field {field_id}: sampled {len(posterior)} posterior draws "
        f"(acceptance rate {posterior.acceptance_rate:.3f})"
    )
    return posterior, mle
