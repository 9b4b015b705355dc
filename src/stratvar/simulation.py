"""Unconditional simulation of fields and their sampling variances.

Provides utilities for:
- Deterministic per-(field, draw, replicate) random streams
- Cholesky-based simulation of field realizations on the discretization grid
- Stratified (STSI) and simple random sampling variance of simulated fields
- Running the simulation stage of one field over thinned posterior draws

Classes:
- FieldSimulator: Factorize grid covariance and draw realizations
- VarianceAggregator: Population and stratified variances per realization
- VarianceArray: Persisted [stratum level][draw][replicate] variance results
"""

from __future__ import annotations

import logging
import zlib
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

import numpy as np
from numba import njit
from scipy.linalg import LinAlgError, cholesky

from .config import PipelineConfig
from .dataset import SpatialDataset, TransformPolicy, pairwise_distances
from .errors import InvalidStratificationError, NonPositiveDefiniteCovarianceError
from .sampler import PosteriorSample
from .stratification import GeoStratification
from .variogram import VariogramParams, blue_mean, exponential_covariance

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------- #
# Random streams
# ---------------------------------------------------------------------- #
def field_key(field_id) -> int:
    """Stable non-negative integer derived from a field identifier."""
    if isinstance(field_id, (int, np.integer)) and field_id >= 0:
        return int(field_id)
    return zlib.crc32(str(field_id).encode("utf-8"))


def replicate_generator(seed: int, field_id, draw: int, replicate: int) -> np.random.Generator:
    """Generator keyed by (seed, field, draw, replicate), independent of execution order."""
    ss = np.random.SeedSequence([int(seed), field_key(field_id), int(draw), int(replicate)])
    return np.random.default_rng(ss)


# ---------------------------------------------------------------------- #
# Kernels
# ---------------------------------------------------------------------- #
@njit(cache=True, nogil=True)
def stratum_variances(values, labels, n_strata):
    """
    Sample variance (n - 1 denominator) of the values of every stratum.

    Parameters
    ----------
    values : np.ndarray
        (N, R) realizations, one column per replicate.
    labels : np.ndarray
        (N,) stratum id of every node.
    n_strata : int

    Returns
    -------
    np.ndarray
        (n_strata, R) variances; strata with fewer than 2 nodes get 0.
    """
    N, R = values.shape
    counts = np.zeros(n_strata, dtype=np.int64)
    for i in range(N):
        counts[labels[i]] += 1
    out = np.zeros((n_strata, R), dtype=np.float64)
    for r in range(R):
        sums = np.zeros(n_strata, dtype=np.float64)
        for i in range(N):
            sums[labels[i]] += values[i, r]
        means = np.zeros(n_strata, dtype=np.float64)
        for h in range(n_strata):
            if counts[h] > 0:
                means[h] = sums[h] / counts[h]
        ss = np.zeros(n_strata, dtype=np.float64)
        for i in range(N):
            d = values[i, r] - means[labels[i]]
            ss[labels[i]] += d * d
        for h in range(n_strata):
            if counts[h] > 1:
                out[h, r] = ss[h] / (counts[h] - 1)
    return out


# ---------------------------------------------------------------------- #
# Simulation
# ---------------------------------------------------------------------- #
class FieldSimulator:
    """
    Simulate realizations of the modelled variable at the grid nodes.

    Attributes
    ----------
    grid_coords : np.ndarray
        (N, 2) discretization grid.
    transform : TransformPolicy
        Realizations are back-transformed with ``transform.inverse``.
    jitter : float
        Relative diagonal jitter (times the sill) added before factorization.
    """

    def __init__(
        self,
        grid_coords: np.ndarray,
        transform=TransformPolicy.LOG,
        jitter: float = 1e-10,
        field_id: Optional[str] = None,
    ):
        self.grid_coords = np.ascontiguousarray(np.asarray(grid_coords, dtype=float))
        if self.grid_coords.ndim != 2 or self.grid_coords.shape[1] != 2:
            raise ValueError(f"grid_coords must have shape (N, 2), got {self.grid_coords.shape}")
        self.transform = TransformPolicy.coerce(transform)
        self.jitter = float(jitter)
        self.field_id = field_id
        self.D = pairwise_distances(self.grid_coords)

    @property
    def n_nodes(self) -> int:
        return int(self.grid_coords.shape[0])

    def factorize(self, params: VariogramParams, draw: Optional[int] = None) -> np.ndarray:
        """
        Upper Cholesky factor U of the grid covariance, C = Uᵗ U.

        Raises
        ------
        NonPositiveDefiniteCovarianceError
            If C cannot be factorized.
        """
        if not params.is_valid():
            raise NonPositiveDefiniteCovarianceError(self.field_id, draw, params.as_array(), "simulation")
        C = exponential_covariance(self.D, params)
        C[np.diag_indices_from(C)] += self.jitter * params.sill
        try:
            return cholesky(C, lower=False, overwrite_a=True, check_finite=False)
        except LinAlgError as e:
            raise NonPositiveDefiniteCovarianceError(
                self.field_id, draw, params.as_array(), "simulation"
            ) from e

    def realize(
        self,
        U: np.ndarray,
        mean: float,
        draw: int,
        nsim: int,
        seed: int,
    ) -> np.ndarray:
        """
        ``nsim`` back-transformed realizations as an (N, nsim) array.

        Column r uses the standard-normal vector of the generator keyed by
        (seed, field, draw, r).
        """
        G = np.empty((self.n_nodes, nsim))
        for r in range(nsim):
            G[:, r] = replicate_generator(seed, self.field_id, draw, r).standard_normal(self.n_nodes)
        Z = U.T @ G
        Z += mean
        return self.transform.inverse(Z)

    def simulate(
        self,
        params: VariogramParams,
        mean: float,
        draw: int,
        nsim: int,
        seed: int,
    ) -> np.ndarray:
        U = self.factorize(params, draw)
        return self.realize(U, mean, draw, nsim, seed)


class VarianceAggregator:
    """
    Population variance S² and stratified variance
    V_STSI(L) = (1 / L²) Σ_h S²_h for every candidate stratification.
    """

    def __init__(self, stratifications: Mapping[int, GeoStratification], policy: str = "reject"):
        if not stratifications:
            raise InvalidStratificationError("At least one stratification is required")
        self.levels = np.array(sorted(int(L) for L in stratifications), dtype=np.int64)
        grid = stratifications[int(self.levels[0])].coords
        self.stratifications = {}
        for L in self.levels:
            strat = stratifications[int(L)]
            if strat.n_strata != L:
                raise InvalidStratificationError(f"Stratification stored under L={L} has {strat.n_strata} strata")
            self.stratifications[int(L)] = strat.validate(policy, grid_coords=grid)
        self.grid_coords = grid

    def aggregate(self, values: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Parameters
        ----------
        values : np.ndarray
            (N, R) realizations.

        Returns
        -------
        stsi : np.ndarray
            (n_levels, R) stratified sampling variances.
        population : np.ndarray
            (R,) population variances S².
        """
        values = np.ascontiguousarray(values, dtype=np.float64)
        if values.ndim == 1:
            values = values[:, None]
        if values.shape[0] != self.grid_coords.shape[0]:
            raise ValueError(
                f"Realization has {values.shape[0]} nodes, stratifications have {self.grid_coords.shape[0]}"
            )
        population = np.var(values, axis=0, ddof=1)
        stsi = np.empty((self.levels.size, values.shape[1]))
        for k, L in enumerate(self.levels):
            strat = self.stratifications[int(L)]
            s2h = stratum_variances(values, strat.labels, int(L))
            stsi[k] = s2h.sum(axis=0) / float(L) ** 2
        return stsi, population


@dataclass(frozen=True)
class VarianceArray:
    """
    Sampling variances of simulated fields for one field.

    Attributes
    ----------
    stratum_counts : np.ndarray
        (n_levels,) candidate numbers of strata L.
    stsi : np.ndarray
        (n_levels, n_draws, nsim) stratified sampling variances.
    population : np.ndarray
        (n_draws, nsim) population variances S².
    draw_indices : np.ndarray
        (n_draws,) indices of the posterior draws used.
    blue_means : np.ndarray
        (n_draws,) GLS mean estimate on the modelling scale per draw.
    field_means : np.ndarray
        (n_draws, nsim) spatial mean of every realization (natural scale).
    field_id : str | None
    """

    stratum_counts: np.ndarray
    stsi: np.ndarray
    population: np.ndarray
    draw_indices: np.ndarray
    blue_means: np.ndarray
    field_means: np.ndarray
    field_id: Optional[str] = None

    def __post_init__(self):
        levels = np.asarray(self.stratum_counts, dtype=np.int64)
        stsi = np.asarray(self.stsi, dtype=float)
        population = np.asarray(self.population, dtype=float)
        if stsi.ndim != 3 or stsi.shape[0] != levels.size:
            raise ValueError("stsi must have shape (n_levels, n_draws, nsim)")
        if population.shape != stsi.shape[1:]:
            raise ValueError("population must have shape (n_draws, nsim)")
        object.__setattr__(self, "stratum_counts", levels)
        object.__setattr__(self, "stsi", stsi)
        object.__setattr__(self, "population", population)
        object.__setattr__(self, "draw_indices", np.asarray(self.draw_indices, dtype=np.int64))
        object.__setattr__(self, "blue_means", np.asarray(self.blue_means, dtype=float))
        object.__setattr__(self, "field_means", np.asarray(self.field_means, dtype=float))

    @property
    def n_draws(self) -> int:
        return int(self.stsi.shape[1])

    @property
    def nsim(self) -> int:
        return int(self.stsi.shape[2])

    def level(self, n_strata: int) -> np.ndarray:
        """(n_draws, nsim) STSI variances for L = n_strata."""
        idx = np.flatnonzero(self.stratum_counts == n_strata)
        if idx.size == 0:
            raise KeyError(f"No stratification with L={n_strata} was simulated")
        return self.stsi[idx[0]]

    def srs(self, n: int) -> np.ndarray:
        """(n_draws, nsim) simple random sampling variances S² / n."""
        return self.population / float(n)

    def to_arrays(self) -> Dict[str, np.ndarray]:
        return {
            "stratum_counts": self.stratum_counts,
            "stsi": self.stsi,
            "population": self.population,
            "draw_indices": self.draw_indices,
            "blue_means": self.blue_means,
            "field_means": self.field_means,
        }

    @classmethod
    def from_arrays(cls, arrays: Mapping[str, np.ndarray], field_id: Optional[str] = None) -> "VarianceArray":
        return cls(
            stratum_counts=arrays["stratum_counts"],
            stsi=arrays["stsi"],
            population=arrays["population"],
            draw_indices=arrays["draw_indices"],
            blue_means=arrays["blue_means"],
            field_means=arrays["field_means"],
            field_id=field_id,
        )


def _simulate_draw(
    simulator: FieldSimulator,
    aggregator: VarianceAggregator,
    dataset: SpatialDataset,
    draw: int,
    params: VariogramParams,
    nsim: int,
    seed: int,
):
    try:
        mean = blue_mean(params, dataset)
    except LinAlgError as e:
        raise NonPositiveDefiniteCovarianceError(
            simulator.field_id, draw, params.as_array(), "mean estimation"
        ) from e
    values = simulator.simulate(params, mean, draw, nsim, seed)
    stsi, population = aggregator.aggregate(values)
    logger.debug(f"Field {simulator.field_id}: simulated draw {draw}")
    return mean, stsi, population, values.mean(axis=0)


def simulate_variance_array(
    field_id,
    dataset: SpatialDataset,
    posterior: PosteriorSample,
    stratifications: Mapping[int, GeoStratification],
    config: PipelineConfig,
) -> VarianceArray:
    """
    Simulation stage of one field.

    For each of ``config.n_draws`` evenly spaced posterior draws, estimate the
    BLUE mean, factorize the grid covariance once, simulate ``config.nsim``
    realizations and record their population and stratified variances.
    Draws run on ``config.draw_workers`` threads; results do not depend on
    the number of workers.
    """
    aggregator = VarianceAggregator(stratifications, config.degenerate_stratum_policy)
    simulator = FieldSimulator(aggregator.grid_coords, dataset.transform, config.jitter, field_id)
    # cache the sample distance matrix before worker threads read it
    _ = dataset.distances
    draws = posterior.thin(config.n_draws)
    logger.info(
        f"Field {field_id}: simulating {len(draws)} draws x {config.nsim} replicates "
        f"on {simulator.n_nodes} grid nodes for L={list(aggregator.levels)}"
    )

    def task(item: Tuple[int, VariogramParams]):
        draw, params = item
        return _simulate_draw(simulator, aggregator, dataset, draw, params, config.nsim, config.seed)

    if config.draw_workers > 1:
        with ThreadPoolExecutor(max_workers=config.draw_workers) as pool:
            results = list(pool.map(task, draws))
    else:
        results = [task(item) for item in draws]

    n_levels, n_draws = aggregator.levels.size, len(draws)
    stsi = np.empty((n_levels, n_draws, config.nsim))
    population = np.empty((n_draws, config.nsim))
    blue = np.empty(n_draws)
    field_means = np.empty((n_draws, config.nsim))
    for j, (mean, s, p, fm) in enumerate(results):
        stsi[:, j, :] = s
        population[j] = p
        blue[j] = mean
        field_means[j] = fm

    logger.info(f"Field {field_id}: simulation finished")
    return VarianceArray(
        stratum_counts=aggregator.levels,
        stsi=stsi,
        population=population,
        draw_indices=np.array([d for d, _ in draws], dtype=np.int64),
        blue_means=blue,
        field_means=field_means,
        field_id=field_id,
    )
