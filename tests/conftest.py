"""Shared fixtures: synthetic fields, grids and fast configurations."""

import numpy as np
import pytest

from stratvar.config import PipelineConfig
from stratvar.dataset import SpatialDataset, pairwise_distances
from stratvar.stratification import GeoStratification


def pytest_addoption(parser):
    parser.addoption("--runslow", action="store_true", default=False, help="run slow statistical tests")


def pytest_collection_modifyitems(config, items):
    if config.getoption("--runslow"):
        return
    skip_slow = pytest.mark.skip(reason="needs --runslow")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


def simulate_exponential(coords, sill=1.0, nugget=0.0, phi=5.0, rng=None):
    """One realization of a zero-mean Gaussian field with exponential covariance."""
    rng = rng if rng is not None else np.random.default_rng(0)
    D = pairwise_distances(np.ascontiguousarray(coords, dtype=float))
    C = (sill - nugget) * np.exp(-D / phi) + (nugget + 1e-10) * np.eye(len(coords))
    return np.linalg.cholesky(C) @ rng.standard_normal(len(coords))


def grid_nodes(nx=10, ny=10, cell=1.0):
    xs = (np.arange(nx) + 0.5) * cell
    ys = (np.arange(ny) + 0.5) * cell
    gx, gy = np.meshgrid(xs, ys)
    return np.column_stack([gx.ravel(), gy.ravel()])


def block_strata(coords, nx_blocks, ny_blocks, extent=(10.0, 10.0), field_id=None):
    """Rectangular blocks of equal size on a regular grid."""
    bx = np.minimum((coords[:, 0] / extent[0] * nx_blocks).astype(int), nx_blocks - 1)
    by = np.minimum((coords[:, 1] / extent[1] * ny_blocks).astype(int), ny_blocks - 1)
    return GeoStratification(coords, by * nx_blocks + bx, nx_blocks * ny_blocks, field_id)


def make_dataset(n=20, seed=1, transform="log", sill=1.0, nugget=0.0, phi=5.0, coef=0.064):
    rng = np.random.default_rng(seed)
    coords = rng.uniform(0.0, 10.0, size=(n, 2))
    z = simulate_exponential(coords, sill, nugget, phi, rng)
    if transform == "log":
        counts = np.exp(3.0 + z)
    else:
        counts = 50.0 + 5.0 * z
    return SpatialDataset(coords, counts, transform=transform, measurement_error_coef=coef)


@pytest.fixture
def dataset():
    return make_dataset()


@pytest.fixture
def natural_dataset():
    return make_dataset(transform="identity", seed=2)


@pytest.fixture
def grid():
    return grid_nodes()


@pytest.fixture
def stratifications(grid):
    return {
        1: block_strata(grid, 1, 1),
        4: block_strata(grid, 2, 2),
        10: block_strata(grid, 5, 2),
    }


@pytest.fixture
def fast_config():
    return PipelineConfig(
        mcmc_iterations=1500,
        burn_in=300,
        n_posterior=200,
        n_draws=4,
        nsim=8,
        stratum_counts=(1, 4, 10),
        seed=7,
    )
