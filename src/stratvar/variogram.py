"""Exponential variogram model, Gaussian likelihood and GLS mean estimation.

Provides utilities for:
- Converting between the (inverse sill, relative nugget, range) sampling
  parameterization and sill / nugget / partial sill
- Building measurement-error-inflated covariance matrices
- Evaluating the Gaussian log-likelihood with a GLS mean
- Bounded maximum-likelihood fitting used to seed the posterior sampler
- BLUE (generalized least squares) estimation of the field mean

Classes:
- VariogramParams: One exponential variogram in the sampling parameterization
- PriorBox: Bounds shared by the optimizer and the uniform prior
- VariogramLikelihood: Picklable log-likelihood bound to a dataset
- MaximumLikelihoodInitializer: Bounded optimizer with moment-based fallback
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence, Tuple

import numpy as np
from scipy.linalg import LinAlgError, cho_factor, cho_solve
from scipy.optimize import minimize

from .config import PipelineConfig
from .dataset import SpatialDataset

logger = logging.getLogger(__name__)

LOG_2PI = float(np.log(2.0 * np.pi))
LAMBDA_MIN = 1e-6
PHI_MIN = 1e-6
PARAM_NAMES = ("lam", "tau2rel", "phi")


@dataclass(frozen=True)
class VariogramParams:
    """
    Exponential variogram in the sampling parameterization.

    Attributes
    ----------
    lam : float
        Inverse sill, 1 / sigma².
    tau2rel : float
        Relative nugget, nugget / sill, in [0, 1].
    phi : float
        Range (decay distance) of the exponential covariance.
    """

    lam: float
    tau2rel: float
    phi: float

    @classmethod
    def from_array(cls, theta: Sequence[float]) -> "VariogramParams":
        lam, tau2rel, phi = (float(v) for v in theta)
        return cls(lam, tau2rel, phi)

    @classmethod
    def from_sill(cls, sill: float, nugget: float, phi: float) -> "VariogramParams":
        """Build from total sill and nugget (nugget <= sill)."""
        if sill <= 0:
            raise ValueError("Sill must be positive")
        if not 0.0 <= nugget <= sill:
            raise ValueError("Nugget must lie in [0, sill]")
        return cls(1.0 / sill, nugget / sill, float(phi))

    @classmethod
    def from_partial_sill(cls, psill: float, nugget: float, phi: float) -> "VariogramParams":
        """Build from partial sill and nugget."""
        if psill < 0 or nugget < 0:
            raise ValueError("Partial sill and nugget must be non-negative")
        return cls.from_sill(psill + nugget, nugget, phi)

    def __iter__(self) -> Iterator[float]:
        return iter((self.lam, self.tau2rel, self.phi))

    def as_array(self) -> np.ndarray:
        return np.array([self.lam, self.tau2rel, self.phi], dtype=float)

    @property
    def sill(self) -> float:
        return 1.0 / self.lam

    @property
    def nugget(self) -> float:
        return self.tau2rel * self.sill

    @property
    def psill(self) -> float:
        return self.sill - self.nugget

    def is_valid(self) -> bool:
        return (
            np.isfinite(self.lam) and self.lam > 0
            and 0.0 <= self.tau2rel <= 1.0
            and np.isfinite(self.phi) and self.phi > 0
        )

    def scaled(self, factor: float) -> "VariogramParams":
        """Variogram of ``factor * Z``: sill scales by ``factor**2``."""
        return VariogramParams(self.lam / factor ** 2, self.tau2rel, self.phi)


def exponential_covariance(D: np.ndarray, params: VariogramParams) -> np.ndarray:
    """
    C(h) = psill * exp(-h / phi) + nugget * 1[h == 0 on the diagonal].

    The nugget is placed on the diagonal only, so coincident but distinct
    sample points remain correlated through the partial sill alone.
    """
    C = params.psill * np.exp(-np.asarray(D, dtype=float) / params.phi)
    C[np.diag_indices_from(C)] += params.nugget
    return C


def build_covariance(
    D: np.ndarray,
    params: VariogramParams,
    measurement_error_variance=None,
) -> np.ndarray:
    """Exponential covariance with measurement-error variance added to the diagonal."""
    C = exponential_covariance(D, params)
    if measurement_error_variance is not None:
        C[np.diag_indices_from(C)] += measurement_error_variance
    return C


def gls_mean(factor, z: np.ndarray, X: np.ndarray) -> np.ndarray:
    """
    GLS coefficients beta = (Xᵗ C⁻¹ X)⁻¹ Xᵗ C⁻¹ z from a Cholesky factor of C.

    Parameters
    ----------
    factor : tuple
        Output of ``scipy.linalg.cho_factor`` for C.
    z : (n,) array
    X : (n,) or (n, p) design matrix
    """
    X = np.asarray(X, dtype=float)
    if X.ndim == 1:
        X = X[:, None]
    CiX = cho_solve(factor, X, check_finite=False)
    Ciz = cho_solve(factor, z, check_finite=False)
    return np.linalg.solve(X.T @ CiX, X.T @ Ciz)


def log_likelihood(
    theta: Sequence[float],
    D: np.ndarray,
    z: np.ndarray,
    measurement_error_variance=None,
    X: Optional[np.ndarray] = None,
) -> float:
    """
    Gaussian log-likelihood of ``z`` under the exponential model ``theta``.

    The mean is profiled out with its GLS estimate. Parameter vectors outside
    the admissible region and covariance matrices that are not positive
    definite give ``-inf`` instead of an exception.
    """
    params = VariogramParams.from_array(theta)
    if not params.is_valid():
        return -np.inf
    z = np.asarray(z, dtype=float)
    n = z.size
    if X is None:
        X = np.ones(n)
    C = build_covariance(D, params, measurement_error_variance)
    try:
        factor = cho_factor(C, lower=True, check_finite=False)
    except LinAlgError:
        return -np.inf
    diag = np.diag(factor[0])
    if not np.all(np.isfinite(diag)) or np.any(diag <= 0):
        return -np.inf
    X2 = X[:, None] if np.ndim(X) == 1 else X
    beta = gls_mean(factor, z, X2)
    resid = z - X2 @ beta
    quad = float(resid @ cho_solve(factor, resid, check_finite=False))
    logdet = 2.0 * float(np.sum(np.log(diag)))
    ll = -0.5 * (n * LOG_2PI + logdet + quad)
    return ll if np.isfinite(ll) else -np.inf


class VariogramLikelihood:
    """
    Log-likelihood bound to the fixed quantities of one dataset.

    Instances are pure and picklable, so they can be evaluated repeatedly and
    shipped to worker processes.
    """

    def __init__(self, dataset: SpatialDataset):
        self.D = np.array(dataset.distances)
        self.z = dataset.z
        self.X = dataset.design
        self.measurement_error_variance = dataset.measurement_error_variance

    def __call__(self, theta: Sequence[float]) -> float:
        return log_likelihood(theta, self.D, self.z, self.measurement_error_variance, self.X)


def estimate_mean(
    params: VariogramParams,
    D: np.ndarray,
    z: np.ndarray,
    measurement_error_variance=None,
) -> float:
    """GLS estimate of a constant mean; raises LinAlgError if C is not positive definite."""
    C = build_covariance(D, params, measurement_error_variance)
    factor = cho_factor(C, lower=True, check_finite=False)
    return float(gls_mean(factor, np.asarray(z, dtype=float), np.ones(len(z)))[0])


def blue_mean(params: VariogramParams, dataset: SpatialDataset) -> float:
    """
    Best linear unbiased estimate of the field mean for one variogram draw.

    Uses the same covariance construction and measurement-error convention as
    the likelihood, over the original sample locations.
    """
    return estimate_mean(params, dataset.distances, dataset.z, dataset.measurement_error_variance)


# ---------------------------------------------------------------------- #
# Prior box and maximum-likelihood seeding
# ---------------------------------------------------------------------- #
@dataclass(frozen=True)
class PriorBox:
    """Lower and upper bounds for (lam, tau2rel, phi)."""

    lower: Tuple[float, float, float]
    upper: Tuple[float, float, float]

    @classmethod
    def for_dataset(
        cls,
        dataset: SpatialDataset,
        lambda_prior_factor: float = 1000.0,
        range_prior_factor: float = 3.0,
    ) -> "PriorBox":
        """
        Derive the box from the data: lam in [1e-6, factor / var(z)],
        tau2rel in [0, 1], phi in [1e-6, range_factor * max(D)].
        """
        var_z = float(np.var(dataset.z, ddof=1))
        if not np.isfinite(var_z) or var_z <= 0:
            raise ValueError("Transformed values have zero variance; the variogram cannot be fitted")
        max_d = float(np.max(dataset.distances))
        if max_d <= 0:
            raise ValueError("All sample points coincide; the variogram cannot be fitted")
        lam_max = max(lambda_prior_factor / var_z, 10.0 * LAMBDA_MIN)
        return cls((LAMBDA_MIN, 0.0, PHI_MIN), (lam_max, 1.0, range_prior_factor * max_d))

    @classmethod
    def from_config(cls, dataset: SpatialDataset, config: PipelineConfig) -> "PriorBox":
        return cls.for_dataset(dataset, config.lambda_prior_factor, config.range_prior_factor)

    @property
    def lower_array(self) -> np.ndarray:
        return np.asarray(self.lower, dtype=float)

    @property
    def upper_array(self) -> np.ndarray:
        return np.asarray(self.upper, dtype=float)

    def contains(self, theta: Sequence[float]) -> bool:
        theta = np.asarray(theta, dtype=float)
        return bool(np.all(theta >= self.lower_array) and np.all(theta <= self.upper_array))

    def clip(self, theta: Sequence[float]) -> np.ndarray:
        return np.clip(np.asarray(theta, dtype=float), self.lower_array, self.upper_array)

    def log_prior(self, theta: Sequence[float]) -> float:
        """Independent uniform priors over the box (unnormalized)."""
        return 0.0 if self.contains(theta) else -np.inf

    def sample(self, rng: np.random.Generator, size: int) -> np.ndarray:
        lo, hi = self.lower_array, self.upper_array
        return lo + rng.random((size, lo.size)) * (hi - lo)


def moment_guess(dataset: SpatialDataset, box: Optional[PriorBox] = None) -> VariogramParams:
    """Starting point lam = 1/var(z), tau2rel = 0.5, phi = mean pairwise distance."""
    var_z = float(np.var(dataset.z, ddof=1))
    D = dataset.distances
    iu = np.triu_indices_from(D, k=1)
    theta = np.array([1.0 / var_z, 0.5, float(np.mean(D[iu]))])
    if box is not None:
        theta = box.clip(theta)
    return VariogramParams.from_array(theta)


@dataclass(frozen=True)
class MLEResult:
    """Outcome of the maximum-likelihood seeding step."""

    params: VariogramParams
    log_likelihood: float
    converged: bool
    used_fallback: bool
    box: PriorBox


def to_internal(theta: Sequence[float]) -> np.ndarray:
    """Map (lam, tau2rel, phi) to (log lam, tau2rel, log phi)."""
    theta = np.asarray(theta, dtype=float)
    return np.array([np.log(theta[0]), theta[1], np.log(theta[2])])


def from_internal(u: Sequence[float]) -> np.ndarray:
    u = np.asarray(u, dtype=float)
    return np.array([np.exp(u[0]), u[1], np.exp(u[2])])


def log_jacobian(u: Sequence[float]) -> float:
    """log |d theta / d u| of ``from_internal``."""
    return float(u[0] + u[2])


class MaximumLikelihoodInitializer:
    """
    Bounded local maximization of the variogram likelihood.

    The optimizer works on (log lam, tau2rel, log phi) and is restarted from
    points along the sill / range ridge through the moment guess, keeping the
    best optimum. If no start converges, or the best optimum is no better than
    the moment-based guess, the guess is used instead and a warning is logged.
    """

    RIDGE_FACTORS = (1.0, 0.5, 2.0, 4.0)

    def __init__(self, dataset: SpatialDataset, box: Optional[PriorBox] = None, maxiter: int = 2000):
        self.dataset = dataset
        self.box = box if box is not None else PriorBox.for_dataset(dataset)
        self.likelihood = VariogramLikelihood(dataset)
        self.maxiter = maxiter

    def _objective(self, u: np.ndarray) -> float:
        ll = self.likelihood(self.box.clip(from_internal(u)))
        # finite penalty keeps the quasi-Newton line search well defined
        return -ll if np.isfinite(ll) else 1e12

    def _starts(self, guess_theta: np.ndarray) -> Iterator[np.ndarray]:
        """Moment guess, then points with sill and range scaled together."""
        for factor in self.RIDGE_FACTORS:
            yield self.box.clip(
                np.array([guess_theta[0] / factor, guess_theta[1], guess_theta[2] * factor])
            )

    def fit(self, start: Optional[VariogramParams] = None) -> MLEResult:
        guess = start if start is not None else moment_guess(self.dataset, self.box)
        guess_theta = self.box.clip(guess.as_array())
        guess_ll = self.likelihood(guess_theta)

        lo, hi = self.box.lower_array, self.box.upper_array
        bounds = [(np.log(lo[0]), np.log(hi[0])), (lo[1], hi[1]), (np.log(lo[2]), np.log(hi[2]))]
        converged = False
        theta = None
        ll = -np.inf
        for x0 in self._starts(guess_theta):
            try:
                res = minimize(
                    self._objective,
                    to_internal(x0),
                    method="L-BFGS-B",
                    bounds=bounds,
                    options={"maxiter": self.maxiter},
                )
            except (ValueError, FloatingPointError, LinAlgError) as e:
                logger.warning(f"Likelihood optimizer raised {type(e).__name__}: {e}")
                continue
            if not (res.success and np.all(np.isfinite(res.x))):
                continue
            candidate = self.box.clip(from_internal(res.x))
            candidate_ll = self.likelihood(candidate)
            if np.isfinite(candidate_ll) and candidate_ll > ll:
                converged = True
                theta, ll = candidate, candidate_ll

        if not converged or ll < guess_ll:
            if not converged:
                logger.warning("Likelihood optimizer did not converge; falling back to moment-based starting point")
            else:
                logger.info("Likelihood optimum is worse than the moment-based starting point; using the latter")
            return MLEResult(
                params=VariogramParams.from_array(guess_theta),
                log_likelihood=guess_ll,
                converged=converged,
                used_fallback=True,
                box=self.box,
            )
        return MLEResult(
            params=VariogramParams.from_array(theta),
            log_likelihood=ll,
            converged=True,
            used_fallback=False,
            box=self.box,
        )
