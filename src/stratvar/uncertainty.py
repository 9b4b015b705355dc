"""Aggregate simulated sampling variances into predictions and uncertainty.

Provides utilities for computing, from a VarianceArray:
- point predictions (mean, median, 90th percentile) of the sampling variance
- the variogram-uncertainty component V_MCMC[E_ξ(V)] and the simulation-noise
  component E_MCMC[V_ξ(V)]
- the relative measurement uncertainty U and the sample size required to
  reach a target U

Classes:
- VarianceComponents: Summary of one (draws x replicates) variance slice
- VarianceComponentDecomposer: Summaries for STSI and SRS at every level
- SampleSizeBound: Sentinels for thresholds outside the evaluated range
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .config import PipelineConfig
from .simulation import VarianceArray

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VarianceComponents:
    """
    Summary of sampling variances indexed [draw][replicate].

    Attributes
    ----------
    mean : float
        Mean over draws of the replicate means (point prediction).
    median, p90 : float
        Percentiles of the pooled draws x replicates values.
    var_mcmc : float
        Variance over draws of the replicate means, V_MCMC[E_ξ(V)].
    mean_sim_var : float
        Mean over draws of the replicate variances, E_MCMC[V_ξ(V)].
    total_var : float
        Variance of the pooled values.
    """

    mean: float
    median: float
    p90: float
    var_mcmc: float
    mean_sim_var: float
    total_var: float

    @property
    def component_sum(self) -> float:
        return self.var_mcmc + self.mean_sim_var


def decompose(values: np.ndarray) -> VarianceComponents:
    """
    Decompose a (n_draws, nsim) array of sampling variances.

    The law of total variance gives total_var ≈ var_mcmc + mean_sim_var up to
    Monte-Carlo error (exactly, with population denominators).
    """
    values = np.asarray(values, dtype=float)
    if values.ndim != 2:
        raise ValueError(f"Expected a (n_draws, nsim) array, got shape {values.shape}")
    if not np.all(np.isfinite(values)):
        raise ValueError("Sampling variances contain non-finite values")
    n_draws, nsim = values.shape
    exi = values.mean(axis=1)
    vxi = values.var(axis=1, ddof=1) if nsim > 1 else np.zeros(n_draws)
    pooled = values.ravel()
    return VarianceComponents(
        mean=float(exi.mean()),
        median=float(np.percentile(pooled, 50)),
        p90=float(np.percentile(pooled, 90)),
        var_mcmc=float(exi.var(ddof=1)) if n_draws > 1 else 0.0,
        mean_sim_var=float(vxi.mean()),
        total_var=float(pooled.var(ddof=1)) if pooled.size > 1 else 0.0,
    )


class VarianceComponentDecomposer:
    """Summaries of a VarianceArray for stratified and simple random sampling."""

    def __init__(self, variance_array: VarianceArray):
        self.variance_array = variance_array

    @property
    def levels(self) -> List[int]:
        return [int(L) for L in self.variance_array.stratum_counts]

    def stsi(self, n_strata: int) -> VarianceComponents:
        return decompose(self.variance_array.level(n_strata))

    def srs(self, n: int) -> VarianceComponents:
        return decompose(self.variance_array.srs(n))

    def frame(self) -> pd.DataFrame:
        """One row per stratum level with STSI and SRS (n = L) summaries."""
        rows = []
        for L in self.levels:
            row = {"n_strata": L}
            for prefix, comp in (("stsi", self.stsi(L)), ("srs", self.srs(L))):
                row.update({f"{prefix}_{k}": v for k, v in asdict(comp).items()})
            rows.append(row)
        return pd.DataFrame(rows)


# ---------------------------------------------------------------------- #
# Uncertainty metric and required sample size
# ---------------------------------------------------------------------- #
def uncertainty_metric(sampling_variance, measurement_error_variance: float, field_mean: float):
    """U = 100 * 2 * sqrt(sampling variance + measurement-error variance) / field mean (%)."""
    if field_mean <= 0:
        raise ValueError("field_mean must be positive")
    v = np.asarray(sampling_variance, dtype=float)
    if np.any(v < 0) or measurement_error_variance < 0:
        raise ValueError("Variances must be non-negative")
    u = 200.0 * np.sqrt(v + measurement_error_variance) / field_mean
    return float(u) if u.ndim == 0 else u


class SampleSizeBound(str, Enum):
    """Threshold crossing outside the evaluated sample sizes."""

    BELOW_MINIMUM = "below_minimum_evaluated"
    ABOVE_MAXIMUM = "above_maximum_evaluated"


def required_sample_size(
    sample_sizes: Sequence[float],
    uncertainty: Sequence[float],
    threshold: float = 50.0,
) -> Union[float, SampleSizeBound]:
    """
    Smallest sample size at which U reaches ``threshold``, by piecewise-linear
    interpolation of U against the evaluated sample sizes.

    Returns
    -------
    float | SampleSizeBound
        The interpolated size, ``BELOW_MINIMUM`` if U is already at or below
        the threshold at the smallest evaluated size, or ``ABOVE_MAXIMUM`` if
        it never gets there within the evaluated range.
    """
    n = np.asarray(sample_sizes, dtype=float)
    u = np.asarray(uncertainty, dtype=float)
    if n.ndim != 1 or n.shape != u.shape or n.size == 0:
        raise ValueError("sample_sizes and uncertainty must be 1-D sequences of equal, non-zero length")
    if not np.all(np.isfinite(n)) or not np.all(np.isfinite(u)):
        raise ValueError("sample_sizes and uncertainty must be finite")
    order = np.argsort(n)
    n, u = n[order], u[order]
    if u[0] <= threshold:
        return SampleSizeBound.BELOW_MINIMUM
    for i in range(n.size - 1):
        if u[i] > threshold >= u[i + 1]:
            frac = (u[i] - threshold) / (u[i] - u[i + 1])
            return float(n[i] + frac * (n[i + 1] - n[i]))
    return SampleSizeBound.ABOVE_MAXIMUM


def _size_columns(prefix: str, result: Union[float, SampleSizeBound]) -> Dict[str, object]:
    if isinstance(result, SampleSizeBound):
        return {f"required_n_{prefix}": np.nan, f"required_n_{prefix}_status": result.value}
    return {f"required_n_{prefix}": result, f"required_n_{prefix}_status": "interpolated"}


def aggregate_statistics(
    variance_array: VarianceArray,
    field_mean: float,
    config: PipelineConfig,
    field_id: Optional[str] = None,
) -> pd.DataFrame:
    """
    AggregatedStatistics table of one field, one row per stratum level.

    Columns hold STSI and SRS summaries (mean, median, p90, var_mcmc,
    mean_sim_var, total_var), the uncertainty metrics ``u_stsi`` / ``u_srs``
    of the mean prediction, and the required sample sizes for
    ``config.threshold`` (with a status column naming sentinel results).
    """
    field_id = field_id if field_id is not None else variance_array.field_id
    me_var = (config.measurement_error_coef * field_mean) ** 2
    table = VarianceComponentDecomposer(variance_array).frame()
    table.insert(0, "field_id", field_id)
    table["field_mean"] = field_mean
    table["measurement_error_variance"] = me_var
    table["u_stsi"] = uncertainty_metric(table["stsi_mean"].to_numpy(), me_var, field_mean)
    table["u_stsi_p90"] = uncertainty_metric(table["stsi_p90"].to_numpy(), me_var, field_mean)
    table["u_srs"] = uncertainty_metric(table["srs_mean"].to_numpy(), me_var, field_mean)

    sizes = table["n_strata"].to_numpy()
    for prefix in ("stsi", "srs"):
        result = required_sample_size(sizes, table[f"u_{prefix}"].to_numpy(), config.threshold)
        for column, value in _size_columns(prefix, result).items():
            table[column] = value
        shown = result.value if isinstance(result, SampleSizeBound) else f"{result:.1f}"
        logger.info(f"Field {field_id}: required {prefix.upper()} sample size for U <= {config.threshold}%: {shown}")
    return table
