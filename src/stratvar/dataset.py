"""Field sample data and the transform / measurement-error conventions.

Provides utilities for:
- Holding the sample points of one field (coordinates and observed counts)
- Remapping zero counts and applying the identity or log transform
- Measurement-error variance on the active scale
- Numba kernels for pairwise distance matrices

Classes:
- TransformPolicy: Tagged choice between modelling counts or their logarithm
- SpatialDataset: Immutable sample dataset of one field
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from numba import njit, prange


class TransformPolicy(str, Enum):
    """Scale on which the variogram is fitted and fields are simulated."""

    IDENTITY = "identity"
    LOG = "log"

    @classmethod
    def coerce(cls, value: Union[str, "TransformPolicy"]) -> "TransformPolicy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Unknown transform policy '{value}'. Use 'identity' or 'log'.") from None

    def forward(self, counts: np.ndarray) -> np.ndarray:
        counts = np.asarray(counts, dtype=float)
        return np.log(counts) if self is TransformPolicy.LOG else counts.copy()

    def inverse(self, z: np.ndarray) -> np.ndarray:
        z = np.asarray(z, dtype=float)
        return np.exp(z) if self is TransformPolicy.LOG else z

    def measurement_error_variance(self, counts: np.ndarray, coef: float) -> np.ndarray:
        """
        Per-observation measurement-error variance on the transformed scale.

        On log scale a relative error ``coef`` is a constant ``coef**2``; on the
        natural scale it is heteroscedastic, ``(coef * count)**2``.
        """
        counts = np.asarray(counts, dtype=float)
        if self is TransformPolicy.LOG:
            return np.full(counts.shape, coef ** 2)
        return (coef * counts) ** 2


@njit(parallel=True, cache=True)
def pairwise_distances(coords):
    """
    Euclidean distance matrix between all rows of ``coords``.

    Parameters
    ----------
    coords : np.ndarray
        Array of coordinates of shape (M, 2).

    Returns
    -------
    np.ndarray
        Symmetric (M, M) distance matrix with a zero diagonal.
    """
    M = coords.shape[0]
    D = np.zeros((M, M), dtype=np.float64)
    for i in prange(M):
        for j in range(i + 1, M):
            d = 0.0
            for k in range(coords.shape[1]):
                tmp = coords[i, k] - coords[j, k]
                d += tmp * tmp
            dist = np.sqrt(d)
            D[i, j] = dist
            D[j, i] = dist
    return D


@dataclass(frozen=True)
class SpatialDataset:
    """
    Sample points of one field.

    Attributes
    ----------
    coords : np.ndarray
        (n, 2) easting/northing of the sample points.
    counts : np.ndarray
        Observed counts after zero replacement (strictly positive).
    transform : TransformPolicy
        Active transform; ``z`` is derived from ``counts`` through it.
    measurement_error_coef : float
        Relative measurement error of a single count.
    """

    coords: np.ndarray
    counts: np.ndarray
    transform: TransformPolicy = TransformPolicy.LOG
    measurement_error_coef: float = 0.064
    _distances: Optional[np.ndarray] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        coords = np.array(self.coords, dtype=float, order="C")
        counts = np.array(self.counts, dtype=float).ravel()
        if coords.ndim != 2 or coords.shape[1] != 2:
            raise ValueError(f"coords must have shape (n, 2), got {coords.shape}")
        if coords.shape[0] != counts.size:
            raise ValueError(
                f"coords and counts must have the same length ({coords.shape[0]} != {counts.size})"
            )
        if counts.size < 2:
            raise ValueError("A dataset needs at least 2 sample points")
        if not np.all(np.isfinite(coords)) or not np.all(np.isfinite(counts)):
            raise ValueError("coords and counts must be finite")
        if np.any(counts <= 0):
            raise ValueError("counts must be strictly positive; use SpatialDataset.from_records() to remap zeros")
        coords.setflags(write=False)
        counts.setflags(write=False)
        object.__setattr__(self, "coords", coords)
        object.__setattr__(self, "counts", counts)
        object.__setattr__(self, "transform", TransformPolicy.coerce(self.transform))

    @classmethod
    def from_records(
        cls,
        records: Union[Sequence[Tuple[float, float, float]], pd.DataFrame],
        transform: Union[str, TransformPolicy] = TransformPolicy.LOG,
        measurement_error_coef: float = 0.064,
        zero_replacement: float = 0.5,
    ) -> "SpatialDataset":
        """
        Build a dataset from ``(easting, northing, observed_count)`` records.

        Zero counts are replaced by ``zero_replacement`` (half the reporting
        limit) before any transform is applied.
        """
        if isinstance(records, pd.DataFrame):
            missing = {"easting", "northing", "count"} - set(records.columns)
            if missing:
                raise ValueError(f"DataFrame is missing columns: {sorted(missing)}")
            arr = records[["easting", "northing", "count"]].to_numpy(dtype=float)
        else:
            arr = np.asarray(records, dtype=float)
        if arr.ndim != 2 or arr.shape[1] != 3:
            raise ValueError("records must be a sequence of (easting, northing, observed_count)")
        counts = arr[:, 2].copy()
        if np.any(counts < 0):
            raise ValueError("Observed counts must be non-negative")
        counts[counts == 0] = zero_replacement
        return cls(
            coords=arr[:, :2],
            counts=counts,
            transform=TransformPolicy.coerce(transform),
            measurement_error_coef=measurement_error_coef,
        )

    @property
    def n(self) -> int:
        return int(self.counts.size)

    @property
    def z(self) -> np.ndarray:
        """Values on the modelling scale."""
        return self.transform.forward(self.counts)

    @property
    def distances(self) -> np.ndarray:
        if self._distances is None:
            D = pairwise_distances(self.coords)
            D.setflags(write=False)
            object.__setattr__(self, "_distances", D)
        return self._distances

    @property
    def measurement_error_variance(self) -> np.ndarray:
        return self.transform.measurement_error_variance(self.counts, self.measurement_error_coef)

    @property
    def design(self) -> np.ndarray:
        """Constant-mean design vector."""
        return np.ones(self.n)

    @property
    def mean_count(self) -> float:
        return float(np.mean(self.counts))
