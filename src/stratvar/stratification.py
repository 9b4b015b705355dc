"""Geostratifications of a field discretization grid.

A geostratification assigns every node of a fine discretization grid to one
of L compact strata. Stratifications normally come from an external
collaborator; ``discretize_polygon`` and ``compact_geostrata`` build simple
ones for scripts and tests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
import shapely
from scipy.cluster.vq import ClusterError, kmeans2
from shapely.geometry import MultiPolygon, Polygon

from .errors import DegenerateStratumError, InvalidStratificationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeoStratification:
    """
    Partition of a discretization grid into ``n_strata`` strata.

    Attributes
    ----------
    coords : np.ndarray
        (N, 2) coordinates of the grid nodes.
    labels : np.ndarray
        (N,) integer stratum id of every node, in ``0 .. n_strata - 1``.
    n_strata : int
        Number of strata L.
    field_id : str | None
    """

    coords: np.ndarray
    labels: np.ndarray
    n_strata: int
    field_id: Optional[str] = None

    def __post_init__(self):
        coords = np.array(self.coords, dtype=float, order="C")
        labels = np.array(self.labels).ravel()
        if coords.ndim != 2 or coords.shape[1] != 2:
            raise InvalidStratificationError(f"coords must have shape (N, 2), got {coords.shape}")
        if labels.size != coords.shape[0]:
            raise InvalidStratificationError(
                f"Every grid node needs exactly one stratum id ({labels.size} labels for {coords.shape[0]} nodes)"
            )
        if not np.issubdtype(labels.dtype, np.integer):
            if not np.all(np.equal(np.mod(labels, 1), 0)):
                raise InvalidStratificationError("Stratum ids must be integers")
        labels = labels.astype(np.int64)
        n_strata = int(self.n_strata)
        if n_strata < 1:
            raise InvalidStratificationError("n_strata must be positive")
        if labels.size and (labels.min() < 0 or labels.max() >= n_strata):
            raise InvalidStratificationError(
                f"Stratum ids must lie in [0, {n_strata - 1}], got [{labels.min()}, {labels.max()}]"
            )
        coords.setflags(write=False)
        labels.setflags(write=False)
        object.__setattr__(self, "coords", coords)
        object.__setattr__(self, "labels", labels)
        object.__setattr__(self, "n_strata", n_strata)

    @property
    def n_nodes(self) -> int:
        return int(self.labels.size)

    @property
    def stratum_sizes(self) -> np.ndarray:
        return np.bincount(self.labels, minlength=self.n_strata)

    def degenerate_strata(self) -> List[int]:
        """Strata with fewer than two nodes (undefined sample variance)."""
        return [int(h) for h in np.flatnonzero(self.stratum_sizes < 2)]

    def validate(self, policy: str = "reject", grid_coords: Optional[np.ndarray] = None) -> "GeoStratification":
        """
        Check the partition before it is used for variance aggregation.

        Parameters
        ----------
        policy : {'reject', 'zero'}
            What to do with strata of fewer than two nodes: raise
            DegenerateStratumError, or accept them with zero variance.
        grid_coords : np.ndarray | None
            Discretization grid the stratification must cover node for node.
        """
        if grid_coords is not None:
            grid_coords = np.asarray(grid_coords, dtype=float)
            if grid_coords.shape != self.coords.shape or not np.allclose(grid_coords, self.coords):
                raise InvalidStratificationError(
                    f"Stratification L={self.n_strata} does not match the discretization grid"
                )
        degenerate = self.degenerate_strata()
        if degenerate:
            if policy == "reject":
                raise DegenerateStratumError(self.n_strata, degenerate, self.field_id)
            if policy != "zero":
                raise ValueError(f"Unknown degenerate stratum policy '{policy}'")
            logger.warning(
                f"Stratification L={self.n_strata} (field {self.field_id}) has {len(degenerate)} "
                f"strata with fewer than 2 nodes; their variance is taken as 0"
            )
        return self


def discretize_polygon(polygon, cell_size: float) -> np.ndarray:
    """
    Centres of a square grid of ``cell_size`` cells that fall inside ``polygon``.

    Returns
    -------
    np.ndarray
        (N, 2) node coordinates, row-major from the lower-left corner.
    """
    if not isinstance(polygon, (Polygon, MultiPolygon)):
        raise TypeError("Geometry must be a Polygon or MultiPolygon, not {}.".format(type(polygon).__name__))
    if cell_size <= 0:
        raise ValueError("cell_size must be positive")
    if polygon.is_empty or polygon.area <= 0:
        raise ValueError("Field boundary must be a valid polygon with non-zero area")
    minx, miny, maxx, maxy = polygon.bounds
    xs = np.arange(minx + cell_size / 2.0, maxx, cell_size)
    ys = np.arange(miny + cell_size / 2.0, maxy, cell_size)
    gx, gy = np.meshgrid(xs, ys)
    gx, gy = gx.ravel(), gy.ravel()
    inside = shapely.contains_xy(polygon, gx, gy)
    nodes = np.column_stack([gx[inside], gy[inside]])
    if nodes.shape[0] == 0:
        raise ValueError("No grid node falls inside the field; reduce cell_size")
    return nodes


def compact_geostrata(
    coords: np.ndarray,
    n_strata: int,
    *,
    seed: Optional[int] = None,
    n_iter: int = 50,
    field_id: Optional[str] = None,
) -> GeoStratification:
    """
    Compact geostrata by k-means clustering of the grid node coordinates.

    Initial centroids are distinct grid nodes drawn with ``seed``; clusters
    that end up empty raise InvalidStratificationError.
    """
    coords = np.asarray(coords, dtype=float)
    if n_strata < 1 or n_strata > coords.shape[0]:
        raise ValueError(f"n_strata must lie in [1, {coords.shape[0]}]")
    if n_strata == 1:
        return GeoStratification(coords, np.zeros(coords.shape[0], dtype=np.int64), 1, field_id)
    rng = np.random.default_rng(seed)
    init = coords[rng.choice(coords.shape[0], size=n_strata, replace=False)]
    try:
        _, labels = kmeans2(coords, init, iter=n_iter, minit="matrix", missing="raise")
    except ClusterError as e:
        raise InvalidStratificationError(f"k-means left an empty stratum for L={n_strata}: {e}") from e
    present = np.unique(labels)
    if present.size != n_strata:
        raise InvalidStratificationError(
            f"k-means produced {present.size} non-empty strata instead of {n_strata}"
        )
    return GeoStratification(coords, labels, n_strata, field_id)
