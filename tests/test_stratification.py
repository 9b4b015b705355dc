"""Tests for geostratifications and grid construction."""

import logging

import numpy as np
import pytest
from shapely.geometry import Polygon, box

from stratvar.errors import DegenerateStratumError, InvalidStratificationError
from stratvar.stratification import GeoStratification, compact_geostrata, discretize_polygon

from conftest import block_strata, grid_nodes


class TestGeoStratification:
    def test_stratum_sizes(self, grid):
        strat = block_strata(grid, 2, 2)
        np.testing.assert_array_equal(strat.stratum_sizes, [25, 25, 25, 25])
        assert strat.n_nodes == 100
        assert strat.degenerate_strata() == []

    def test_label_count_must_match_nodes(self, grid):
        with pytest.raises(InvalidStratificationError, match="exactly one stratum id"):
            GeoStratification(grid, np.zeros(99, dtype=int), 1)

    def test_labels_out_of_range(self, grid):
        labels = np.zeros(100, dtype=int)
        labels[0] = 4
        with pytest.raises(InvalidStratificationError, match="must lie in"):
            GeoStratification(grid, labels, 4)

    def test_non_integer_labels(self, grid):
        with pytest.raises(InvalidStratificationError, match="integers"):
            GeoStratification(grid, np.full(100, 0.5), 1)

    def test_integral_float_labels_accepted(self, grid):
        strat = GeoStratification(grid, np.zeros(100), 1)
        assert strat.labels.dtype == np.int64

    def test_degenerate_stratum_rejected(self, grid):
        labels = np.zeros(100, dtype=int)
        labels[7] = 1
        strat = GeoStratification(grid, labels, 3, field_id="f1")
        assert strat.degenerate_strata() == [1, 2]
        with pytest.raises(DegenerateStratumError) as info:
            strat.validate("reject")
        assert info.value.strata == [1, 2]
        assert isinstance(info.value, InvalidStratificationError)

    def test_degenerate_stratum_zero_policy_warns(self, grid, caplog):
        labels = np.zeros(100, dtype=int)
        labels[7] = 1
        strat = GeoStratification(grid, labels, 2)
        with caplog.at_level(logging.WARNING, logger="stratvar.stratification"):
            assert strat.validate("zero") is strat
        assert "fewer than 2 nodes" in caplog.text

    def test_grid_mismatch(self, grid):
        strat = block_strata(grid, 2, 2)
        with pytest.raises(InvalidStratificationError, match="does not match"):
            strat.validate(grid_coords=grid + 0.5)


class TestDiscretizePolygon:
    def test_square(self):
        nodes = discretize_polygon(box(0, 0, 10, 10), 1.0)
        assert nodes.shape == (100, 2)
        np.testing.assert_allclose(np.sort(np.unique(nodes[:, 0])), np.arange(10) + 0.5)

    def test_triangle_keeps_interior_nodes(self):
        triangle = Polygon([(0, 0), (10, 0), (0, 10)])
        nodes = discretize_polygon(triangle, 1.0)
        assert 0 < len(nodes) < 100
        assert np.all(nodes.sum(axis=1) < 10)

    def test_invalid_inputs(self):
        with pytest.raises(TypeError):
            discretize_polygon("not a polygon", 1.0)
        with pytest.raises(ValueError):
            discretize_polygon(box(0, 0, 1, 1), 0.0)
        with pytest.raises(ValueError, match="No grid node"):
            discretize_polygon(box(0, 0, 1, 1), 5.0)


class TestCompactGeostrata:
    def test_single_stratum(self, grid):
        strat = compact_geostrata(grid, 1)
        assert strat.n_strata == 1
        assert np.all(strat.labels == 0)

    def test_partition(self):
        nodes = grid_nodes(20, 20, 0.5)
        strat = compact_geostrata(nodes, 5, seed=3, field_id="f1")
        assert strat.n_strata == 5
        assert strat.stratum_sizes.sum() == 400
        assert np.all(strat.stratum_sizes > 1)
        assert strat.field_id == "f1"

    def test_reproducible(self):
        nodes = grid_nodes(20, 20, 0.5)
        a = compact_geostrata(nodes, 6, seed=8)
        b = compact_geostrata(nodes, 6, seed=8)
        np.testing.assert_array_equal(a.labels, b.labels)

    def test_too_many_strata(self, grid):
        with pytest.raises(ValueError):
            compact_geostrata(grid, 101)
