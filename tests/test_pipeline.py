"""Tests for the per-field stages and the batch runner."""

import logging

import numpy as np
import pytest

from stratvar.dataset import TransformPolicy
from stratvar.errors import MissingArtifactError
from stratvar.pipeline import (
    FieldTask,
    check_dataset_matches_config,
    field_seed,
    run_batch,
    run_field,
)
from stratvar.store import ArtifactKey, DirectoryStore, MemoryStore

from conftest import make_dataset


def store_with_strata(stratifications, field_ids, store=None):
    store = store if store is not None else MemoryStore()
    for fid in field_ids:
        for L, strat in stratifications.items():
            store.put(ArtifactKey.stratification(fid, L), strat)
    return store


class TestRunField:
    def test_all_stages(self, dataset, stratifications, fast_config):
        store = store_with_strata(stratifications, ["f1"])
        stages = []
        result = run_field(FieldTask("f1", dataset), fast_config, store, stage_log=stages)
        assert stages == ["posterior", "simulation", "statistics"]
        assert len(result.posterior) == fast_config.n_posterior
        assert result.variance_array.stsi.shape == (3, fast_config.n_draws, fast_config.nsim)
        table = result.statistics
        assert list(table["n_strata"]) == [1, 4, 10]
        assert table["field_mean"].iloc[0] == pytest.approx(dataset.mean_count)
        assert np.all(table["u_stsi"] > 0)
        for kind in ("posterior", "variance", "statistics"):
            assert ArtifactKey(kind, "f1") in store

    def test_reuses_stored_posterior(self, dataset, stratifications, fast_config, caplog):
        store = store_with_strata(stratifications, ["f1"])
        first = run_field(FieldTask("f1", dataset), fast_config, store)
        with caplog.at_level(logging.INFO, logger="stratvar.pipeline"):
            second = run_field(FieldTask("f1", dataset), fast_config, store)
        assert second.posterior is first.posterior
        assert "reusing stored posterior" in caplog.text

    def test_reproducible_across_stores(self, dataset, stratifications, fast_config, tmp_path):
        a = run_field(FieldTask("f1", dataset), fast_config, store_with_strata(stratifications, ["f1"]))
        b = run_field(
            FieldTask("f1", dataset),
            fast_config,
            store_with_strata(stratifications, ["f1"], DirectoryStore(tmp_path)),
        )
        np.testing.assert_array_equal(a.posterior.draws, b.posterior.draws)
        np.testing.assert_allclose(a.variance_array.stsi, b.variance_array.stsi)

    def test_missing_stratification(self, dataset, fast_config):
        with pytest.raises(MissingArtifactError):
            run_field(FieldTask("f1", dataset), fast_config, MemoryStore())

    def test_dataset_must_match_configured_scale(self, natural_dataset, stratifications, fast_config):
        store = store_with_strata(stratifications, ["f1"])
        with pytest.raises(ValueError, match="transform 'identity' does not match"):
            run_field(FieldTask("f1", natural_dataset), fast_config, store)
        assert not store.contains(ArtifactKey.posterior("f1"))

    def test_dataset_must_match_configured_measurement_error(self, dataset, stratifications, fast_config):
        store = store_with_strata(stratifications, ["f1"])
        with pytest.raises(ValueError, match="measurement_error_coef"):
            run_field(FieldTask("f1", dataset), fast_config.replace(measurement_error_coef=0.1), store)


class TestFieldTask:
    def test_from_records_applies_config(self, fast_config):
        records = [(0.0, 0.0, 0.0), (1.0, 0.0, 12.0), (0.0, 1.0, 30.0), (1.0, 1.0, 7.0)]
        config = fast_config.replace(transform="identity", measurement_error_coef=0.1, zero_replacement=0.25)
        task = FieldTask.from_records("f1", records, config)
        assert task.field_id == "f1"
        assert task.dataset.transform is TransformPolicy.IDENTITY
        assert task.dataset.measurement_error_coef == 0.1
        np.testing.assert_array_equal(task.dataset.counts, [0.25, 12.0, 30.0, 7.0])
        check_dataset_matches_config(task, config)

    def test_mismatched_task_is_recorded_as_posterior_failure(self, stratifications, fast_config):
        records = [(x, y, 10.0 + x + 3 * y) for x in range(4) for y in range(4)]
        tasks = [
            FieldTask.from_records("ok", records, fast_config),
            FieldTask.from_records("other", records, fast_config.replace(measurement_error_coef=0.2)),
        ]
        store = store_with_strata(stratifications, ["ok", "other"])
        batch = run_batch(tasks, fast_config, store)
        assert list(batch.results) == ["ok"]
        [failure] = batch.failures
        assert failure.field_id == "other"
        assert failure.stage == "posterior"
        assert failure.error_type == "ValueError"


class TestRunBatch:
    def test_failures_are_isolated(self, stratifications, fast_config, caplog):
        tasks = [FieldTask("good", make_dataset(seed=3)), FieldTask("bad", make_dataset(seed=4))]
        store = store_with_strata(stratifications, ["good"])
        with caplog.at_level(logging.ERROR, logger="stratvar.pipeline"):
            batch = run_batch(tasks, fast_config, store)
        assert not batch.ok
        assert list(batch.results) == ["good"]
        [failure] = batch.failures
        assert failure.field_id == "bad"
        assert failure.stage == "simulation"
        assert failure.error_type == "MissingArtifactError"
        assert "Field bad failed during simulation" in caplog.text
        assert set(batch.statistics["field_id"]) == {"good"}

    def test_duplicate_ids_rejected(self, dataset, fast_config):
        with pytest.raises(ValueError, match="unique"):
            run_batch([FieldTask("a", dataset), FieldTask("a", dataset)], fast_config)

    def test_empty_batch(self, fast_config):
        batch = run_batch([], fast_config)
        assert batch.ok
        assert batch.statistics.empty

    def test_fields_get_distinct_seeds(self, fast_config):
        assert field_seed(fast_config, "a") != field_seed(fast_config, "b")
        assert field_seed(fast_config, "a") == field_seed(fast_config, "a")

    @pytest.mark.slow
    def test_process_pool_matches_serial(self, stratifications, fast_config):
        tasks = [FieldTask(f"f{i}", make_dataset(seed=10 + i)) for i in range(3)]
        ids = [t.field_id for t in tasks]
        serial = run_batch(tasks, fast_config, store_with_strata(stratifications, ids))
        store = store_with_strata(stratifications, ids)
        parallel = run_batch(tasks, fast_config.replace(field_workers=2), store)
        assert parallel.ok
        for fid in ids:
            np.testing.assert_allclose(
                parallel.results[fid].variance_array.stsi, serial.results[fid].variance_array.stsi
            )
            assert ArtifactKey.statistics(fid) in store
