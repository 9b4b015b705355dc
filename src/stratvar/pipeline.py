"""Per-field pipeline stages and the multi-field batch runner.

Stages of one field, each reading its inputs from and writing its output to
an ArtifactStore:
  1. posterior   - ML seeding and DE-MC-ZS sampling of the variogram
  2. simulation  - simulated fields and their sampling variances
  3. statistics  - variance components, uncertainty metric, sample size

Fields share no mutable state. A batch run isolates failures per field: a
field that fails is logged and recorded, and the remaining fields continue.
"""

from __future__ import annotations

import logging
import math
import multiprocessing
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .config import PipelineConfig
from .dataset import SpatialDataset, TransformPolicy
from .errors import StratVarError
from .sampler import PosteriorSample, sample_posterior
from .simulation import VarianceArray, field_key, simulate_variance_array
from .store import ArtifactKey, ArtifactStore, MemoryStore
from .stratification import GeoStratification
from .uncertainty import aggregate_statistics

logger = logging.getLogger(__name__)

STAGES = ("posterior", "simulation", "statistics")


def configure_logging(level=logging.INFO) -> None:
    """Install a console handler with the package's message format."""
    logging.basicConfig(level=level, format='%(asctime)s - %(levelname)s - %(message)s')


@dataclass(frozen=True)
class FieldTask:
    """Explicit inputs of one field's pipeline."""

    field_id: str
    dataset: SpatialDataset

    @classmethod
    def from_records(
        cls,
        field_id: str,
        records: Union[Sequence[Tuple[float, float, float]], pd.DataFrame],
        config: PipelineConfig,
    ) -> "FieldTask":
        """Build the field's dataset with the transform, zero replacement and measurement error of ``config``."""
        dataset = SpatialDataset.from_records(
            records,
            transform=config.transform,
            measurement_error_coef=config.measurement_error_coef,
            zero_replacement=config.zero_replacement,
        )
        return cls(field_id, dataset)


@dataclass(frozen=True)
class FieldResult:
    field_id: str
    posterior: PosteriorSample
    variance_array: VarianceArray
    statistics: pd.DataFrame


@dataclass(frozen=True)
class FieldFailure:
    field_id: str
    stage: str
    error_type: str
    message: str


@dataclass
class BatchResult:
    results: Dict[str, FieldResult] = field(default_factory=dict)
    failures: List[FieldFailure] = field(default_factory=list)

    @property
    def statistics(self) -> pd.DataFrame:
        frames = [r.statistics for r in self.results.values()]
        if not frames:
            return pd.DataFrame()
        return pd.concat(frames, ignore_index=True)

    @property
    def ok(self) -> bool:
        return not self.failures


def check_dataset_matches_config(task: FieldTask, config: PipelineConfig) -> None:
    """
    Raise ValueError if the dataset was built with another transform or
    measurement-error coefficient than the run configuration uses.
    """
    ds = task.dataset
    if ds.transform is not TransformPolicy.coerce(config.transform):
        raise ValueError(
            f"Field {task.field_id}: dataset transform '{ds.transform.value}' does not match "
            f"configured transform '{config.transform}'"
        )
    if not math.isclose(ds.measurement_error_coef, config.measurement_error_coef, rel_tol=1e-9, abs_tol=1e-12):
        raise ValueError(
            f"Field {task.field_id}: dataset measurement_error_coef {ds.measurement_error_coef} does not match "
            f"configured {config.measurement_error_coef}"
        )


def field_seed(config: PipelineConfig, field_id) -> int:
    """Sampler seed of one field, derived from the run seed and the field id."""
    ss = np.random.SeedSequence([int(config.seed), field_key(field_id)])
    return int(ss.generate_state(1)[0])


# ---------------------------------------------------------------------- #
# Stages
# ---------------------------------------------------------------------- #
def fit_posterior(task: FieldTask, config: PipelineConfig, store: ArtifactStore) -> PosteriorSample:
    posterior, _ = sample_posterior(
        task.dataset, config, field_id=task.field_id, seed=field_seed(config, task.field_id)
    )
    store.put(ArtifactKey.posterior(task.field_id), posterior)
    return posterior


def load_stratifications(field_id, config: PipelineConfig, store: ArtifactStore) -> Dict[int, GeoStratification]:
    """Load the stratification of every configured stratum count; missing ones raise MissingArtifactError."""
    return {L: store.get(ArtifactKey.stratification(field_id, L)) for L in config.stratum_counts}


def simulate_field(task: FieldTask, config: PipelineConfig, store: ArtifactStore) -> VarianceArray:
    posterior = store.get(ArtifactKey.posterior(task.field_id))
    stratifications = load_stratifications(task.field_id, config, store)
    variance_array = simulate_variance_array(task.field_id, task.dataset, posterior, stratifications, config)
    store.put(ArtifactKey.variance(task.field_id), variance_array)
    return variance_array


def summarize_field(task: FieldTask, config: PipelineConfig, store: ArtifactStore) -> pd.DataFrame:
    variance_array = store.get(ArtifactKey.variance(task.field_id))
    table = aggregate_statistics(variance_array, task.dataset.mean_count, config, field_id=task.field_id)
    store.put(ArtifactKey.statistics(task.field_id), table)
    logger.info(f"Field {task.field_id}: statistics table written ({len(table)} stratum levels)")
    return table


def run_field(
    task: FieldTask,
    config: PipelineConfig,
    store: ArtifactStore,
    *,
    reuse: bool = True,
    stage_log: Optional[List[str]] = None,
) -> FieldResult:
    """
    Run all stages of one field.

    Args:
        task: Field id and sample dataset; its transform and measurement-error
            coefficient must match ``config`` (see ``FieldTask.from_records``).
        config: Run configuration.
        store: Holds the field's stratifications; receives its artifacts.
        reuse: Skip the posterior / simulation stages whose artifact is
            already stored.
        stage_log: If given, the name of each stage is appended before it runs.
    """
    stage_log = stage_log if stage_log is not None else []

    stage_log.append("posterior")
    check_dataset_matches_config(task, config)
    key = ArtifactKey.posterior(task.field_id)
    if reuse and store.contains(key):
        posterior = store.get(key)
        logger.info(f"Field {task.field_id}: reusing stored posterior sample")
    else:
        posterior = fit_posterior(task, config, store)

    stage_log.append("simulation")
    key = ArtifactKey.variance(task.field_id)
    if reuse and store.contains(key):
        variance_array = store.get(key)
        logger.info(f"Field {task.field_id}: reusing stored variance array")
    else:
        variance_array = simulate_field(task, config, store)

    stage_log.append("statistics")
    statistics = summarize_field(task, config, store)
    return FieldResult(task.field_id, posterior, variance_array, statistics)


def _run_isolated(
    task: FieldTask,
    config: PipelineConfig,
    store: ArtifactStore,
    reuse: bool,
) -> Tuple[Optional[FieldResult], Optional[FieldFailure]]:
    stages: List[str] = []
    try:
        return run_field(task, config, store, reuse=reuse, stage_log=stages), None
    except (StratVarError, ValueError) as e:
        stage = stages[-1] if stages else STAGES[0]
        logger.error(f"Field {task.field_id} failed during {stage}: {type(e).__name__}: {e}")
        return None, FieldFailure(task.field_id, stage, type(e).__name__, str(e))


def run_batch(
    tasks: Iterable[FieldTask],
    config: PipelineConfig,
    store: Optional[ArtifactStore] = None,
    *,
    reuse: bool = True,
) -> BatchResult:
    """
    Run every field; failures are isolated per field.

    With ``config.field_workers > 1`` fields run in separate processes; each
    worker gets a copy of ``store`` and the parent writes the returned
    artifacts back into it.
    """
    tasks = list(tasks)
    ids = [t.field_id for t in tasks]
    if len(set(ids)) != len(ids):
        raise ValueError("Field ids must be unique within a batch")
    store = store if store is not None else MemoryStore()
    batch = BatchResult()

    if config.field_workers > 1 and len(tasks) > 1:
        ctx = multiprocessing.get_context("spawn")
        with ProcessPoolExecutor(max_workers=config.field_workers, mp_context=ctx) as pool:
            futures = [pool.submit(_run_isolated, task, config, store, reuse) for task in tasks]
            outcomes = [f.result() for f in futures]
        for result, failure in outcomes:
            if result is not None:
                store.put(ArtifactKey.posterior(result.field_id), result.posterior)
                store.put(ArtifactKey.variance(result.field_id), result.variance_array)
                store.put(ArtifactKey.statistics(result.field_id), result.statistics)
    else:
        outcomes = [_run_isolated(task, config, store, reuse) for task in tasks]

    for result, failure in outcomes:
        if failure is not None:
            batch.failures.append(failure)
        else:
            batch.results[result.field_id] = result
    logger.info(f"Batch finished: {len(batch.results)} fields succeeded, {len(batch.failures)} failed")
    return batch
