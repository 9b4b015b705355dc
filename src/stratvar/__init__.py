"""Sampling-variance prediction for stratified field surveys.

This package provides tools for:
- Fitting an exponential variogram to sparse field data by maximum likelihood
- Sampling its posterior with a DE-MC-ZS population sampler
- Simulating fields from posterior draws on a discretization grid
- Predicting stratified (STSI) and simple random sampling variances with
  their variogram-uncertainty and simulation-noise components
- Converting predicted variances into a relative uncertainty metric and a
  required sample size

Example usage:
    from stratvar import PipelineConfig, FieldTask, MemoryStore, run_batch

    config = PipelineConfig()
    task = FieldTask.from_records("field-1", records, config)
    store = MemoryStore()
    # store.put(ArtifactKey.stratification("field-1", L), stratification) for every L
    result = run_batch([task], config, store)
    print(result.statistics)
"""

__version__ = "0.1.0"

# Configuration and errors
from .config import PipelineConfig, load_config
from .errors import (
    DegenerateStratumError,
    InvalidStratificationError,
    MissingArtifactError,
    NonPositiveDefiniteCovarianceError,
    StratVarError,
)

# Data
from .dataset import SpatialDataset, TransformPolicy
from .stratification import GeoStratification, compact_geostrata, discretize_polygon

# Variogram inference
from .variogram import (
    MaximumLikelihoodInitializer,
    PriorBox,
    VariogramLikelihood,
    VariogramParams,
    blue_mean,
    log_likelihood,
)
from .sampler import DifferentialEvolutionSampler, PosteriorSample, sample_posterior

# Simulation and aggregation
from .simulation import FieldSimulator, VarianceAggregator, VarianceArray, simulate_variance_array
from .uncertainty import (
    SampleSizeBound,
    VarianceComponentDecomposer,
    VarianceComponents,
    aggregate_statistics,
    required_sample_size,
    uncertainty_metric,
)

# Persistence and orchestration
from .store import ArtifactKey, ArtifactStore, DirectoryStore, MemoryStore
from .pipeline import (
    BatchResult,
    FieldFailure,
    FieldResult,
    FieldTask,
    check_dataset_matches_config,
    configure_logging,
    run_batch,
    run_field,
)

__all__ = [
    # Version
    "__version__",
    # Configuration
    "PipelineConfig",
    "load_config",
    # Errors
    "StratVarError",
    "NonPositiveDefiniteCovarianceError",
    "InvalidStratificationError",
    "DegenerateStratumError",
    "MissingArtifactError",
    # Data
    "SpatialDataset",
    "TransformPolicy",
    "GeoStratification",
    "compact_geostrata",
    "discretize_polygon",
    # Variogram
    "VariogramParams",
    "PriorBox",
    "VariogramLikelihood",
    "MaximumLikelihoodInitializer",
    "log_likelihood",
    "blue_mean",
    "DifferentialEvolutionSampler",
    "PosteriorSample",
    "sample_posterior",
    # Simulation
    "FieldSimulator",
    "VarianceAggregator",
    "VarianceArray",
    "simulate_variance_array",
    # Aggregation
    "VarianceComponents",
    "VarianceComponentDecomposer",
    "SampleSizeBound",
    "aggregate_statistics",
    "uncertainty_metric",
    "required_sample_size",
    # Orchestration
    "ArtifactKey",
    "ArtifactStore",
    "MemoryStore",
    "DirectoryStore",
    "FieldTask",
    "check_dataset_matches_config",
    "FieldResult",
    "FieldFailure",
    "BatchResult",
    "configure_logging",
    "run_field",
    "run_batch",
]
