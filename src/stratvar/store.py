"""Artifact stores used to hand results between pipeline stages.

The pipeline depends only on ``put(key, artifact)`` / ``get(key)``. Two
implementations are provided:
  1. MemoryStore: dict-backed, for single runs and tests
  2. DirectoryStore: CSV (posterior samples, statistics) and ``.npz``
     (stratifications, variance arrays) files under a root directory
"""

from __future__ import annotations

import json
import re
import zlib
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, NamedTuple, Optional, Union

import numpy as np
import pandas as pd

from .errors import MissingArtifactError
from .sampler import PosteriorSample
from .simulation import VarianceArray
from .stratification import GeoStratification

ARTIFACT_KINDS = ("posterior", "stratification", "variance", "statistics")


class ArtifactKey(NamedTuple):
    kind: str
    field_id: str
    n_strata: Optional[int] = None

    @classmethod
    def posterior(cls, field_id) -> "ArtifactKey":
        return cls("posterior", str(field_id))

    @classmethod
    def stratification(cls, field_id, n_strata: int) -> "ArtifactKey":
        return cls("stratification", str(field_id), int(n_strata))

    @classmethod
    def variance(cls, field_id) -> "ArtifactKey":
        return cls("variance", str(field_id))

    @classmethod
    def statistics(cls, field_id) -> "ArtifactKey":
        return cls("statistics", str(field_id))


def _check_key(key: ArtifactKey) -> ArtifactKey:
    key = ArtifactKey(*key)
    if key.kind not in ARTIFACT_KINDS:
        raise ValueError(f"Unknown artifact kind '{key.kind}'. Use one of {ARTIFACT_KINDS}.")
    if key.kind == "stratification" and key.n_strata is None:
        raise ValueError("Stratification keys need n_strata")
    return key


class ArtifactStore(ABC):
    """Key/value store of immutable pipeline artifacts."""

    @abstractmethod
    def put(self, key: ArtifactKey, artifact: Any) -> None:
        ...

    @abstractmethod
    def get(self, key: ArtifactKey) -> Any:
        """Return the artifact stored under ``key`` or raise MissingArtifactError."""

    @abstractmethod
    def contains(self, key: ArtifactKey) -> bool:
        ...

    def __contains__(self, key) -> bool:
        return self.contains(key)


class MemoryStore(ArtifactStore):
    def __init__(self):
        self._items: Dict[ArtifactKey, Any] = {}

    def put(self, key: ArtifactKey, artifact: Any) -> None:
        self._items[_check_key(key)] = artifact

    def get(self, key: ArtifactKey) -> Any:
        key = _check_key(key)
        try:
            return self._items[key]
        except KeyError:
            raise MissingArtifactError(key) from None

    def contains(self, key: ArtifactKey) -> bool:
        return _check_key(key) in self._items


class DirectoryStore(ArtifactStore):
    """
    Files under ``root/<kind>/``.

    posterior    -> <field>.csv plus <field>.json metadata
    stratification -> <field>_L<n>.npz
    variance     -> <field>.npz
    statistics   -> <field>.csv
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _safe(field_id: str) -> str:
        """File stem of a field id; ids that need escaping get a checksum suffix so they stay distinct."""
        text = str(field_id)
        stem = re.sub(r"[^\w.]", "_", text)
        if stem != text:
            stem += f"-{zlib.crc32(text.encode('utf-8')):08x}"
        return stem

    def _path(self, key: ArtifactKey) -> Path:
        key = _check_key(key)
        stem = self._safe(key.field_id)
        if key.kind == "stratification":
            stem += f"_L{int(key.n_strata)}"
        suffix = ".npz" if key.kind in ("stratification", "variance") else ".csv"
        return self.root / key.kind / f"{stem}{suffix}"

    def put(self, key: ArtifactKey, artifact: Any) -> None:
        key = _check_key(key)
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        if key.kind == "posterior":
            if not isinstance(artifact, PosteriorSample):
                raise TypeError("posterior artifacts must be PosteriorSample instances")
            artifact.to_frame().to_csv(path)
            meta = {"field_id": key.field_id, "acceptance_rate": artifact.acceptance_rate}
            with open(path.with_suffix(".json"), "w") as f:
                json.dump(meta, f)
        elif key.kind == "stratification":
            if not isinstance(artifact, GeoStratification):
                raise TypeError("stratification artifacts must be GeoStratification instances")
            np.savez(path, coords=artifact.coords, labels=artifact.labels, n_strata=artifact.n_strata)
        elif key.kind == "variance":
            if not isinstance(artifact, VarianceArray):
                raise TypeError("variance artifacts must be VarianceArray instances")
            np.savez(path, **artifact.to_arrays())
        else:
            if not isinstance(artifact, pd.DataFrame):
                raise TypeError("statistics artifacts must be pandas DataFrames")
            artifact.to_csv(path, index=False)

    def get(self, key: ArtifactKey) -> Any:
        key = _check_key(key)
        path = self._path(key)
        if not path.exists():
            raise MissingArtifactError(key)
        if key.kind == "posterior":
            meta_path = path.with_suffix(".json")
            acceptance = float("nan")
            if meta_path.exists():
                with open(meta_path) as f:
                    acceptance = float(json.load(f).get("acceptance_rate", float("nan")))
            df = pd.read_csv(path, index_col="draw", float_precision="round_trip")
            return PosteriorSample.from_frame(df, field_id=key.field_id, acceptance_rate=acceptance)
        if key.kind == "stratification":
            with np.load(path) as data:
                return GeoStratification(data["coords"], data["labels"], int(data["n_strata"]), key.field_id)
        if key.kind == "variance":
            with np.load(path) as data:
                return VarianceArray.from_arrays({k: data[k] for k in data.files}, field_id=key.field_id)
        return pd.read_csv(path)

    def contains(self, key: ArtifactKey) -> bool:
        return self._path(key).exists()
