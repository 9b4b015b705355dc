"""Exception types raised by the sampling-variance pipeline.

All failures that are scoped to a single field derive from ``StratVarError``
so that a batch run can isolate them and continue with the remaining fields.
"""
from __future__ import annotations

from typing import Any, Optional, Sequence


class StratVarError(Exception):
    """Base class for field-scoped pipeline failures."""


class NonPositiveDefiniteCovarianceError(StratVarError):
    def __init__(
        self,
        field_id: Optional[str] = None,
        draw: Optional[int] = None,
        params: Optional[Sequence[float]] = None,
        where: str = "",
    ):
        self.field_id = field_id
        self.draw = draw
        self.params = None if params is None else tuple(float(p) for p in params)
        msg = "Covariance matrix is not positive definite"
        if where:
            msg += f" during {where}"
        if field_id is not None:
            msg += f" (field '{field_id}'"
            if draw is not None:
                msg += f", draw {draw}"
            msg += ")"
        if self.params is not None:
            msg += f"; parameters (lambda, tau2rel, phi) = {self.params}"
        super().__init__(msg)


class InvalidStratificationError(StratVarError, ValueError):
    """Stratum labels do not partition the discretization grid."""


class DegenerateStratumError(InvalidStratificationError):
    def __init__(self, n_strata: int, strata: Sequence[int], field_id: Optional[str] = None):
        self.n_strata = int(n_strata)
        self.strata = [int(s) for s in strata]
        self.field_id = field_id
        where = f" for field '{field_id}'" if field_id is not None else ""
        super().__init__(
            f"Stratification with L={self.n_strata}{where} has strata with fewer than 2 nodes: "
            f"{self.strata}. Use degenerate_stratum_policy='zero' to treat their variance as 0."
        )


class MissingArtifactError(StratVarError, KeyError):
    def __init__(self, key: Any):
        self.key = key
        super().__init__(f"No artifact stored under {key!r}")

    def __str__(self) -> str:
        return self.args[0]
