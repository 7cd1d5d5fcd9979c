"""Per-engine result containers.

An EngineResult holds the table of successfully tested features (one row per
feature, input order) and the failure markers of the features that were
excluded. Both are immutable once the engine returns.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import numpy as np
import pandas as pd

from cytoflux.utils.exceptions import CytofluxError
from cytoflux.utils.semantics import COL_LOG2_FC, COL_P_ADJ, COL_P_VALUE


@dataclass(frozen=True)
class FeatureFailure:
    feature: str
    error_kind: str
    message: str

    @classmethod
    def from_error(cls, feature: str, error: CytofluxError) -> "FeatureFailure":
        return cls(feature=feature, error_kind=error.kind, message=error.message)


@dataclass(frozen=True)
class RunReport:
    engine: str
    n_features: int
    n_tested: int
    n_excluded: int
    excluded_by_kind: Dict[str, int]

    def summary(self) -> str:
        line = f"{self.engine}: {self.n_tested}/{self.n_features} features tested"
        if self.n_excluded:
            kinds = ", ".join(f"{k}={v}" for k, v in sorted(self.excluded_by_kind.items()))
            line += f", {self.n_excluded} excluded ({kinds})"
        return line


@dataclass(frozen=True)
class EngineResult:
    """
    Result of one engine invocation.

    Attributes
    ----------
    engine : str
        Canonical engine name.
    table : pd.DataFrame
        Indexed by feature name; always carries fold_change, log2_fold_change,
        log10_fold_change, statistic, p_value and p_value_adj, plus
        engine-specific columns.
    failures : tuple of FeatureFailure
        Features excluded from testing, in input order.
    params : dict
        Parameters and fitted hyper-parameters of the run.
    """

    engine: str
    table: pd.DataFrame
    failures: Tuple[FeatureFailure, ...] = ()
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def n_features(self) -> int:
        return len(self.table) + len(self.failures)

    def report(self) -> RunReport:
        kinds = Counter(f.error_kind for f in self.failures)
        return RunReport(
            engine=self.engine,
            n_features=self.n_features,
            n_tested=len(self.table),
            n_excluded=len(self.failures),
            excluded_by_kind=dict(kinds),
        )

    def failures_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [(f.feature, f.error_kind, f.message) for f in self.failures],
            columns=["feature", "error", "message"],
        ).set_index("feature")

    def to_dataframe(self, include_failures: bool = True) -> pd.DataFrame:
        """Full table; excluded features are appended with their error kind and empty statistics."""
        df = self.table.copy()
        df["error"] = None
        if include_failures and self.failures:
            fail = self.failures_frame()[["error"]]
            df = pd.concat([df, fail.reindex(columns=df.columns)], axis=0)
        df.index.name = "feature"
        return df

    def get_significant(self, alpha: float = 0.05, min_abs_log2_fc: Optional[float] = None) -> pd.DataFrame:
        mask = self.table[COL_P_ADJ] < alpha
        if min_abs_log2_fc is not None:
            mask &= np.abs(self.table[COL_LOG2_FC]) >= min_abs_log2_fc
        return self.table.loc[mask].sort_values(COL_P_VALUE)
