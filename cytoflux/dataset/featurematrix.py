"""Named-axis feature matrices (samples × features).

Rows are indexed by sample identifiers, columns by feature names. The numeric
block is stored read-only; every operation returns a new FeatureMatrix.
"""

from __future__ import annotations

from typing import Iterable, Sequence

import numpy as np
import pandas as pd

from cytoflux.utils.exceptions import ConfigurationError, DimensionMismatchError
from cytoflux.utils.semantics import FEATURE_KINDS


class FeatureMatrix:
    """Immutable (sample × feature) table of one kind: proportions, counts or continuous."""

    def __init__(
        self,
        values: np.ndarray,
        sample_ids: Sequence[str],
        feature_names: Sequence[str],
        kind: str,
        sum_tolerance: float = 1e-6,
        closed: bool = True,
    ) -> None:
        if kind not in FEATURE_KINDS:
            raise ConfigurationError(f"Unknown feature matrix kind '{kind}'. Use one of {FEATURE_KINDS}.")

        sample_ids = [str(s) for s in sample_ids]
        feature_names = [str(f) for f in feature_names]

        try:
            arr = np.array(values, dtype=np.float64, copy=True)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"{kind} matrix contains non-numeric values: {e}") from e

        if arr.ndim != 2:
            raise ConfigurationError(f"{kind} matrix must be 2-D, got shape {arr.shape}")
        if arr.shape != (len(sample_ids), len(feature_names)):
            raise DimensionMismatchError(
                f"{kind} matrix shape {arr.shape} does not match "
                f"{len(sample_ids)} samples × {len(feature_names)} features"
            )
        _check_unique(sample_ids, "sample identifiers", kind)
        _check_unique(feature_names, "feature names", kind)

        self.kind = kind
        self.sum_tolerance = sum_tolerance
        # proportions stop summing to 1 once clusters have been excluded
        self.closed = closed
        self._validate_values(arr)

        arr.setflags(write=False)
        self._values = arr
        self.sample_ids: tuple[str, ...] = tuple(sample_ids)
        self.feature_names: tuple[str, ...] = tuple(feature_names)

    def _validate_values(self, arr: np.ndarray) -> None:
        if self.kind == "continuous":
            if np.isinf(arr).any():
                raise ConfigurationError("continuous matrix contains infinite values")
            return

        if np.isnan(arr).any() or np.isinf(arr).any():
            raise ConfigurationError(f"{self.kind} matrix contains missing or infinite values")
        if (arr < 0).any():
            raise ConfigurationError(f"{self.kind} matrix contains negative values")

        if self.kind == "counts":
            if not np.all(arr == np.round(arr)):
                raise ConfigurationError("counts matrix contains non-integer values")
        else:
            if (arr > 1).any():
                raise ConfigurationError("proportions matrix contains values above 1")
            if not self.closed:
                return
            row_sums = arr.sum(axis=1)
            bad = np.abs(row_sums - 1.0) > self.sum_tolerance
            if bad.any():
                raise ConfigurationError(
                    f"proportions of {int(bad.sum())} sample(s) do not sum to 1 "
                    f"(e.g. {row_sums[bad][0]:.6f})"
                )

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------
    @classmethod
    def from_frame(cls, df: pd.DataFrame, kind: str, **kwargs) -> "FeatureMatrix":
        """Build from a DataFrame indexed by sample id with one column per feature."""
        return cls(df.to_numpy(), df.index.astype(str), df.columns.astype(str), kind, **kwargs)

    @classmethod
    def proportions_from_counts(cls, counts: "FeatureMatrix") -> "FeatureMatrix":
        if counts.kind != "counts":
            raise ConfigurationError(f"Expected a counts matrix, got '{counts.kind}'")
        totals = counts.values.sum(axis=1, keepdims=True)
        if (totals == 0).any():
            empty = [s for s, t in zip(counts.sample_ids, totals[:, 0]) if t == 0]
            raise ConfigurationError(f"Cannot derive proportions for samples with zero events: {empty}")
        return cls(counts.values / totals, counts.sample_ids, counts.feature_names, "proportions")

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def values(self) -> np.ndarray:
        return self._values

    @property
    def shape(self) -> tuple[int, int]:
        return self._values.shape

    @property
    def n_samples(self) -> int:
        return self._values.shape[0]

    @property
    def n_features(self) -> int:
        return self._values.shape[1]

    def group_values(self, mask: np.ndarray) -> np.ndarray:
        """Rows selected by a boolean sample mask (e.g. SampleMetadata.group_mask)."""
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != (self.n_samples,):
            raise DimensionMismatchError(
                f"sample mask of length {mask.shape[0]} does not match {self.n_samples} samples"
            )
        return self._values[mask]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            self._values.copy(),
            index=pd.Index(self.sample_ids, name="sample_id"),
            columns=list(self.feature_names),
        )

    def __repr__(self) -> str:
        return f"FeatureMatrix(kind={self.kind!r}, n_samples={self.n_samples}, n_features={self.n_features})"

    # ------------------------------------------------------------------
    # Derivations (new objects only)
    # ------------------------------------------------------------------
    def _derive(self, values, sample_ids, feature_names, closed=None) -> "FeatureMatrix":
        return FeatureMatrix(
            values,
            sample_ids,
            feature_names,
            self.kind,
            sum_tolerance=self.sum_tolerance,
            closed=self.closed if closed is None else closed,
        )

    def align(self, sample_ids: Sequence[str]) -> "FeatureMatrix":
        """Reorder rows to exactly `sample_ids`; fails on any missing or extra sample."""
        wanted = [str(s) for s in sample_ids]
        have = set(self.sample_ids)
        missing = [s for s in wanted if s not in have]
        extra = sorted(have - set(wanted))
        if missing or extra:
            raise ConfigurationError(
                f"{self.kind} matrix samples do not match sample metadata "
                f"(missing: {missing[:5]}, unexpected: {extra[:5]})"
            )
        if tuple(wanted) == self.sample_ids:
            return self
        pos = {s: i for i, s in enumerate(self.sample_ids)}
        order = [pos[s] for s in wanted]
        return self._derive(self._values[order], wanted, self.feature_names)

    def drop_samples(self, sample_ids: Iterable[str]) -> "FeatureMatrix":
        drop = {str(s) for s in sample_ids}
        keep = [i for i, s in enumerate(self.sample_ids) if s not in drop]
        if len(keep) == self.n_samples:
            return self
        return self._derive(self._values[keep], [self.sample_ids[i] for i in keep], self.feature_names)

    def drop_features(self, feature_names: Iterable[str]) -> "FeatureMatrix":
        drop = {str(f) for f in feature_names}
        keep = [j for j, f in enumerate(self.feature_names) if f not in drop]
        if len(keep) == self.n_features:
            return self
        return self._derive(
            self._values[:, keep],
            self.sample_ids,
            [self.feature_names[j] for j in keep],
            closed=False,
        )

    def check_paired_with(self, other: "FeatureMatrix") -> None:
        """Counts and proportions must describe the same partition in the same order."""
        if self.shape != other.shape:
            raise DimensionMismatchError(
                f"{self.kind} matrix shape {self.shape} differs from {other.kind} matrix shape {other.shape}"
            )
        if self.feature_names != other.feature_names:
            raise DimensionMismatchError(
                f"{self.kind} and {other.kind} matrices do not share the same cluster ordering"
            )
        if set(self.sample_ids) != set(other.sample_ids):
            raise DimensionMismatchError(
                f"{self.kind} and {other.kind} matrices do not share the same samples"
            )


def _check_unique(names: Sequence[str], what: str, kind: str) -> None:
    seen = set()
    dups = []
    for n in names:
        if n in seen:
            dups.append(n)
        seen.add(n)
    if dups:
        raise ConfigurationError(f"{kind} matrix has duplicated {what}: {sorted(set(dups))[:5]}")
