from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from cytoflux.utils.exceptions import ConfigurationError

DEFAULT_BLOCK = "all"


class SampleMetadata:
    """
    Per-sample design table: identifier, pairing block, response and extra covariates.

    The table is indexed by sample id (unique, order preserved). When no block
    column is given every sample belongs to a single block, i.e. the design is
    unpaired.
    """

    def __init__(
        self,
        table: pd.DataFrame,
        sample_column: str = "sample_id",
        group_column: str = "condition",
        block_column: Optional[str] = None,
        covariates: Optional[Sequence[str]] = None,
    ) -> None:
        df = table.copy()

        if sample_column in df.columns:
            df = df.set_index(sample_column)
        elif df.index.name != sample_column:
            raise ConfigurationError(f"{sample_column} not found in sample metadata.")

        df.index = df.index.astype(str)
        df.index.name = "sample_id"

        dups = df.index[df.index.duplicated()].unique().tolist()
        if dups:
            raise ConfigurationError(f"Duplicated sample identifiers in metadata: {dups[:5]}")

        if group_column not in df.columns:
            raise ConfigurationError(f"{group_column} not found in sample metadata.")
        if df[group_column].isna().any():
            missing = df.index[df[group_column].isna()].tolist()
            raise ConfigurationError(f"Samples without a '{group_column}' value: {missing[:5]}")
        df[group_column] = df[group_column].astype(str)

        if block_column is None or block_column not in df.columns:
            if block_column is not None:
                raise ConfigurationError(f"Block column '{block_column}' not found in sample metadata.")
            block_column = "block"
            df[block_column] = DEFAULT_BLOCK
        df[block_column] = df[block_column].astype(str)

        covariates = list(covariates or [])
        for cov in covariates:
            if cov not in df.columns:
                raise ConfigurationError(f"Covariate '{cov}' not found in sample metadata.")
            if df[cov].isna().any():
                raise ConfigurationError(f"Covariate '{cov}' has missing values.")

        self.table = df
        self.group_column = group_column
        self.block_column = block_column
        self.covariates = covariates

    # ------------------------------------------------------------------
    @property
    def sample_ids(self) -> List[str]:
        return self.table.index.tolist()

    @property
    def n_samples(self) -> int:
        return len(self.table)

    @property
    def groups(self) -> np.ndarray:
        return self.table[self.group_column].to_numpy()

    @property
    def blocks(self) -> np.ndarray:
        return self.table[self.block_column].to_numpy()

    @property
    def is_paired(self) -> bool:
        return self.table[self.block_column].nunique() > 1

    def levels(self, reference: Optional[str] = None) -> List[str]:
        """
        Return the two response levels, reference first.

        The reference is the caller's choice, or the lexicographically first
        level by default. Anything other than exactly two levels is an error.
        """
        levels = sorted(self.table[self.group_column].unique())
        if len(levels) != 2:
            raise ConfigurationError(
                f"Response '{self.group_column}' must have exactly 2 levels; found {levels}"
            )
        if reference is None:
            return levels
        reference = str(reference)
        if reference not in levels:
            raise ConfigurationError(
                f"Reference level '{reference}' not found in '{self.group_column}' levels {levels}"
            )
        return [reference] + [lvl for lvl in levels if lvl != reference]

    def group_mask(self, level: str) -> np.ndarray:
        return self.groups == str(level)

    def drop_samples(self, sample_ids: Iterable[str]) -> "SampleMetadata":
        drop = {str(s) for s in sample_ids}
        kept = self.table.loc[[s for s in self.sample_ids if s not in drop]]
        return SampleMetadata(
            kept,
            sample_column="sample_id",
            group_column=self.group_column,
            block_column=self.block_column,
            covariates=self.covariates,
        )

    def __repr__(self) -> str:
        return (
            f"SampleMetadata(n_samples={self.n_samples}, response={self.group_column!r}, "
            f"paired={self.is_paired})"
        )
