from __future__ import annotations

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from cytoflux.utils.exceptions import ConfigurationError, InvalidPValueError
from cytoflux.utils.semantics import COL_P_ADJ, COL_P_VALUE

SUPPORTED_METHODS = ("fdr_bh", "fdr_by", "bonferroni", "holm")


def adjust_pvalues(p, method: str = "fdr_bh") -> np.ndarray:
    """
    Multiple-testing adjusted p-values, original order preserved.

    fdr_bh is the Benjamini–Hochberg step-up: p·n/rank, running minimum from
    the largest rank downward, clipped to 1. Only successfully tested features
    may reach this function; a NaN is a caller bug, not a missing value.
    """
    if method not in SUPPORTED_METHODS:
        raise ConfigurationError(
            f"Unknown p-value adjustment '{method}'. Use one of {SUPPORTED_METHODS}."
        )

    p = np.asarray(p, dtype=np.float64).ravel()
    if p.size == 0:
        return np.empty(0, dtype=np.float64)

    if np.isnan(p).any():
        raise InvalidPValueError(f"{int(np.isnan(p).sum())} p-value(s) are NaN")
    if (p < 0).any() or (p > 1).any():
        bad = p[(p < 0) | (p > 1)]
        raise InvalidPValueError(f"p-values outside [0, 1]: {bad[:5].tolist()}")

    adjusted = multipletests(p, method=method)[1]
    # adjusted values never fall below the raw ones; guard float round-off
    return np.clip(np.maximum(adjusted, p), 0.0, 1.0)


def adjust_result_table(table: pd.DataFrame, method: str = "fdr_bh") -> pd.DataFrame:
    """Return a copy of an engine table with `p_value_adj` filled from `p_value`."""
    out = table.copy()
    out[COL_P_ADJ] = adjust_pvalues(out[COL_P_VALUE].to_numpy(), method=method)
    return out
