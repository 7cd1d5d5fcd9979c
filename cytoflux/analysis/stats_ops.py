from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy.stats import t as t_dist

from cytoflux.analysis.multipletesting import adjust_result_table
from cytoflux.dataset.testresults import EngineResult, FeatureFailure
from cytoflux.utils.semantics import (
    COL_FOLD_CHANGE,
    COL_LOG10_FC,
    COL_LOG2_FC,
    COL_P_ADJ,
    COL_P_VALUE,
    COL_STATISTIC,
)


def signed_fold_change(ratio):
    """
    Ratio B/A as a signed fold change: ratios below 1 are reported as -1/ratio,
    so a halving reads -2 and a doubling reads 2.
    """
    ratio = np.asarray(ratio, dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(ratio < 1, -1.0 / ratio, ratio)


def fold_change_columns(ratio) -> Dict[str, np.ndarray]:
    """fold_change / log2 / log10 columns of an unsigned ratio B/A."""
    ratio = np.asarray(ratio, dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        return {
            COL_FOLD_CHANGE: signed_fold_change(ratio),
            COL_LOG2_FC: np.log2(ratio),
            COL_LOG10_FC: np.log10(ratio),
        }


def fold_change_from_log2(log2fc) -> Dict[str, np.ndarray]:
    log2fc = np.asarray(log2fc, dtype=np.float64)
    return {
        COL_FOLD_CHANGE: signed_fold_change(np.power(2.0, log2fc)),
        COL_LOG2_FC: log2fc,
        COL_LOG10_FC: log2fc * np.log10(2.0),
    }


def raw_stats_from_fit(
    *,
    estimates: np.ndarray,
    stdu: np.ndarray,
    sigma: np.ndarray,
    df_res: np.ndarray,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Mechanical shared primitive:
      se = stdu * sigma
      t  = estimate / se
      p  = 2 * t.sf(|t|, df=df_res)
    """
    se = stdu * sigma
    with np.errstate(divide="ignore", invalid="ignore"):
        t = estimates / se
    p = 2 * t_dist.sf(np.abs(t), df=df_res)
    return se, t, p


def build_engine_result(
    engine: str,
    feature_names: Sequence[str],
    rows: Dict[str, Dict[str, Any]],
    failures: List[FeatureFailure],
    columns: Sequence[str],
    pvalue_adjust: str = "fdr_bh",
    params: Optional[Dict[str, Any]] = None,
) -> EngineResult:
    """
    Assemble per-feature rows in input order and adjust p-values over the
    successfully tested features only.
    """
    tested = [f for f in feature_names if f in rows]
    table = pd.DataFrame(
        [rows[f] for f in tested],
        index=pd.Index(tested, name="feature"),
        columns=list(columns),
    )
    for col in (COL_FOLD_CHANGE, COL_LOG2_FC, COL_LOG10_FC, COL_STATISTIC, COL_P_VALUE):
        table[col] = table[col].astype(np.float64)
    table[COL_P_ADJ] = np.nan
    table = adjust_result_table(table, method=pvalue_adjust)

    order = {f: i for i, f in enumerate(feature_names)}
    failures = sorted(failures, key=lambda f: order[f.feature])
    return EngineResult(
        engine=engine,
        table=table,
        failures=tuple(failures),
        params=dict(params or {}),
    )
