"""Per-feature linear model with empirical-Bayes moderated t-statistics
(differential state on per-cluster marker summaries)."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import numpy as np

from cytoflux.analysis.ebayes_moderator import EbayesModerator
from cytoflux.analysis.linearmodelfitter import LinearModelFitter
from cytoflux.analysis.stats_ops import build_engine_result, fold_change_columns, fold_change_from_log2
from cytoflux.dataset.featurematrix import FeatureMatrix
from cytoflux.dataset.testresults import EngineResult, FeatureFailure
from cytoflux.design.contrast import apply_contrast
from cytoflux.design.contrastbuilder import ContrastBuilder
from cytoflux.design.designmatrixbuilder import DesignMatrix
from cytoflux.utils.exceptions import (
    ConfigurationError,
    DegenerateInputError,
    InsufficientDataError,
)
from cytoflux.utils.semantics import (
    COL_COEFFICIENT,
    COL_DF_TOTAL,
    COL_FOLD_CHANGE,
    COL_LOG10_FC,
    COL_LOG2_FC,
    COL_MEAN_COMPARISON,
    COL_MEAN_REFERENCE,
    COL_MODERATED_VARIANCE,
    COL_P_ADJ,
    COL_P_VALUE,
    COL_RESIDUAL_VARIANCE,
    COL_STATISTIC,
    ENGINE_LINEAR_MODEL,
)
from cytoflux.utils.utils import log_debug, log_info, log_time, log_warning

RESULT_COLUMNS = [
    COL_COEFFICIENT,
    COL_FOLD_CHANGE,
    COL_LOG2_FC,
    COL_LOG10_FC,
    COL_STATISTIC,
    COL_P_VALUE,
    COL_P_ADJ,
    COL_MODERATED_VARIANCE,
    COL_RESIDUAL_VARIANCE,
    COL_DF_TOTAL,
    COL_MEAN_REFERENCE,
    COL_MEAN_COMPARISON,
]

VALUE_SCALES = ("linear", "log2", "log10")

DEFAULTS = {
    "value_scale": "linear",
    "trend": False,
    "ebayes": "limma",
    "min_observations": 2,
    "pvalue_adjust": "fdr_bh",
}

# residual variance below this fraction of the total variance is treated as zero
ZERO_VARIANCE_RTOL = 1e-10


class LinearModelTester:
    def __init__(
        self,
        matrix: FeatureMatrix,
        design: DesignMatrix,
        contrast: Optional[np.ndarray] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        self.config = {**DEFAULTS, **(config or {})}
        if self.config["value_scale"] not in VALUE_SCALES:
            raise ConfigurationError(
                f"linear_model.value_scale must be one of {VALUE_SCALES}, got {self.config['value_scale']!r}"
            )
        self.design = design
        self.matrix = matrix.align(design.sample_ids)
        builder = ContrastBuilder(design)
        self.contrast = builder.default_contrast() if contrast is None else builder.validate(contrast)
        self.fit_results: Optional[dict] = None

    def _check_observations(self, y: np.ndarray, feature: str) -> None:
        min_obs = int(self.config["min_observations"])
        labels = self.design.group_labels
        for level in self.design.levels:
            n_valid = int(np.sum(~np.isnan(y[labels == level])))
            if n_valid < min_obs:
                raise InsufficientDataError(
                    f"Only {n_valid} valid observation(s) in group '{level}' (need {min_obs})",
                    feature=feature,
                )

    def _group_means(self, coefs: np.ndarray, estimates: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """
        Fitted reference-group mean at the average of the other design columns;
        comparison mean = reference mean + contrast estimate.
        """
        row = self.design.matrix.mean(axis=0).copy()
        row[self.design.response_column] = 0.0
        mean_a = coefs @ row
        return mean_a, mean_a + estimates

    def _fold_changes(self, estimates, mean_a, mean_b, features) -> Dict[str, np.ndarray]:
        scale = self.config["value_scale"]
        if scale == "log2":
            return fold_change_from_log2(estimates)
        if scale == "log10":
            return fold_change_from_log2(estimates * np.log2(10.0))

        nonpos = (mean_a <= 0) | (mean_b <= 0)
        with np.errstate(divide="ignore", invalid="ignore"):
            cols = fold_change_columns(mean_b / mean_a)
        if nonpos.any():
            for k in cols:
                cols[k] = np.where(nonpos, np.nan, cols[k])
            log_warning(
                f"{int(nonpos.sum())} feature(s) with a non-positive fitted group mean; "
                f"fold change set to NaN (e.g. {[f for f, b in zip(features, nonpos) if b][:3]})"
            )
        return cols

    @log_time("Linear model")
    def run(self) -> EngineResult:
        features = self.matrix.feature_names
        Y = self.matrix.values

        fitter = LinearModelFitter(Y, self.design.matrix).fit()
        self.fit_results = fitter.get_results()
        estimates, unscaled_sd = apply_contrast(self.fit_results, self.contrast)
        s2 = self.fit_results["residual_variance"]
        df_res = self.fit_results["df_residual"]

        usable = np.zeros(len(features), dtype=bool)
        failures: List[FeatureFailure] = []
        for j, feature in enumerate(features):
            try:
                self._check_observations(Y[:, j], feature)
                if not np.isfinite(estimates[j]) or df_res[j] <= 0:
                    raise InsufficientDataError("No residual degrees of freedom", feature=feature)
                total_var = np.nanvar(Y[:, j])
                if total_var == 0 or s2[j] <= ZERO_VARIANCE_RTOL * total_var:
                    raise DegenerateInputError(
                        f"Zero residual variance (coefficient {estimates[j]:g})", feature=feature
                    )
                usable[j] = True
            except (InsufficientDataError, DegenerateInputError) as e:
                log_debug(str(e))
                failures.append(FeatureFailure.from_error(feature, e))

        idx = np.where(usable)[0]
        covariate = None
        if self.config["trend"]:
            covariate = np.nanmean(Y[:, idx], axis=0)
        moderator = EbayesModerator(s2[idx], df_res[idx], method=self.config["ebayes"], covariate=covariate)
        moderator.fit()
        stats = moderator.apply_to_contrast(estimates[idx], unscaled_sd[idx])

        coefs = self.fit_results["coefficients"][idx]
        mean_a, mean_b = self._group_means(coefs, estimates[idx])
        fcs = self._fold_changes(estimates[idx], mean_a, mean_b, [features[j] for j in idx])

        rows: Dict[str, Dict[str, float]] = {}
        for k, j in enumerate(idx):
            rows[features[j]] = {
                COL_COEFFICIENT: estimates[j],
                COL_FOLD_CHANGE: fcs[COL_FOLD_CHANGE][k],
                COL_LOG2_FC: fcs[COL_LOG2_FC][k],
                COL_LOG10_FC: fcs[COL_LOG10_FC][k],
                COL_STATISTIC: stats["t"][k],
                COL_P_VALUE: stats["p"][k],
                COL_MODERATED_VARIANCE: stats["s2_moderated"][k],
                COL_RESIDUAL_VARIANCE: s2[j],
                COL_DF_TOTAL: stats["df_total"][k],
                COL_MEAN_REFERENCE: mean_a[k],
                COL_MEAN_COMPARISON: mean_b[k],
            }

        result = build_engine_result(
            ENGINE_LINEAR_MODEL,
            features,
            rows,
            failures,
            RESULT_COLUMNS,
            pvalue_adjust=self.config["pvalue_adjust"],
            params={
                "formula": self.design.formula,
                "contrast": self.contrast.tolist(),
                "reference": self.design.reference,
                "comparison": self.design.comparison,
                "value_scale": self.config["value_scale"],
                "trend": bool(self.config["trend"]),
                "df_prior": moderator.d0,
                "var_prior": float(np.median(moderator.s0)) if np.size(moderator.s0) else None,
                "pvalue_adjust": self.config["pvalue_adjust"],
            },
        )
        log_info(result.report().summary())
        return result
