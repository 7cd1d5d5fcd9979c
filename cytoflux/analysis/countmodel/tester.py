"""Negative binomial GLM likelihood-ratio test on cluster counts (differential abundance)."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import numpy as np
from scipy.stats import chi2

from cytoflux.analysis.countmodel.dispersion import DispersionEstimator, ave_log_cpm
from cytoflux.analysis.countmodel.glmfit import NBGLMFitter
from cytoflux.analysis.countmodel.normalization import calc_norm_factors
from cytoflux.analysis.stats_ops import build_engine_result, fold_change_from_log2
from cytoflux.dataset.featurematrix import FeatureMatrix
from cytoflux.dataset.testresults import EngineResult, FeatureFailure
from cytoflux.design.contrast import reduced_design
from cytoflux.design.contrastbuilder import ContrastBuilder
from cytoflux.design.designmatrixbuilder import DesignMatrix
from cytoflux.utils.exceptions import (
    ConfigurationError,
    FEATURE_SCOPED_ERRORS,
    InsufficientDataError,
)
from cytoflux.utils.semantics import (
    COL_AVE_LOG_CPM,
    COL_COEFFICIENT,
    COL_DISPERSION,
    COL_FOLD_CHANGE,
    COL_LOG10_FC,
    COL_LOG2_FC,
    COL_P_ADJ,
    COL_P_VALUE,
    COL_STATISTIC,
    ENGINE_COUNT_MODEL,
)
from cytoflux.utils.utils import log_debug, log_info, log_time

RESULT_COLUMNS = [
    COL_COEFFICIENT,
    COL_FOLD_CHANGE,
    COL_LOG2_FC,
    COL_LOG10_FC,
    COL_STATISTIC,
    COL_P_VALUE,
    COL_P_ADJ,
    COL_DISPERSION,
    COL_AVE_LOG_CPM,
]

DISPERSION_KINDS = ("tagwise", "trended", "common")

DEFAULTS = {
    "normalization": "TMM",
    "logratio_trim": 0.3,
    "sum_trim": 0.05,
    "tmm_reference": "pseudo",
    "dispersion": "tagwise",
    "prior_df": 10.0,
    "trend": True,
    "prior_count": 0.125,
    "max_iter": 50,
    "pvalue_adjust": "fdr_bh",
}


class CountModelTester:
    """
    Per-feature NB GLM fit with a likelihood-ratio test of the contrast.

    Offsets are log effective library sizes, so coefficients and fold changes
    describe a cluster's share of its sample's events rather than raw counts.
    A matrix holding a single cluster has library size equal to that cluster's
    count: its log2 fold change is 0 and its p-value 1 whatever the raw counts.
    """

    def __init__(
        self,
        matrix: FeatureMatrix,
        design: DesignMatrix,
        contrast: Optional[np.ndarray] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        if matrix.kind != "counts":
            raise ConfigurationError(f"Count model needs a counts matrix, got '{matrix.kind}'")
        self.config = {**DEFAULTS, **(config or {})}

        disp = self.config["dispersion"]
        if not isinstance(disp, (int, float)) and disp not in DISPERSION_KINDS:
            raise ConfigurationError(
                f"count_model.dispersion must be a number or one of {DISPERSION_KINDS}, got {disp!r}"
            )
        if isinstance(disp, (int, float)) and disp < 0:
            raise ConfigurationError(f"count_model.dispersion must be >= 0, got {disp}")
        if float(self.config["prior_count"]) < 0:
            raise ConfigurationError("count_model.prior_count must be >= 0")

        self.design = design
        self.matrix = matrix.align(design.sample_ids)
        builder = ContrastBuilder(design)
        self.contrast = builder.default_contrast() if contrast is None else builder.validate(contrast)

        self.lib_size: Optional[np.ndarray] = None
        self.norm_factors: Optional[np.ndarray] = None
        self.dispersions: Optional[Dict[str, Any]] = None

    @log_time("Normalization")
    def _normalize(self, counts: np.ndarray) -> np.ndarray:
        self.lib_size = counts.sum(axis=1)
        empty = [s for s, n in zip(self.matrix.sample_ids, self.lib_size) if n <= 0]
        if empty:
            raise InsufficientDataError(f"Samples with zero total count: {empty}")

        self.norm_factors = calc_norm_factors(
            counts,
            lib_size=self.lib_size,
            method=self.config["normalization"],
            logratio_trim=self.config["logratio_trim"],
            sum_trim=self.config["sum_trim"],
            ref=self.config["tmm_reference"],
        )
        log_info(f"Normalization factors ({self.config['normalization']}): "
                 f"{np.round(self.norm_factors, 3).tolist()}")
        return self.lib_size * self.norm_factors

    def _dispersions(self, counts: np.ndarray, offset: np.ndarray) -> np.ndarray:
        disp = self.config["dispersion"]
        n_feat = counts.shape[1]
        if isinstance(disp, (int, float)):
            self.dispersions = {"fixed": float(disp)}
            return np.full(n_feat, float(disp))

        estimator = DispersionEstimator(
            counts,
            self.design.matrix,
            offset,
            prior_df=self.config["prior_df"],
            trend=self.config["trend"] and disp != "common",
            max_iter=self.config["max_iter"],
        )
        estimator.estimate_common()
        if disp == "common":
            self.dispersions = {"common": estimator.common, "ave_log_cpm": estimator.ave_log_cpm}
            return np.full(n_feat, estimator.common)

        estimator.estimate_trended()
        if disp == "trended":
            self.dispersions = {"common": estimator.common, "trended": estimator.trended,
                                "ave_log_cpm": estimator.ave_log_cpm}
            return estimator.trended

        self.dispersions = estimator.estimate()
        return estimator.tagwise

    @log_time("Count model")
    def run(self) -> EngineResult:
        counts = self.matrix.values
        features = self.matrix.feature_names

        lib_eff = self._normalize(counts)
        offset = np.log(lib_eff)
        dispersion = self._dispersions(counts, offset)
        ave_cpm = ave_log_cpm(counts, lib_eff)

        X = self.design.matrix
        X0 = reduced_design(X, self.contrast)
        full = NBGLMFitter(X, offset, max_iter=self.config["max_iter"])
        null = NBGLMFitter(X0, offset, max_iter=self.config["max_iter"])

        # prior counts scaled by library size keep the reported fold change finite
        prior = float(self.config["prior_count"]) * lib_eff / np.mean(lib_eff)
        shrunk = NBGLMFitter(X, np.log(lib_eff + 2 * prior), max_iter=self.config["max_iter"])

        rows: Dict[str, Dict[str, float]] = {}
        failures: List[FeatureFailure] = []
        for j, feature in enumerate(features):
            y = counts[:, j]
            try:
                fit1 = full.fit(y, dispersion[j], feature=feature)
                fit0 = null.fit(y, dispersion[j], feature=feature)
                lr = max(fit0.deviance - fit1.deviance, 0.0)
                coef = float(self.contrast @ shrunk.fit(y + prior, dispersion[j], feature=feature).coefficients)
            except FEATURE_SCOPED_ERRORS as e:
                log_debug(str(e))
                failures.append(FeatureFailure.from_error(feature, e))
                continue

            fc = fold_change_from_log2(coef / np.log(2.0))
            rows[feature] = {
                COL_COEFFICIENT: coef,
                COL_FOLD_CHANGE: float(fc[COL_FOLD_CHANGE]),
                COL_LOG2_FC: float(fc[COL_LOG2_FC]),
                COL_LOG10_FC: float(fc[COL_LOG10_FC]),
                COL_STATISTIC: lr,
                COL_P_VALUE: float(chi2.sf(lr, df=1)),
                COL_DISPERSION: float(dispersion[j]),
                COL_AVE_LOG_CPM: float(ave_cpm[j]),
            }

        common = self.dispersions.get("common", self.dispersions.get("fixed"))
        result = build_engine_result(
            ENGINE_COUNT_MODEL,
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
                "normalization": self.config["normalization"],
                "lib_size": self.lib_size.tolist(),
                "norm_factors": self.norm_factors.tolist(),
                "dispersion_kind": self.config["dispersion"],
                "common_dispersion": float(common),
                "prior_df": float(self.config["prior_df"]),
                "prior_count": float(self.config["prior_count"]),
                "pvalue_adjust": self.config["pvalue_adjust"],
            },
        )
        log_info(result.report().summary())
        return result
