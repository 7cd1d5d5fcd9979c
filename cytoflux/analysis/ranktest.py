"""Two-group rank test per feature (differential abundance on proportions).

Unpaired designs use the Mann–Whitney U / Wilcoxon rank-sum test. Small tied
samples get an exact permutation null, so p never drops below the smallest
value attainable for the group sizes. Paired designs use the Wilcoxon
signed-rank test on complete (reference, comparison) pairs sharing a block
identifier, one sample per condition and block.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.stats import mannwhitneyu, permutation_test, rankdata, wilcoxon

from cytoflux.analysis.stats_ops import build_engine_result, fold_change_columns
from cytoflux.dataset.featurematrix import FeatureMatrix
from cytoflux.dataset.testresults import EngineResult, FeatureFailure
from cytoflux.design.designmatrixbuilder import DesignMatrix
from cytoflux.utils.exceptions import (
    ConfigurationError,
    DegenerateInputError,
    FEATURE_SCOPED_ERRORS,
    InsufficientDataError,
)
from cytoflux.utils.semantics import (
    COL_FOLD_CHANGE,
    COL_LOG10_FC,
    COL_LOG2_FC,
    COL_MEAN_COMPARISON,
    COL_MEAN_REFERENCE,
    COL_P_ADJ,
    COL_P_VALUE,
    COL_STATISTIC,
    ENGINE_RANK_TEST,
)
from cytoflux.utils.utils import log_debug, log_info, log_time, log_warning

RESULT_COLUMNS = [
    COL_FOLD_CHANGE,
    COL_LOG2_FC,
    COL_LOG10_FC,
    COL_STATISTIC,
    COL_P_VALUE,
    COL_P_ADJ,
    COL_MEAN_REFERENCE,
    COL_MEAN_COMPARISON,
    "n_reference",
    "n_comparison",
]

DEFAULTS = {
    "paired": False,
    "pseudocount": 0.0,
    "min_samples_warning": 4,
    "method": "auto",
    "pvalue_adjust": "fdr_bh",
}

# scipy's "auto" switches to the exact null only without ties and up to this group size
EXACT_MAX_GROUP = 8


def _u_statistic(x, y, axis=-1):
    """Mann-Whitney U of x against y (midranks for ties), vectorized along the last axis."""
    ranks = rankdata(np.concatenate([x, y], axis=axis), axis=axis)
    n_x = x.shape[axis]
    return ranks[..., :n_x].sum(axis=-1) - n_x * (n_x + 1) / 2


class RankTester:
    def __init__(
        self,
        matrix: FeatureMatrix,
        design: DesignMatrix,
        config: Optional[Dict[str, Any]] = None,
        blocks: Optional[Sequence[str]] = None,
    ):
        """
        Parameters:
        - matrix: FeatureMatrix (samples x features), any kind
        - design: DesignMatrix; its response levels define group A (reference) and B
        - config: rank_test options (paired, pseudocount, min_samples_warning, method, pvalue_adjust)
        - blocks: block identifier per design sample, required when paired
        """
        self.config = {**DEFAULTS, **(config or {})}
        if self.config["method"] not in ("auto", "exact", "asymptotic"):
            raise ConfigurationError(f"Unknown rank test method: {self.config['method']}")
        if float(self.config["pseudocount"]) < 0:
            raise ConfigurationError("rank_test.pseudocount must be >= 0")

        self.design = design
        self.matrix = matrix.align(design.sample_ids)
        self.paired = bool(self.config["paired"])
        self.blocks = None if blocks is None else np.asarray([str(b) for b in blocks])

        if self.paired:
            if self.blocks is None or self.blocks.shape[0] != design.n_samples:
                raise ConfigurationError("Paired rank test requires one block identifier per sample.")

        labels = design.group_labels
        self.idx_a = np.where(labels == design.reference)[0]
        self.idx_b = np.where(labels == design.comparison)[0]
        self.pairs = self._pairs() if self.paired else None
        self.small_sample = False

    def _pairs(self) -> List[Tuple[int, int]]:
        by_block: Dict[str, Dict[str, int]] = {}
        labels = self.design.group_labels
        for i, (g, b) in enumerate(zip(labels, self.blocks)):
            seen = by_block.setdefault(b, {})
            if g in seen:
                raise ConfigurationError(
                    f"Block '{b}' holds more than one '{g}' sample "
                    f"({self.matrix.sample_ids[seen[g]]}, {self.matrix.sample_ids[i]}); "
                    "the paired rank test needs exactly one sample per condition and block."
                )
            seen[g] = i
        pairs = [
            (m[self.design.reference], m[self.design.comparison])
            for m in by_block.values()
            if self.design.reference in m and self.design.comparison in m
        ]
        if not pairs:
            raise DegenerateInputError("No block holds both a reference and a comparison sample.")
        return pairs

    def _check_groups(self):
        for level, idx in ((self.design.reference, self.idx_a), (self.design.comparison, self.idx_b)):
            if idx.size == 0:
                raise DegenerateInputError(f"Group '{level}' has no samples.")

        min_n = int(self.config["min_samples_warning"])
        n_a, n_b = (len(self.pairs),) * 2 if self.paired else (self.idx_a.size, self.idx_b.size)
        if min(n_a, n_b) < min_n:
            self.small_sample = True
            log_warning(
                f"Rank test with {n_a} vs {n_b} samples (< {min_n}); "
                "the smallest attainable p-value may not reach significance."
            )

    def _fold_change(self, a: np.ndarray, b: np.ndarray, feature: str) -> Dict[str, float]:
        pc = float(self.config["pseudocount"])
        mean_a = float(np.mean(a)) + pc
        mean_b = float(np.mean(b)) + pc
        if mean_a <= 0 or mean_b <= 0:
            raise DegenerateInputError(
                f"Group mean is not positive (reference {mean_a:g}, comparison {mean_b:g}); "
                "fold change undefined. Set rank_test.pseudocount to test this feature.",
                feature=feature,
            )
        out = {k: float(v) for k, v in fold_change_columns(mean_b / mean_a).items()}
        out[COL_MEAN_REFERENCE] = mean_a - pc
        out[COL_MEAN_COMPARISON] = mean_b - pc
        return out

    def _test_unpaired(self, y: np.ndarray, feature: str) -> Dict[str, float]:
        a = y[self.idx_a]
        b = y[self.idx_b]
        a = a[~np.isnan(a)]
        b = b[~np.isnan(b)]
        if a.size < 1 or b.size < 1:
            raise InsufficientDataError(
                f"Needs >= 1 valid value per group (reference {a.size}, comparison {b.size})",
                feature=feature,
            )
        if np.all(np.concatenate([a, b]) == a[0]):
            raise DegenerateInputError("Constant across all samples", feature=feature)

        row = self._fold_change(a, b, feature)
        res = self._rank_sum(a, b)
        row.update({
            COL_STATISTIC: float(res.statistic),
            COL_P_VALUE: float(res.pvalue),
            "n_reference": int(a.size),
            "n_comparison": int(b.size),
        })
        return row

    def _rank_sum(self, a: np.ndarray, b: np.ndarray):
        method = self.config["method"]
        tied = np.unique(np.concatenate([a, b])).size < a.size + b.size
        if method != "asymptotic" and tied and max(a.size, b.size) <= EXACT_MAX_GROUP:
            # exact null over every split of the pooled values, ties kept as midranks
            return permutation_test(
                (b, a),
                _u_statistic,
                permutation_type="independent",
                vectorized=True,
                n_resamples=np.inf,
                alternative="two-sided",
            )
        return mannwhitneyu(b, a, alternative="two-sided", method=method)

    def _test_paired(self, y: np.ndarray, feature: str) -> Dict[str, float]:
        ia = np.array([p[0] for p in self.pairs])
        ib = np.array([p[1] for p in self.pairs])
        a, b = y[ia], y[ib]
        ok = ~(np.isnan(a) | np.isnan(b))
        a, b = a[ok], b[ok]
        if a.size < 1:
            raise InsufficientDataError("No complete pair", feature=feature)
        diff = b - a
        if np.all(diff == 0):
            raise DegenerateInputError("All paired differences are zero", feature=feature)

        row = self._fold_change(a, b, feature)
        method = "approx" if self.config["method"] == "asymptotic" else self.config["method"]
        res = wilcoxon(b, a, alternative="two-sided", method=method)
        if not np.isfinite(res.pvalue):
            raise DegenerateInputError("Signed-rank test undefined", feature=feature)
        row.update({
            COL_STATISTIC: float(res.statistic),
            COL_P_VALUE: float(res.pvalue),
            "n_reference": int(a.size),
            "n_comparison": int(b.size),
        })
        return row

    @log_time("Rank test")
    def run(self) -> EngineResult:
        self._check_groups()
        test = self._test_paired if self.paired else self._test_unpaired

        rows: Dict[str, Dict[str, float]] = {}
        failures: List[FeatureFailure] = []
        values = self.matrix.values
        for j, feature in enumerate(self.matrix.feature_names):
            try:
                rows[feature] = test(values[:, j], feature)
            except FEATURE_SCOPED_ERRORS as e:
                log_debug(str(e))
                failures.append(FeatureFailure.from_error(feature, e))

        result = build_engine_result(
            ENGINE_RANK_TEST,
            self.matrix.feature_names,
            rows,
            failures,
            RESULT_COLUMNS,
            pvalue_adjust=self.config["pvalue_adjust"],
            params={
                "test": "wilcoxon_signed_rank" if self.paired else "mann_whitney_u",
                "method": self.config["method"],
                "pseudocount": float(self.config["pseudocount"]),
                "reference": self.design.reference,
                "comparison": self.design.comparison,
                "n_pairs": len(self.pairs) if self.paired else None,
                "small_sample_warning": self.small_sample,
                "pvalue_adjust": self.config["pvalue_adjust"],
            },
        )
        log_info(result.report().summary())
        return result
