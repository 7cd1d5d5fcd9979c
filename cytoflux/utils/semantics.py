"""
Canonical semantics for cytoflux.

This module is intentionally small and declarative:
  - Canonical feature-matrix kinds
  - Canonical engine names (and their accepted aliases)
  - Canonical result-table columns

Implementation details live elsewhere (engines, pipelines).
"""

FEATURE_KINDS = ("proportions", "counts", "continuous")

ENGINE_RANK_TEST = "rank_test"
ENGINE_COUNT_MODEL = "count_model"
ENGINE_LINEAR_MODEL = "linear_model"
ENGINES_CANONICAL = (ENGINE_RANK_TEST, ENGINE_COUNT_MODEL, ENGINE_LINEAR_MODEL)

ENGINE_ALIASES = {
    "rank_test": ENGINE_RANK_TEST,
    "wilcoxon": ENGINE_RANK_TEST,
    "mannwhitney": ENGINE_RANK_TEST,
    "count_model": ENGINE_COUNT_MODEL,
    "edger": ENGINE_COUNT_MODEL,
    "glm": ENGINE_COUNT_MODEL,
    "linear_model": ENGINE_LINEAR_MODEL,
    "limma": ENGINE_LINEAR_MODEL,
}

# Result table columns shared by every engine
COL_COEFFICIENT = "coefficient"
COL_FOLD_CHANGE = "fold_change"
COL_LOG2_FC = "log2_fold_change"
COL_LOG10_FC = "log10_fold_change"
COL_STATISTIC = "statistic"
COL_P_VALUE = "p_value"
COL_P_ADJ = "p_value_adj"

# Engine-specific
COL_DISPERSION = "dispersion"
COL_AVE_LOG_CPM = "ave_log_cpm"
COL_MODERATED_VARIANCE = "moderated_variance"
COL_RESIDUAL_VARIANCE = "residual_variance"
COL_DF_TOTAL = "df_total"
COL_MEAN_REFERENCE = "mean_reference"
COL_MEAN_COMPARISON = "mean_comparison"
