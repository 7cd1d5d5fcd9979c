"""
Centralized AnnData key schema for cytoflux.

This module is intentionally small and declarative: it defines the canonical
keys used in .uns / .var / .layers written by the analysis pipelines.
"""

# -----------------------
# .layers
# -----------------------
LAYER_COUNTS = "counts"

# -----------------------
# .uns (analysis metadata)
# -----------------------
UNS_CYTOFLUX = "cytoflux"          # version / creation metadata (export)
UNS_DESIGN = "design"              # formula, columns, levels, contrast
UNS_DE_RESULTS = "de_results"      # per engine: params, failures, report
UNS_EXCLUSIONS = "exclusions"      # exclusion audit table
UNS_ANALYSIS_KIND = "analysis_kind"  # "abundance" or "state"

# per-engine sub-keys of .uns["de_results"][engine]
RES_PARAMS = "params"
RES_FAILURES = "failures"
RES_REPORT = "report"

# -----------------------
# .var (analysis outputs)
# -----------------------
def var_key(engine: str, column: str) -> str:
    """Result column of one engine in .var, e.g. 'rank_test_p_value'."""
    return f"{engine}_{column}"
