"""Differential abundance and differential state pipelines.

This module provides:
  - `run_abundance_pipeline`: rank test on proportions, count model on counts
  - `run_state_pipeline`: linear model (and optionally rank test) on per-cluster marker summaries
  - `resolve_engines`: canonical engine names from the `analysis.engines` config

Each pipeline returns a new AnnData carrying the results and the
EngineResult objects themselves; inputs are never modified.
"""

from typing import Any, Dict, List, Tuple

import anndata as ad
import numpy as np

from cytoflux.analysis.adata_schema import (
    RES_FAILURES,
    RES_PARAMS,
    RES_REPORT,
    UNS_ANALYSIS_KIND,
    UNS_DE_RESULTS,
    UNS_DESIGN,
    var_key,
)
from cytoflux.analysis.countmodel.tester import CountModelTester
from cytoflux.analysis.linearmodel import LinearModelTester
from cytoflux.analysis.ranktest import RankTester
from cytoflux.dataset.samplemetadata import SampleMetadata
from cytoflux.dataset.testresults import EngineResult
from cytoflux.design.contrastbuilder import ContrastBuilder
from cytoflux.design.designmatrixbuilder import DesignMatrix, DesignMatrixBuilder
from cytoflux.utils.exceptions import ConfigurationError
from cytoflux.utils.semantics import (
    ENGINE_ALIASES,
    ENGINE_COUNT_MODEL,
    ENGINE_LINEAR_MODEL,
    ENGINE_RANK_TEST,
    ENGINES_CANONICAL,
)
from cytoflux.utils.utils import log_time, log_warning


def resolve_engines(analysis_cfg: dict) -> List[str]:
    raw = analysis_cfg.get("engines") or list(ENGINES_CANONICAL)
    if isinstance(raw, str):
        raw = [raw]
    engines = []
    for name in raw:
        key = str(name).strip().lower()
        if key not in ENGINE_ALIASES:
            raise ConfigurationError(
                f"Unknown engine '{name}'. Use one of {list(ENGINES_CANONICAL)}."
            )
        if ENGINE_ALIASES[key] not in engines:
            engines.append(ENGINE_ALIASES[key])
    return engines


def build_design(metadata: SampleMetadata, config: dict) -> Tuple[DesignMatrix, np.ndarray]:
    design_cfg = (config or {}).get("design", {}) or {}
    design = DesignMatrixBuilder(metadata, design_cfg).build()
    contrast = ContrastBuilder(design).from_config(design_cfg.get("contrast"))
    return design, contrast


def _engine_cfg(config: dict, engine: str) -> Dict[str, Any]:
    analysis_cfg = (config or {}).get("analysis", {}) or {}
    cfg = dict(analysis_cfg.get(engine, {}) or {})
    cfg.setdefault("pvalue_adjust", analysis_cfg.get("pvalue_adjust", "fdr_bh"))
    return cfg


def _uns_safe(obj):
    """h5ad cannot store None; nested dicts and lists are converted recursively."""
    if obj is None:
        return "None"
    if isinstance(obj, dict):
        return {str(k): _uns_safe(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return np.asarray([_uns_safe(v) for v in obj])
    return obj


def _store_results(adata: ad.AnnData, results: Dict[str, EngineResult]) -> ad.AnnData:
    out = adata.copy()
    uns_results = {}
    for engine, result in results.items():
        table = result.table.reindex(out.var_names)
        for col in result.table.columns:
            out.var[var_key(engine, col)] = table[col].to_numpy()
        failed = result.failures_frame()
        out.var[var_key(engine, "error")] = failed["error"].reindex(out.var_names).fillna("").to_numpy()
        report = result.report()
        uns_results[engine] = {
            RES_PARAMS: _uns_safe(result.params),
            RES_FAILURES: failed.reset_index().astype(str),
            RES_REPORT: _uns_safe({
                "n_features": report.n_features,
                "n_tested": report.n_tested,
                "n_excluded": report.n_excluded,
                "excluded_by_kind": report.excluded_by_kind,
            }),
        }
    out.uns[UNS_DE_RESULTS] = uns_results
    return out


def _design_uns(design: DesignMatrix, contrast: np.ndarray) -> dict:
    return {
        "formula": design.formula,
        "mode": design.mode,
        "columns": np.asarray(design.column_names),
        "reference": design.reference,
        "comparison": design.comparison,
        "contrast": np.asarray(contrast),
        "contrast_description": ContrastBuilder(design).describe(contrast),
    }


@log_time("Differential abundance")
def run_abundance_pipeline(dataset, config: dict) -> Tuple[ad.AnnData, Dict[str, EngineResult]]:
    """Rank test on cluster proportions and NB GLM on cluster counts."""
    analysis_cfg = (config or {}).get("analysis", {}) or {}
    engines = [e for e in resolve_engines(analysis_cfg) if e in (ENGINE_RANK_TEST, ENGINE_COUNT_MODEL)]

    design, contrast = build_design(dataset.metadata, config)
    adata = dataset.get_anndata("abundance")

    results: Dict[str, EngineResult] = {}
    if ENGINE_RANK_TEST in engines:
        cfg = _engine_cfg(config, ENGINE_RANK_TEST)
        if cfg.get("paired") is None:
            cfg["paired"] = design.mode == "paired"
        results[ENGINE_RANK_TEST] = RankTester(
            dataset.get_matrix("proportions"),
            design,
            cfg,
            blocks=dataset.metadata.table.loc[list(design.sample_ids), dataset.metadata.block_column],
        ).run()

    if ENGINE_COUNT_MODEL in engines:
        if "counts" in dataset.matrices:
            results[ENGINE_COUNT_MODEL] = CountModelTester(
                dataset.get_matrix("counts"),
                design,
                contrast=contrast,
                config=_engine_cfg(config, ENGINE_COUNT_MODEL),
            ).run()
        else:
            log_warning("Count model requested but no counts_file given; skipped.")

    out = _store_results(adata, results)
    out.uns[UNS_DESIGN] = _design_uns(design, contrast)
    out.uns[UNS_ANALYSIS_KIND] = "abundance"
    return out, results


@log_time("Differential state")
def run_state_pipeline(dataset, config: dict) -> Tuple[ad.AnnData, Dict[str, EngineResult]]:
    """Moderated linear model on per-cluster marker summaries."""
    analysis_cfg = (config or {}).get("analysis", {}) or {}
    engines = resolve_engines(analysis_cfg)

    design, contrast = build_design(dataset.metadata, config)
    state = dataset.get_matrix("continuous")
    adata = dataset.get_anndata("state")

    results: Dict[str, EngineResult] = {}
    if ENGINE_LINEAR_MODEL in engines:
        results[ENGINE_LINEAR_MODEL] = LinearModelTester(
            state,
            design,
            contrast=contrast,
            config=_engine_cfg(config, ENGINE_LINEAR_MODEL),
        ).run()

    rank_cfg = _engine_cfg(config, ENGINE_RANK_TEST)
    if ENGINE_RANK_TEST in engines and rank_cfg.pop("on_state", False):
        if rank_cfg.get("paired") is None:
            rank_cfg["paired"] = design.mode == "paired"
        results[ENGINE_RANK_TEST] = RankTester(
            state,
            design,
            rank_cfg,
            blocks=dataset.metadata.table.loc[list(design.sample_ids), dataset.metadata.block_column],
        ).run()

    out = _store_results(adata, results)
    out.uns[UNS_DESIGN] = _design_uns(design, contrast)
    out.uns[UNS_ANALYSIS_KIND] = "state"
    return out, results
