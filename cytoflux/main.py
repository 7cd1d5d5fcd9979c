from cytoflux.workflow.dataset import Dataset
from cytoflux.analysis.de_pipeline import resolve_engines, run_abundance_pipeline, run_state_pipeline
from cytoflux.export.de_exporter import DEExporter
from cytoflux.utils.semantics import ENGINE_COUNT_MODEL, ENGINE_LINEAR_MODEL, ENGINE_RANK_TEST
from cytoflux.utils.utils import log_info, log_time, log_warning


def _export(adata, results, exclusions, analysis_config: dict, suffix: str) -> None:
    export_config = analysis_config.get("exports", {}) or {}
    base_table = export_config.get("path_table", "results/cytoflux")
    base_h5ad = export_config.get("path_h5ad", "results/cytoflux.h5ad")

    exporter = DEExporter(adata,
                          results,
                          output_path=f"{base_table}_{suffix}",
                          use_xlsx=export_config.get("use_xlsx", True),
                          sig_threshold=analysis_config.get("sign_threshold", 0.05),
                          exclusions=exclusions,
                          )
    if analysis_config.get("export_table", True):
        exporter.export()
    if analysis_config.get("export_h5ad", True):
        stem = base_h5ad[:-5] if base_h5ad.endswith(".h5ad") else base_h5ad
        exporter.export_adata(f"{stem}_{suffix}.h5ad")


@log_time("cytoflux Pipeline")
def run_pipeline(config: dict) -> dict:
    """
    Load the dataset, run the configured engines and export their results.

    Returns {"abundance": (adata, results), "state": (adata, results)} for the
    analyses that ran.
    """
    dataset = Dataset(**config)
    analysis_config = config.get("analysis", {}) or {}
    engines = resolve_engines(analysis_config)
    log_info(f"Engines: {engines}")

    outputs = {}
    if {ENGINE_RANK_TEST, ENGINE_COUNT_MODEL} & set(engines) and "proportions" in dataset.matrices:
        outputs["abundance"] = run_abundance_pipeline(dataset, config)

    if ENGINE_LINEAR_MODEL in engines:
        if "continuous" in dataset.matrices:
            outputs["state"] = run_state_pipeline(dataset, config)
        else:
            log_warning("Linear model requested but no state_file given; skipped.")

    if not outputs:
        log_warning("Nothing to analyse: no engine matches the loaded matrices.")

    for suffix, (adata, results) in outputs.items():
        for result in results.values():
            log_info(f"[{suffix}] {result.report().summary()}")
        _export(adata, results, dataset.exclusion_audit, analysis_config, suffix)

    return outputs
