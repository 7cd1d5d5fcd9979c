"""Export differential abundance / state results to Excel/CSV and write .h5ad.

One sheet per engine (features in input order, failures excluded), an
"Excluded" sheet listing per-feature failures and configured exclusions, and a
README sheet describing the run.
"""
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Dict, Optional

import numpy as np
import pandas as pd

from cytoflux.analysis.adata_schema import UNS_CYTOFLUX, UNS_DESIGN
from cytoflux.dataset.testresults import EngineResult
from cytoflux.utils.semantics import (
    COL_P_ADJ,
    ENGINE_COUNT_MODEL,
    ENGINE_LINEAR_MODEL,
    ENGINE_RANK_TEST,
)
from cytoflux.utils.utils import log_info, log_time

SHEET_NAMES = {
    ENGINE_RANK_TEST: "Rank test",
    ENGINE_COUNT_MODEL: "Count model",
    ENGINE_LINEAR_MODEL: "Linear model",
}


class DEExporter:
    def __init__(
        self,
        adata,
        results: Dict[str, EngineResult],
        output_path,
        use_xlsx=True,
        sig_threshold=0.05,
        exclusions: Optional[pd.DataFrame] = None,
    ):
        """Excel/CSV and .h5ad exporter for one analysis (abundance or state)."""
        self.adata = adata
        self.results = results
        self.output_path = Path(output_path)
        self.use_xlsx = use_xlsx
        self.sig_threshold = sig_threshold
        self.exclusions = exclusions

    def _engine_table(self, result: EngineResult) -> pd.DataFrame:
        df = result.to_dataframe(include_failures=False).drop(columns=["error"])
        df["significant"] = df[COL_P_ADJ] < self.sig_threshold
        return df

    def _excluded_table(self) -> pd.DataFrame:
        """Per-feature failures of every engine, then configured exclusions."""
        rows = []
        for engine, result in self.results.items():
            for f in result.failures:
                rows.append({"source": engine, "identifier": f.feature,
                             "kind": f.error_kind, "reason": f.message})
        if self.exclusions is not None:
            for _, r in self.exclusions.iterrows():
                rows.append({"source": "configuration", "identifier": r["identifier"],
                             "kind": r["kind"], "reason": r["reason"]})
        return pd.DataFrame(rows, columns=["source", "identifier", "kind", "reason"])

    def _readme(self) -> str:
        design = self.adata.uns.get(UNS_DESIGN, {})
        lines = [
            "cytoflux Differential Analysis Export",
            "",
            f"Design: {design.get('formula', '')} ({design.get('mode', '')})",
            f"Comparison: {design.get('comparison', '')} vs reference {design.get('reference', '')}",
            f"Contrast: {design.get('contrast_description', '')}",
            f"Significance threshold (adjusted p-value): {self.sig_threshold}",
            "",
            "Fold change is signed: ratios below 1 are reported as -1/ratio.",
            "",
            "Sheet Descriptions:",
        ]
        for engine, result in self.results.items():
            lines.append(f"- {SHEET_NAMES[engine]}: {result.report().summary()}")
        lines.append("- Excluded: features excluded per engine (error kind) and by configuration.")
        return "\n".join(lines)

    def _export_excel(self, tables: Dict[str, Optional[pd.DataFrame]], readme: str) -> Path:
        """Write selected tables to a single XLSX with a README sheet."""
        out_file = self.output_path.with_suffix(".xlsx")
        with pd.ExcelWriter(out_file, engine="xlsxwriter") as writer:
            # README: one line per row
            pd.DataFrame({"README": readme.split("\n")}).to_excel(
                writer, index=False, sheet_name="README"
            )

            header_fmt = writer.book.add_format({"bold": False, "align": "left", "border": 0})

            for name, df in tables.items():
                if df is None:
                    continue

                ws = writer.book.add_worksheet(name)
                df_out = df.reset_index() if name != "Excluded" else df
                columns = list(df_out.columns)
                ws.write_row(0, 0, columns, header_fmt)
                df_out.to_excel(writer, sheet_name=name, startrow=1, index=False, header=False)

                ws.set_column(0, len(columns) - 1, 14)
        return out_file

    def _export_csvs(self, tables: Dict[str, Optional[pd.DataFrame]]) -> Path:
        """Write each table to a separate CSV with a shared filename prefix."""
        prefix = self.output_path.with_suffix("")
        for name, df in tables.items():
            if df is not None:
                slug = name.lower().replace(" ", "_")
                df.to_csv(f"{prefix}_{slug}.csv", index=(name != "Excluded"))
        return prefix

    @log_time("Exporting tables")
    def export(self) -> Path:
        """Export engine sheets + Excluded + README as xlsx (or csv)."""
        self.output_path.parent.mkdir(parents=True, exist_ok=True)

        tables = {SHEET_NAMES[e]: self._engine_table(r) for e, r in self.results.items()}
        tables["Excluded"] = self._excluded_table()

        if self.use_xlsx:
            out = self._export_excel(tables, self._readme())
        else:
            out = self._export_csvs(tables)
        log_info(f"Tables written to {out}")
        return out

    @log_time("Exporting .h5ad")
    def export_adata(self, h5ad_path) -> Path:
        """Write a compressed .h5ad with categorical metadata and version/creation metadata."""
        adata = self.adata.copy()
        for col in adata.obs.columns:
            if pd.api.types.is_object_dtype(adata.obs[col]) or pd.api.types.is_string_dtype(adata.obs[col]):
                adata.obs[col] = adata.obs[col].astype("category")

        meta = dict(adata.uns.get(UNS_CYTOFLUX, {}) or {})
        try:
            cf_version = _pkg_version("cytoflux")
        except PackageNotFoundError:
            cf_version = "0+unknown"
        meta.setdefault("version", cf_version)
        meta.setdefault("created_at", datetime.now(timezone.utc).isoformat(timespec="seconds"))
        meta.setdefault("sig_threshold", float(self.sig_threshold))
        meta.setdefault("engines", np.asarray(list(self.results)))
        adata.uns[UNS_CYTOFLUX] = meta

        h5ad_path = Path(h5ad_path)
        h5ad_path.parent.mkdir(parents=True, exist_ok=True)
        adata.write_h5ad(h5ad_path, compression="gzip")
        log_info(f"AnnData written to {h5ad_path}")
        return h5ad_path
