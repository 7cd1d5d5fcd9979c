import warnings
from typing import Dict, Optional

import anndata as ad
import numpy as np
import pandas as pd
import polars as pl

from cytoflux.analysis.adata_schema import LAYER_COUNTS, UNS_EXCLUSIONS
from cytoflux.dataset.exclusions import Exclusions
from cytoflux.dataset.featurematrix import FeatureMatrix
from cytoflux.dataset.samplemetadata import SampleMetadata
from cytoflux.utils.exceptions import ConfigurationError
from cytoflux.utils.utils import log_info, log_time, polars_matrix_to_numpy

# Suppress the ImplicitModificationWarning from AnnData
warnings.filterwarnings("ignore", category=UserWarning, message=".*Transforming to str index.*")

MATRIX_FILES = {
    "counts": "counts_file",
    "proportions": "proportions_file",
    "continuous": "state_file",
}


class Dataset:
    """Loads sample metadata and per-sample cluster summaries, validated and aligned."""
    def __init__(self, **kwargs):
        """
        Initialize the dataset object.

        Args:
            kwargs: dict with all the config elements
        """
        dataset_cfg = kwargs.get("dataset", {}) or {}
        design_cfg = kwargs.get("design", {}) or {}

        self.metadata_file = dataset_cfg.get("metadata_file")
        if not self.metadata_file:
            raise ConfigurationError("dataset.metadata_file is required.")
        self.load_method = dataset_cfg.get("load_method", "polars")
        self.sample_column = dataset_cfg.get("sample_column", "sample_id")
        self.group_column = design_cfg.get("group_column", dataset_cfg.get("group_column", "condition"))
        self.block_column = design_cfg.get("block_column", dataset_cfg.get("block_column", "patient_id"))
        self.covariates = design_cfg.get("covariates") or []
        self.files = {kind: dataset_cfg.get(key) for kind, key in MATRIX_FILES.items()}
        if not any(self.files.values()):
            raise ConfigurationError(
                f"dataset needs at least one of {sorted(MATRIX_FILES.values())}."
            )

        self.exclusions = Exclusions.from_config(dataset_cfg)

        self.metadata: Optional[SampleMetadata] = None
        self.matrices: Dict[str, FeatureMatrix] = {}
        self.exclusion_audit = pd.DataFrame(columns=["kind", "identifier", "reason"])

        self._load_and_process()

    @log_time("Data Loading")
    def _load_and_process(self):
        meta_df = self._load_rawdata(self.metadata_file)
        meta_pd = pd.DataFrame({c: meta_df.get_column(c).to_list() for c in meta_df.columns})

        block = self.block_column
        if block is not None and block not in meta_pd.columns:
            log_info(f"No '{block}' column in metadata: unpaired design (single block).")
            block = None
        self.block_column = block

        self.metadata = SampleMetadata(
            meta_pd,
            sample_column=self.sample_column,
            group_column=self.group_column,
            block_column=block,
            covariates=self.covariates,
        )
        log_info(f"Metadata: {self.metadata}")

        for kind, path in self.files.items():
            if path:
                self.matrices[kind] = self._load_matrix(path, kind)

        if "counts" in self.matrices and "proportions" not in self.matrices:
            self.matrices["proportions"] = FeatureMatrix.proportions_from_counts(self.matrices["counts"])
            log_info("Proportions derived from counts.")
        if "counts" in self.matrices and "proportions" in self.matrices:
            self.matrices["counts"].check_paired_with(self.matrices["proportions"])

        if not self.exclusions.is_empty():
            self.metadata, self.matrices, self.exclusion_audit = self.exclusions.apply(
                self.metadata, self.matrices
            )

    def _load_matrix(self, path: str, kind: str) -> FeatureMatrix:
        df = self._load_rawdata(path)
        index_col = df.columns[0]
        values, sample_ids = polars_matrix_to_numpy(df, index_col=index_col)
        matrix = FeatureMatrix(values, sample_ids, df.columns[1:], kind)
        # fail fast on any sample missing from either side
        matrix = matrix.align(self.metadata.sample_ids)
        log_info(f"Loaded {kind}: {matrix.n_samples} samples × {matrix.n_features} features from {path}")
        return matrix

    def _load_rawdata(self, file_path: str) -> pl.DataFrame:
        """Load a CSV or TSV file."""
        if not str(file_path).endswith((".csv", ".tsv")):
            raise ConfigurationError("Only CSV or TSV files are supported.")

        delimiter = "\t" if str(file_path).endswith(".tsv") else ","

        if self.load_method == "polars":
            return pl.read_csv(file_path,
                               separator=delimiter,
                               infer_schema_length=10000,
                               null_values=["NA", "NaN", "N/A", ""])
        elif self.load_method == "pandas":
            df = pd.read_csv(file_path, delimiter=delimiter)
            return pl.DataFrame({c: df[c].to_numpy() for c in df.columns})
        else:
            raise ConfigurationError(f"Unknown load method: {self.load_method}")

    def get_matrix(self, kind: str) -> FeatureMatrix:
        if kind not in self.matrices:
            raise ConfigurationError(f"No {kind} matrix loaded; set dataset.{MATRIX_FILES[kind]}.")
        return self.matrices[kind]

    def get_anndata(self, kind: str = "abundance") -> ad.AnnData:
        """
        AnnData view of the dataset.

        kind="abundance": X = proportions, layers["counts"] when counts were given.
        kind="state": X = continuous per-cluster marker summaries.
        """
        obs = self.metadata.table.copy()
        if kind == "abundance":
            props = self.get_matrix("proportions")
            adata = ad.AnnData(
                X=np.array(props.values),
                obs=obs.loc[list(props.sample_ids)],
                var=pd.DataFrame(index=pd.Index(props.feature_names, name="feature")),
            )
            if "counts" in self.matrices:
                adata.layers[LAYER_COUNTS] = np.array(self.matrices["counts"].values)
        elif kind == "state":
            state = self.get_matrix("continuous")
            adata = ad.AnnData(
                X=np.array(state.values),
                obs=obs.loc[list(state.sample_ids)],
                var=pd.DataFrame(index=pd.Index(state.feature_names, name="feature")),
            )
        else:
            raise ConfigurationError(f"Unknown AnnData kind '{kind}'. Use 'abundance' or 'state'.")

        adata.uns[UNS_EXCLUSIONS] = self.exclusion_audit.astype(str)
        return adata
