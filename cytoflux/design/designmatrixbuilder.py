from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Tuple

import numpy as np
import pandas as pd
import patsy

from cytoflux.dataset.samplemetadata import SampleMetadata
from cytoflux.utils.exceptions import ConfigurationError
from cytoflux.utils.utils import log_info


@dataclass(frozen=True)
class DesignMatrix:
    """Numeric design (samples × terms) with reference-level coding of the response."""
    matrix: np.ndarray
    column_names: Tuple[str, ...]
    sample_ids: Tuple[str, ...]
    response: str
    levels: Tuple[str, str]        # (reference, comparison)
    response_column: int          # index of the comparison-level indicator
    formula: str
    mode: str = "default"

    @property
    def n_samples(self) -> int:
        return self.matrix.shape[0]

    @property
    def n_coefficients(self) -> int:
        return self.matrix.shape[1]

    @property
    def reference(self) -> str:
        return self.levels[0]

    @property
    def comparison(self) -> str:
        return self.levels[1]

    @property
    def group_labels(self) -> np.ndarray:
        """Response level of each sample, recovered from the indicator column."""
        ind = self.matrix[:, self.response_column] == 1
        return np.where(ind, self.comparison, self.reference)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.matrix, index=list(self.sample_ids), columns=list(self.column_names))


class DesignMatrixBuilder:
    def __init__(
        self,
        sample_metadata: SampleMetadata,
        config: Optional[Dict[str, Any]] = None,
    ):
        self.meta = sample_metadata
        self.config = config or {}
        self.formula: Optional[str] = None
        self.design: Optional[DesignMatrix] = None

    def build(self) -> DesignMatrix:
        mode = self.config.get("mode", "default")
        if mode == "default":
            self._build_default_design()
        elif mode == "paired":
            self._build_paired_design()
        else:
            raise ConfigurationError(f"Unknown design mode: {mode}")

        return self.design

    def _response_term(self, levels: List[str]) -> str:
        group_col = self.meta.group_column
        return f"C(Q({group_col!r}), Treatment(reference={levels[0]!r}))"

    def _covariate_terms(self) -> List[Tuple[str, str]]:
        terms = []
        for cov in self.meta.covariates:
            if pd.api.types.is_numeric_dtype(self.meta.table[cov]):
                terms.append((f"Q({cov!r})", cov))
            else:
                terms.append((f"C(Q({cov!r}))", cov))
        return terms

    def _build_default_design(self):
        levels = self.meta.levels(self.config.get("reference"))
        terms = [(self._response_term(levels), self.meta.group_column)]
        terms += self._covariate_terms()
        self._assemble(terms, levels, mode="default")

    def _build_paired_design(self):
        if not self.meta.is_paired:
            raise ConfigurationError(
                f"Paired design requires at least 2 blocks in '{self.meta.block_column}'."
            )
        levels = self.meta.levels(self.config.get("reference"))
        block_col = self.meta.block_column
        terms = [(self._response_term(levels), self.meta.group_column)]
        terms.append((f"C(Q({block_col!r}))", block_col))
        terms += self._covariate_terms()
        self._assemble(terms, levels, mode="paired")

    def _assemble(self, terms: List[Tuple[str, str]], levels: List[str], mode: str):
        self.formula = "1 + " + " + ".join(t for t, _ in terms)
        data = self.meta.table.reset_index()
        design_df = patsy.dmatrix(self.formula, data, return_type="dataframe")

        # Readable column names: "condition[T.KO]" instead of patsy's term code
        labels = {code: label for code, label in terms}
        renamed = []
        for col in design_df.columns:
            for code, label in labels.items():
                if col.startswith(code):
                    col = label + col[len(code):]
                    break
            renamed.append(col)

        matrix = design_df.to_numpy(dtype=np.float64)
        if np.linalg.matrix_rank(matrix) < matrix.shape[1]:
            raise ConfigurationError(
                f"Design matrix '{self.formula}' is not of full column rank "
                f"({matrix.shape[1]} columns, rank {np.linalg.matrix_rank(matrix)})."
            )
        if matrix.shape[0] <= matrix.shape[1]:
            raise ConfigurationError(
                f"Design has {matrix.shape[1]} coefficients for only {matrix.shape[0]} samples; "
                "no residual degrees of freedom."
            )
        matrix.setflags(write=False)

        response_name = f"{self.meta.group_column}[T.{levels[1]}]"
        self.design = DesignMatrix(
            matrix=matrix,
            column_names=tuple(renamed),
            sample_ids=tuple(self.meta.sample_ids),
            response=self.meta.group_column,
            levels=(levels[0], levels[1]),
            response_column=renamed.index(response_name),
            formula=self.formula,
            mode=mode,
        )
        log_info(f"Design ({mode}): {len(renamed)} terms {list(renamed)}, reference '{levels[0]}'")
