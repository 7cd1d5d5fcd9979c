from typing import Any, Mapping, Optional, Sequence, Union

import numpy as np

from cytoflux.design.designmatrixbuilder import DesignMatrix
from cytoflux.utils.exceptions import ConfigurationError, DimensionMismatchError

ContrastSpec = Union[None, Sequence[float], Mapping[str, float]]


class ContrastBuilder:
    def __init__(self, design: DesignMatrix):
        """
        Parameters:
        - design: DesignMatrix from DesignMatrixBuilder.build()
        """
        self.design = design
        self.column_names = list(design.column_names)

    def default_contrast(self) -> np.ndarray:
        """
        Comparison level vs reference: 1 on the response indicator, 0 elsewhere.
        For the plain `1 + group` design this is [0, 1].
        """
        vec = np.zeros(len(self.column_names))
        vec[self.design.response_column] = 1.0
        return vec

    def validate(self, contrast: Any) -> np.ndarray:
        try:
            vec = np.asarray(contrast, dtype=np.float64).ravel()
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Contrast must be numeric: {contrast!r}") from e

        if vec.shape[0] != len(self.column_names):
            raise DimensionMismatchError(
                f"Contrast has length {vec.shape[0]} but the design has "
                f"{len(self.column_names)} columns {self.column_names}"
            )
        if not np.all(np.isfinite(vec)):
            raise ConfigurationError(f"Contrast contains non-finite weights: {vec.tolist()}")
        if not np.any(vec):
            raise ConfigurationError("Contrast is all zeros; it does not test anything.")
        return vec

    def from_config(self, value: ContrastSpec = None) -> np.ndarray:
        """
        Accepts None (default contrast), a list of weights, or a mapping
        {design column name: weight}.
        """
        if value is None:
            return self.default_contrast()

        if isinstance(value, Mapping):
            vec = np.zeros(len(self.column_names))
            unknown = [k for k in value if k not in self.column_names]
            if unknown:
                raise ConfigurationError(
                    f"Contrast refers to unknown design columns {unknown}; available: {self.column_names}"
                )
            for name, weight in value.items():
                vec[self.column_names.index(name)] = float(weight)
            return self.validate(vec)

        if isinstance(value, str):
            raise ConfigurationError(f"Contrast must be a list or a mapping, got string {value!r}")

        return self.validate(value)

    def describe(self, contrast: Optional[np.ndarray] = None) -> str:
        vec = self.default_contrast() if contrast is None else contrast
        terms = [f"{w:+g}*{n}" for w, n in zip(vec, self.column_names) if w != 0]
        return " ".join(terms)
