from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from cytoflux.dataset.featurematrix import FeatureMatrix
from cytoflux.dataset.samplemetadata import SampleMetadata
from cytoflux.utils.utils import log_info

DEFAULT_REASON = "excluded by configuration"


def _to_reason_map(x: Any) -> Dict[str, str]:
    """Accept a string, a list of ids or a mapping id -> reason."""
    if x is None:
        return {}
    if isinstance(x, str):
        s = x.strip()
        return {s: DEFAULT_REASON} if s else {}
    if isinstance(x, dict):
        return {str(k).strip(): str(v or DEFAULT_REASON) for k, v in x.items() if str(k).strip()}
    try:
        return {str(v).strip(): DEFAULT_REASON for v in x if str(v).strip()}
    except TypeError:
        # not iterable (e.g. int); single item
        s = str(x).strip()
        return {s: DEFAULT_REASON} if s else {}


@dataclass(frozen=True)
class Exclusions:
    """Explicit, auditable sample and feature exclusions (id -> reason)."""

    samples: Dict[str, str] = field(default_factory=dict)
    features: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_config(cls, dataset_cfg: Optional[dict]) -> "Exclusions":
        cfg = dataset_cfg or {}
        return cls(
            samples=_to_reason_map(cfg.get("exclude_samples")),
            features=_to_reason_map(cfg.get("exclude_features")),
        )

    def is_empty(self) -> bool:
        return not self.samples and not self.features

    def apply(
        self,
        metadata: SampleMetadata,
        matrices: Dict[str, FeatureMatrix],
    ) -> Tuple[SampleMetadata, Dict[str, FeatureMatrix], pd.DataFrame]:
        """
        Drop the listed samples and features.

        Returns new metadata, new matrices and the audit table of what was
        actually removed. Identifiers not present in the data are logged and
        ignored.
        """
        audit: List[dict] = []

        present = set(metadata.sample_ids)
        to_drop = [s for s in self.samples if s in present]
        unknown = [s for s in self.samples if s not in present]
        if unknown:
            log_info(f"Exclude samples: {len(unknown)} not found in metadata → ignored: {unknown[:5]}")
        for s in to_drop:
            audit.append({"kind": "sample", "identifier": s, "reason": self.samples[s]})

        new_meta = metadata.drop_samples(to_drop) if to_drop else metadata
        new_matrices = {}
        for name, mat in matrices.items():
            mat = mat.drop_samples(to_drop)
            feats = [f for f in self.features if f in mat.feature_names]
            for f in feats:
                audit.append({"kind": f"feature ({name})", "identifier": f, "reason": self.features[f]})
            new_matrices[name] = mat.drop_features(feats)

        all_features = {f for m in matrices.values() for f in m.feature_names}
        unknown_f = [f for f in self.features if f not in all_features]
        if unknown_f:
            log_info(f"Exclude features: {len(unknown_f)} not found in data → ignored: {unknown_f[:5]}")

        if audit:
            log_info(f"Exclusions: dropped {len(to_drop)} sample(s), "
                     f"{sum(1 for a in audit if a['kind'] != 'sample')} feature column(s).")
        else:
            log_info("Exclusions: nothing to drop.")

        return new_meta, new_matrices, pd.DataFrame(audit, columns=["kind", "identifier", "reason"])
