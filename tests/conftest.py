"""Shared pytest fixtures for cytoflux tests.

Fixtures describe a small two-group experiment: 4 WT and 4 KO samples, one
sample of each condition per patient (p1..p4), with WT as the reference.
"""

import numpy as np
import pandas as pd
import pytest

from cytoflux.dataset.featurematrix import FeatureMatrix
from cytoflux.dataset.samplemetadata import SampleMetadata
from cytoflux.design.designmatrixbuilder import DesignMatrixBuilder

SAMPLES = [f"S{i}" for i in range(1, 9)]


@pytest.fixture
def metadata_df() -> pd.DataFrame:
    return pd.DataFrame({
        "sample_id": SAMPLES,
        "condition": ["WT"] * 4 + ["KO"] * 4,
        "patient_id": ["p1", "p2", "p3", "p4"] * 2,
    })


@pytest.fixture
def metadata(metadata_df) -> SampleMetadata:
    return SampleMetadata(metadata_df, block_column="patient_id")


@pytest.fixture
def design(metadata):
    """`1 + condition`, reference WT: columns [Intercept, condition[T.KO]]."""
    return DesignMatrixBuilder(metadata, {"reference": "WT"}).build()


@pytest.fixture
def paired_design(metadata):
    return DesignMatrixBuilder(metadata, {"mode": "paired", "reference": "WT"}).build()


@pytest.fixture
def proportions() -> FeatureMatrix:
    """Two clusters; cluster 1 drops from ~0.63 (WT) to ~0.33 (KO), no ties."""
    c1 = np.array([0.60, 0.62, 0.64, 0.66, 0.30, 0.32, 0.34, 0.36])
    return FeatureMatrix(np.column_stack([c1, 1 - c1]), SAMPLES, ["cluster1", "cluster2"], "proportions")


@pytest.fixture
def counts() -> FeatureMatrix:
    """Equal library sizes (400); cluster1 doubles in KO, cluster2 drops by a third."""
    c1 = np.array([100] * 4 + [200] * 4)
    c2 = np.array([300] * 4 + [200] * 4)
    return FeatureMatrix(np.column_stack([c1, c2]), SAMPLES, ["cluster1", "cluster2"], "counts")


def write_csv(path, df: pd.DataFrame) -> str:
    df.to_csv(path, index=False)
    return str(path)


@pytest.fixture
def dataset_files(tmp_path, metadata_df):
    """Metadata, counts (samples x clusters) and state (samples x cluster|marker) CSVs."""
    rng = np.random.default_rng(7)
    lib = rng.integers(4000, 6000, size=8)
    p = np.array([[0.5, 0.3, 0.2]] * 4 + [[0.3, 0.5, 0.2]] * 4)
    counts = np.array([rng.multinomial(n, pv) for n, pv in zip(lib, p)])
    counts_df = pd.DataFrame(counts, columns=["c1", "c2", "c3"])
    counts_df.insert(0, "sample_id", SAMPLES)

    base = rng.normal(100, 5, size=(8, 4))
    base[4:, 0] += 60  # c1|CD4 up in KO
    state_df = pd.DataFrame(base, columns=["c1|CD4", "c1|CD8", "c2|CD4", "c2|CD8"])
    state_df.insert(0, "sample_id", SAMPLES)

    return {
        "metadata_file": write_csv(tmp_path / "metadata.csv", metadata_df),
        "counts_file": write_csv(tmp_path / "counts.csv", counts_df),
        "state_file": write_csv(tmp_path / "state.csv", state_df),
    }
