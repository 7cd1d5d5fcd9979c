"""
Tests for the two-group rank test engine.

Covers:
- Mann-Whitney U on complete separation (exact p = 2/70 for 4 vs 4)
- signed fold change and group means
- per-feature exclusions (constant feature, non-positive mean, missing group)
- exact p-values for small tied groups
- paired (signed-rank) mode, one sample per condition and block
- run report bookkeeping
"""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from conftest import SAMPLES
from cytoflux.analysis.ranktest import RankTester
from cytoflux.dataset.featurematrix import FeatureMatrix
from cytoflux.dataset.samplemetadata import SampleMetadata
from cytoflux.design.designmatrixbuilder import DesignMatrixBuilder
from cytoflux.utils.exceptions import ConfigurationError


# =============================================================================
# Helper Functions
# =============================================================================


def continuous(columns: dict) -> FeatureMatrix:
    names = list(columns)
    values = np.column_stack([np.asarray(columns[n], dtype=float) for n in names])
    return FeatureMatrix(values, SAMPLES, names, "continuous")


def blocks_of(metadata, design):
    return metadata.table.loc[list(design.sample_ids), metadata.block_column]


# =============================================================================
# Unpaired
# =============================================================================


class TestUnpaired:
    def test_complete_separation(self, proportions, design):
        res = RankTester(proportions, design).run()
        table = res.table

        assert list(table.index) == ["cluster1", "cluster2"]
        np.testing.assert_allclose(table["p_value"], [2 / 70, 2 / 70])
        # both features tie at the same p, BH leaves them unchanged
        np.testing.assert_allclose(table["p_value_adj"], [2 / 70, 2 / 70])

        c1 = table.loc["cluster1"]
        assert c1["statistic"] == 0.0
        assert c1["mean_reference"] == pytest.approx(0.63)
        assert c1["mean_comparison"] == pytest.approx(0.33)
        assert c1["fold_change"] == pytest.approx(-0.63 / 0.33)
        assert c1["log2_fold_change"] == pytest.approx(np.log2(0.33 / 0.63))

        c2 = table.loc["cluster2"]
        assert c2["statistic"] == 16.0
        assert c2["fold_change"] == pytest.approx(0.67 / 0.37)
        assert c2["log2_fold_change"] > 0

    def test_tied_groups_use_exact_null(self, design):
        c1 = np.array([0.5] * 4 + [0.3] * 4)
        m = FeatureMatrix(np.column_stack([c1, 1 - c1]), SAMPLES, ["cluster1", "cluster2"], "proportions")
        table = RankTester(m, design).run().table

        # smallest two-sided p for 4 vs 4 is 2 / C(8, 4)
        np.testing.assert_allclose(table["p_value"], [2 / 70, 2 / 70])
        assert np.all(table["p_value_adj"] <= np.minimum(2 * table["p_value"], 1))
        assert table.loc["cluster1", "statistic"] == 0.0
        assert table.loc["cluster1", "fold_change"] == pytest.approx(-0.5 / 0.3)
        assert table.loc["cluster2", "fold_change"] == pytest.approx(0.7 / 0.5)

    def test_tied_groups_asymptotic_on_request(self, design):
        c1 = np.array([0.5] * 4 + [0.3] * 4)
        m = FeatureMatrix(np.column_stack([c1, 1 - c1]), SAMPLES, ["cluster1", "cluster2"], "proportions")
        table = RankTester(m, design, {"method": "asymptotic"}).run().table
        assert np.all(table["p_value"] < 2 / 70)

    def test_adjusted_bounded_by_raw(self, proportions, design):
        table = RankTester(proportions, design).run().table
        assert np.all(table["p_value_adj"] >= table["p_value"])
        assert np.all(table["p_value_adj"] <= np.minimum(2 * table["p_value"], 1))

    def test_constant_feature_is_excluded(self, design):
        m = continuous({
            "flat": [3.0] * 8,
            "ok": [1, 2, 3, 4, 5, 6, 7, 8],
        })
        res = RankTester(m, design).run()

        assert list(res.table.index) == ["ok"]
        assert len(res.failures) == 1
        assert res.failures[0].feature == "flat"
        assert res.failures[0].error_kind == "DegenerateInputError"

    def test_zero_mean_group(self, design):
        m = continuous({"absent_in_ko": [0.1, 0.2, 0.3, 0.4, 0, 0, 0, 0]})
        res = RankTester(m, design).run()

        assert res.table.empty
        assert res.failures[0].error_kind == "DegenerateInputError"

    def test_pseudocount_rescues_zero_mean(self, design):
        m = continuous({"absent_in_ko": [0.1, 0.2, 0.3, 0.4, 0, 0, 0, 0]})
        res = RankTester(m, design, {"pseudocount": 0.01}).run()

        row = res.table.loc["absent_in_ko"]
        assert row["mean_comparison"] == 0.0
        assert row["fold_change"] == pytest.approx(-0.26 / 0.01)
        assert res.params["pseudocount"] == 0.01

    def test_missing_group_values(self, design):
        vals = [1.0, 2.0, 3.0, 4.0] + [np.nan] * 4
        res = RankTester(continuous({"gone": vals}), design).run()
        assert res.failures[0].error_kind == "InsufficientDataError"

    def test_nan_values_are_dropped(self, design):
        vals = [1.0, 2.0, np.nan, 4.0, 5.0, 6.0, 7.0, 8.0]
        row = RankTester(continuous({"f": vals}), design).run().table.loc["f"]
        assert row["n_reference"] == 3
        assert row["n_comparison"] == 4

    def test_report_accounts_for_every_feature(self, design):
        m = continuous({
            "a": [1, 2, 3, 4, 5, 6, 7, 8],
            "flat": [1.0] * 8,
            "b": [8, 7, 6, 5, 4, 3, 2, 1],
        })
        report = RankTester(m, design).run().report()

        assert report.n_features == 3
        assert report.n_tested + report.n_excluded == 3
        assert report.excluded_by_kind == {"DegenerateInputError": 1}
        assert report.summary() == "rank_test: 2/3 features tested, 1 excluded (DegenerateInputError=1)"

    def test_result_views(self, design):
        m = continuous({
            "a": [1, 2, 3, 4, 5, 6, 7, 8],
            "flat": [1.0] * 8,
            "b": [1, 8, 2, 7, 3, 6, 4, 5],
        })
        res = RankTester(m, design).run()

        full = res.to_dataframe()
        assert list(full.index) == ["a", "b", "flat"]
        assert full.loc["flat", "error"] == "DegenerateInputError"
        assert np.isnan(full.loc["flat", "p_value"])

        # BH over two features: a is 2/70 * 2 ≈ 0.057, b is 1
        assert list(res.get_significant(alpha=0.1).index) == ["a"]
        assert res.get_significant(alpha=0.1, min_abs_log2_fc=5).empty


# =============================================================================
# Small samples and configuration
# =============================================================================


def test_small_sample_warning():
    meta = SampleMetadata(pd.DataFrame({
        "sample_id": ["a1", "a2", "a3", "b1", "b2", "b3"],
        "condition": ["WT"] * 3 + ["KO"] * 3,
    }))
    design = DesignMatrixBuilder(meta, {"reference": "WT"}).build()
    m = FeatureMatrix(np.arange(1, 7, dtype=float)[:, None], design.sample_ids, ["f"], "continuous")

    res = RankTester(m, design).run()
    assert res.params["small_sample_warning"] is True
    assert res.table.loc["f", "p_value"] == pytest.approx(0.1)


def test_unknown_method(proportions, design):
    with pytest.raises(ConfigurationError):
        RankTester(proportions, design, {"method": "bootstrap"})


def test_negative_pseudocount(proportions, design):
    with pytest.raises(ConfigurationError):
        RankTester(proportions, design, {"pseudocount": -1})


# =============================================================================
# Paired
# =============================================================================


class TestPaired:
    def test_signed_rank_on_pairs(self, metadata, paired_design):
        m = continuous({"f": [1.0, 2.0, 3.0, 4.0, 2.1, 3.3, 4.6, 5.9]})
        res = RankTester(m, paired_design, {"paired": True},
                         blocks=blocks_of(metadata, paired_design)).run()

        row = res.table.loc["f"]
        assert row["statistic"] == 0.0
        assert row["p_value"] == pytest.approx(0.125)
        assert row["n_reference"] == 4
        assert res.params["test"] == "wilcoxon_signed_rank"
        assert res.params["n_pairs"] == 4

    def test_zero_differences_excluded(self, metadata, paired_design):
        m = continuous({"same": [1.0, 2.0, 3.0, 4.0] * 2})
        res = RankTester(m, paired_design, {"paired": True},
                         blocks=blocks_of(metadata, paired_design)).run()
        assert res.failures[0].error_kind == "DegenerateInputError"

    def test_replicates_within_block_rejected(self):
        meta = SampleMetadata(pd.DataFrame({
            "sample_id": SAMPLES,
            "condition": ["WT"] * 4 + ["KO"] * 4,
            "patient_id": ["p1", "p1", "p2", "p2"] * 2,
        }), block_column="patient_id")
        design = DesignMatrixBuilder(meta, {"mode": "paired", "reference": "WT"}).build()
        m = continuous({"f": [1.0, 2.0, 3.0, 4.0, 2.1, 3.3, 4.6, 5.9]})

        with pytest.raises(ConfigurationError, match="more than one 'WT' sample"):
            RankTester(m, design, {"paired": True}, blocks=blocks_of(meta, design))

    def test_single_default_block_rejected(self, metadata_df):
        meta = SampleMetadata(metadata_df.drop(columns="patient_id"))
        design = DesignMatrixBuilder(meta, {"reference": "WT"}).build()
        m = continuous({"f": [1.0, 2.0, 3.0, 4.0, 2.1, 3.3, 4.6, 5.9]})

        with pytest.raises(ConfigurationError):
            RankTester(m, design, {"paired": True}, blocks=blocks_of(meta, design))

    def test_paired_requires_blocks(self, proportions, design):
        with pytest.raises(ConfigurationError):
            RankTester(proportions, design, {"paired": True})
