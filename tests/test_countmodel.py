"""
Tests for the negative binomial count model: TMM normalization, NB GLM
fitting, dispersion estimation and the likelihood-ratio tester.
"""

from __future__ import annotations

import numpy as np
import pytest

from conftest import SAMPLES
from cytoflux.analysis.countmodel.dispersion import DispersionEstimator, ave_log_cpm
from cytoflux.analysis.countmodel.glmfit import NBGLMFitter, nb_deviance
from cytoflux.analysis.countmodel.normalization import calc_norm_factors
from cytoflux.analysis.countmodel.tester import CountModelTester
from cytoflux.analysis.multipletesting import adjust_pvalues
from cytoflux.dataset.featurematrix import FeatureMatrix
from cytoflux.utils.exceptions import (
    ConfigurationError,
    ConvergenceError,
    InsufficientDataError,
)


# =============================================================================
# Helper Functions
# =============================================================================


def count_matrix(columns: dict) -> FeatureMatrix:
    names = list(columns)
    values = np.column_stack([np.asarray(columns[n]) for n in names])
    return FeatureMatrix(values, SAMPLES, names, "counts")


def simulate_nb(n_features=30, dispersion=0.1, seed=5):
    rng = np.random.default_rng(seed)
    mu = rng.uniform(100, 400, size=n_features)
    r = 1.0 / dispersion
    return rng.negative_binomial(r, r / (r + mu), size=(8, n_features)).astype(float)


# =============================================================================
# Normalization
# =============================================================================


class TestNormFactors:
    def test_proportional_samples_give_unit_factors(self):
        base = np.array([10, 50, 100, 200, 40, 30, 70, 90, 20, 60], dtype=float)
        counts = np.vstack([base, 2 * base, 3 * base, 5 * base])
        np.testing.assert_allclose(calc_norm_factors(counts), np.ones(4), atol=1e-10)

    def test_geometric_mean_is_one(self):
        counts = simulate_nb()
        nf = calc_norm_factors(counts)
        assert np.all(nf > 0)
        assert np.exp(np.mean(np.log(nf))) == pytest.approx(1.0)

    def test_composition_shift_is_corrected(self):
        counts = np.full((4, 10), 100.0)
        counts[3, 0] = 1000.0
        nf = calc_norm_factors(counts)

        assert nf[0] == pytest.approx(nf[1])
        assert nf[0] == pytest.approx(nf[2])
        assert nf[3] < nf[0]

    def test_sample_reference(self):
        base = np.array([10, 50, 100, 200, 40, 30, 70, 90], dtype=float)
        counts = np.vstack([base, 2 * base, 4 * base])
        np.testing.assert_allclose(calc_norm_factors(counts, ref="sample"), np.ones(3), atol=1e-10)

    def test_none(self):
        np.testing.assert_array_equal(calc_norm_factors(simulate_nb(), method="none"), np.ones(8))

    def test_zero_library(self):
        counts = np.array([[0, 0], [5, 6]], dtype=float)
        with pytest.raises(InsufficientDataError):
            calc_norm_factors(counts)

    def test_unknown_method(self):
        with pytest.raises(ConfigurationError):
            calc_norm_factors(simulate_nb(), method="RLE")


# =============================================================================
# NB GLM
# =============================================================================


class TestNBGLMFitter:
    X = np.array([[1, 0], [1, 0], [1, 1], [1, 1]], dtype=float)

    def test_recovers_group_ratio(self):
        fit = NBGLMFitter(self.X, np.zeros(4)).fit(np.array([10, 10, 20, 20.0]), 0.01)
        assert fit.coefficients[0] == pytest.approx(np.log(10.0), abs=1e-6)
        assert fit.coefficients[1] == pytest.approx(np.log(2.0), abs=1e-6)
        assert fit.deviance == pytest.approx(0.0, abs=1e-8)

    def test_offset_is_honoured(self):
        offset = np.log(np.array([1.0, 1.0, 2.0, 2.0]))
        fit = NBGLMFitter(self.X, offset).fit(np.array([10, 10, 20, 20.0]), 0.01)
        assert fit.coefficients[1] == pytest.approx(0.0, abs=1e-6)

    def test_zero_total(self):
        with pytest.raises(InsufficientDataError):
            NBGLMFitter(self.X, np.zeros(4)).fit(np.zeros(4), 0.1, feature="empty")

    def test_non_convergence(self):
        with pytest.raises(ConvergenceError):
            NBGLMFitter(self.X, np.zeros(4), max_iter=1).fit(np.array([10, 10, 20, 20.0]), 0.01)

    def test_deviance_zero_at_observed(self):
        y = np.array([3.0, 0.0, 7.0])
        assert nb_deviance(y, y, 0.2) == pytest.approx(0.0, abs=1e-8)
        assert nb_deviance(y, y + 1, 0.2) > 0


# =============================================================================
# Dispersion
# =============================================================================


class TestDispersionEstimator:
    def test_common_dispersion_near_truth(self, design):
        counts = simulate_nb(dispersion=0.1)
        offset = np.log(counts.sum(axis=1))
        common = DispersionEstimator(counts, design.matrix, offset).estimate_common()
        assert 0.04 < common < 0.25

    def test_tagwise_shape_and_bounds(self, design):
        counts = simulate_nb(dispersion=0.1)
        offset = np.log(counts.sum(axis=1))
        out = DispersionEstimator(counts, design.matrix, offset).estimate()

        assert out["trended"].shape == (30,)
        assert out["tagwise"].shape == (30,)
        assert np.all(np.isfinite(out["tagwise"]))
        assert np.all((out["tagwise"] >= 1e-8) & (out["tagwise"] <= 1e4))

    def test_ave_log_cpm_orders_by_abundance(self):
        counts = np.array([[10, 100, 1000]] * 4, dtype=float)
        alc = ave_log_cpm(counts, counts.sum(axis=1))
        assert np.all(np.diff(alc) > 0)

    def test_negative_prior_df(self, design):
        with pytest.raises(ConfigurationError):
            DispersionEstimator(simulate_nb(), design.matrix, np.zeros(8), prior_df=-1)


# =============================================================================
# CountModelTester
# =============================================================================


class TestCountModelTester:
    def test_fold_changes(self, counts, design):
        res = CountModelTester(counts, design, config={"normalization": "none"}).run()
        table = res.table

        assert list(table.index) == ["cluster1", "cluster2"]
        assert table.loc["cluster1", "log2_fold_change"] == pytest.approx(1.0, abs=0.01)
        assert table.loc["cluster1", "fold_change"] == pytest.approx(2.0, rel=0.01)
        assert table.loc["cluster2", "log2_fold_change"] == pytest.approx(np.log2(2 / 3), abs=0.01)
        assert table.loc["cluster2", "fold_change"] == pytest.approx(-1.5, rel=0.01)
        assert np.all(table["p_value"] < 0.01)
        assert np.all(table["p_value_adj"] >= table["p_value"])
        assert res.params["norm_factors"] == [1.0] * 8

    def test_zero_total_sample(self, design):
        m = count_matrix({
            "a": [10, 12, 0, 9, 20, 22, 25, 19],
            "b": [30, 28, 0, 33, 15, 14, 18, 16],
        })
        with pytest.raises(InsufficientDataError):
            CountModelTester(m, design).run()

    def test_zero_total_feature_is_excluded(self, design):
        m = count_matrix({
            "a": [10, 12, 11, 9, 20, 22, 25, 19],
            "never": [0] * 8,
            "b": [30, 28, 31, 33, 15, 14, 18, 16],
        })
        res = CountModelTester(m, design, config={"dispersion": 0.1}).run()

        assert list(res.table.index) == ["a", "b"]
        assert res.failures[0].feature == "never"
        assert res.failures[0].error_kind == "InsufficientDataError"
        assert res.report().n_features == 3

    def test_non_convergence_is_feature_scoped(self, design, monkeypatch):
        original = NBGLMFitter.fit

        def stalls_on_b(self, y, dispersion, feature=None):
            if feature == "b":
                raise ConvergenceError("IRLS did not converge in 50 iterations", feature=feature)
            return original(self, y, dispersion, feature=feature)

        monkeypatch.setattr(NBGLMFitter, "fit", stalls_on_b)
        m = count_matrix({
            "a": [10, 12, 11, 9, 20, 22, 25, 19],
            "b": [30, 28, 31, 33, 15, 14, 18, 16],
            "c": [200, 210, 190, 205, 200, 195, 210, 205],
        })
        res = CountModelTester(m, design, config={"dispersion": 0.1}).run()

        assert list(res.table.index) == ["a", "c"]
        assert [(f.feature, f.error_kind) for f in res.failures] == [("b", "ConvergenceError")]
        # correction runs over the tested features only
        np.testing.assert_allclose(res.table["p_value_adj"], adjust_pvalues(res.table["p_value"].to_numpy()))
        assert np.all(np.isfinite(res.table["log2_fold_change"]))
        assert res.report().n_excluded == 1

    def test_single_cluster_fold_change_is_relative_to_library(self, design):
        m = count_matrix({"only": [100] * 4 + [200] * 4})
        row = CountModelTester(m, design, config={"dispersion": 0.1, "normalization": "none"}).run().table.loc["only"]

        assert row["log2_fold_change"] == pytest.approx(0.0, abs=1e-8)
        assert row["p_value"] == pytest.approx(1.0)

    def test_absent_in_one_group_has_finite_fold_change(self, design):
        m = count_matrix({
            "gone": [50, 48, 52, 50, 0, 0, 0, 0],
            "a": [100, 110, 95, 105, 150, 160, 140, 155],
            "b": [300, 290, 310, 305, 300, 295, 310, 300],
        })
        row = CountModelTester(m, design, config={"dispersion": 0.1}).run().table.loc["gone"]
        assert np.isfinite(row["log2_fold_change"])
        assert row["log2_fold_change"] < -5
        assert row["p_value"] < 0.01

    def test_requires_counts(self, proportions, design):
        with pytest.raises(ConfigurationError):
            CountModelTester(proportions, design)

    def test_bad_dispersion_option(self, counts, design):
        with pytest.raises(ConfigurationError):
            CountModelTester(counts, design, config={"dispersion": "robust"})

    def test_negative_dispersion(self, counts, design):
        with pytest.raises(ConfigurationError):
            CountModelTester(counts, design, config={"dispersion": -0.1})
        CountModelTester(counts, design, config={"dispersion": 0})
