"""
Tests for the moderated linear model engine and its building blocks.

Covers:
- OLS fit (complete and with missing values)
- empirical-Bayes prior estimation (constant and trended)
- per-feature exclusions (zero variance, too few observations)
- fold changes on linear and log scales
"""

from __future__ import annotations

import numpy as np
import pytest
from scipy.special import polygamma

from conftest import SAMPLES
from cytoflux.analysis.ebayes_moderator import EbayesModerator
from cytoflux.analysis.ebayes_prior import fit_fdist, fit_fdist_trend, trigamma_inverse
from cytoflux.analysis.linearmodel import LinearModelTester
from cytoflux.analysis.linearmodelfitter import LinearModelFitter
from cytoflux.dataset.featurematrix import FeatureMatrix
from cytoflux.utils.exceptions import ConfigurationError


# =============================================================================
# Helper Functions
# =============================================================================


def state_matrix(columns: dict) -> FeatureMatrix:
    names = list(columns)
    values = np.column_stack([np.asarray(columns[n], dtype=float) for n in names])
    return FeatureMatrix(values, SAMPLES, names, "continuous")


def simulated_state(n_features=20, shift=60.0, seed=3) -> FeatureMatrix:
    rng = np.random.default_rng(seed)
    values = rng.normal(100, 5, size=(8, n_features))
    values[4:, 0] += shift
    return FeatureMatrix(values, SAMPLES, [f"f{i}" for i in range(n_features)], "continuous")


# =============================================================================
# LinearModelFitter
# =============================================================================


class TestLinearModelFitter:
    def test_group_difference_coefficient(self, design):
        Y = np.array([[5.0] * 4 + [10.0] * 4]).T
        res = LinearModelFitter(Y, design.matrix).fit().get_results()

        np.testing.assert_allclose(res["coefficients"][0], [5.0, 5.0])
        assert res["df_residual"][0] == 6
        assert res["residual_variance"][0] == pytest.approx(0.0, abs=1e-20)
        assert res["xtx_inv"].shape == (2, 2)

    def test_missing_values_fit_on_observed_rows(self, design):
        Y = np.column_stack([
            [1.0, np.nan, 3.0, 2.0, 5.0, 6.0, 7.0, 6.0],
            [1.0, 2.0, 3.0, 2.0, 5.0, 6.0, 7.0, 6.0],
        ])
        res = LinearModelFitter(Y, design.matrix).fit().get_results()

        np.testing.assert_array_equal(res["df_residual"], [5, 6])
        np.testing.assert_array_equal(res["n_obs"], [7, 8])
        assert res["coefficients"][0, 0] == pytest.approx(2.0)
        assert res["xtx_inv"].shape == (2, 2, 2)


# =============================================================================
# Empirical Bayes prior
# =============================================================================


class TestEbayesPrior:
    def test_trigamma_inverse(self):
        for x in (0.3, 3.0, 40.0):
            assert trigamma_inverse(polygamma(1, x)) == pytest.approx(x, rel=1e-6)

    def test_recovers_prior(self):
        rng = np.random.default_rng(11)
        n, d, d0, s0 = 2000, 4.0, 10.0, 1.0
        sigma2 = d0 * s0 / rng.chisquare(d0, size=n)
        s2 = sigma2 * rng.chisquare(d, size=n) / d

        s20, df2 = fit_fdist(s2, d)
        assert 5 < df2 < 25
        assert 0.75 < s20 < 1.33

    def test_no_extra_spread_gives_large_prior_df(self):
        rng = np.random.default_rng(12)
        s2 = rng.chisquare(6, size=2000) / 6
        s20, df2 = fit_fdist(s2, 6)
        assert df2 > 10
        assert s20 == pytest.approx(1.0, rel=0.1)

    def test_degenerate_sizes(self):
        assert np.isnan(fit_fdist(np.array([]), 4)[0])
        assert fit_fdist(np.array([2.0]), 4) == (2.0, 0.0)

    def test_trended_prior_follows_covariate(self):
        rng = np.random.default_rng(13)
        n, d = 500, 6.0
        covariate = np.linspace(0, 3, n)
        s2 = np.exp(covariate) * rng.chisquare(d, size=n) / d

        s20, df2 = fit_fdist_trend(s2, d, covariate)
        assert s20.shape == (n,)
        assert s20[-1] > 5 * s20[0]

    def test_moderator_few_features_not_moderated(self):
        mod = EbayesModerator([1.0, 2.0], 6)
        d0, s0 = mod.fit()
        assert d0 == 0.0
        s2_mod, df_total = mod.moderate()
        np.testing.assert_allclose(s2_mod, [1.0, 2.0])
        np.testing.assert_allclose(df_total, [6.0, 6.0])

    def test_moderated_variance_between_prior_and_observed(self):
        rng = np.random.default_rng(14)
        s2 = 5.0 / rng.chisquare(5, size=200) * rng.chisquare(4, size=200) / 4
        mod = EbayesModerator(s2, 4)
        mod.fit()
        s2_mod, df_total = mod.moderate()

        lo = np.minimum(s2, mod.s0)
        hi = np.maximum(s2, mod.s0)
        assert np.all((s2_mod >= lo - 1e-12) & (s2_mod <= hi + 1e-12))
        assert np.all(df_total >= 4)

    def test_unknown_method(self):
        with pytest.raises(ConfigurationError):
            EbayesModerator([1.0, 2.0, 3.0], 4, method="bayes").fit()


# =============================================================================
# LinearModelTester
# =============================================================================


class TestLinearModelTester:
    def test_detects_shift(self, design):
        res = LinearModelTester(simulated_state(), design).run()
        table = res.table

        assert len(table) == 20
        assert list(table.index) == [f"f{i}" for i in range(20)]
        assert table.loc["f0", "p_value"] < 1e-3
        assert table.loc["f0", "p_value_adj"] < 0.05
        assert table.loc["f0", "coefficient"] > 40
        assert table.loc["f0", "fold_change"] == pytest.approx(
            table.loc["f0", "mean_comparison"] / table.loc["f0", "mean_reference"]
        )
        assert np.all(table["p_value_adj"] >= table["p_value"])
        assert np.all(table["df_total"] >= 6)

    def test_zero_variance_feature(self, design):
        m = state_matrix({
            "flat_groups": [5.0] * 4 + [10.0] * 4,
            "noisy": [1.0, 2.0, 3.0, 2.0, 5.0, 6.0, 7.0, 6.0],
        })
        tester = LinearModelTester(m, design)
        res = tester.run()

        assert list(res.table.index) == ["noisy"]
        assert res.failures[0].feature == "flat_groups"
        assert res.failures[0].error_kind == "DegenerateInputError"
        # the coefficient is still estimated by the fitter
        assert tester.fit_results["coefficients"][0, 1] == pytest.approx(5.0)

    def test_insufficient_observations(self, design):
        m = state_matrix({
            "sparse": [1.0, np.nan, np.nan, np.nan, 5.0, 6.0, 7.0, 6.0],
            "noisy": [1.0, 2.0, 3.0, 2.0, 5.0, 6.0, 7.0, 6.0],
        })
        res = LinearModelTester(m, design).run()
        assert res.failures[0].feature == "sparse"
        assert res.failures[0].error_kind == "InsufficientDataError"
        assert res.report().n_tested == 1

    def test_missing_value_feature_is_still_tested(self, design):
        m = state_matrix({
            "gap": [1.0, np.nan, 3.0, 2.0, 5.0, 6.0, 7.0, 6.0],
            "noisy": [1.0, 2.0, 3.0, 2.0, 5.0, 6.0, 7.0, 6.0],
        })
        res = LinearModelTester(m, design).run()
        assert list(res.table.index) == ["gap", "noisy"]
        assert res.table.loc["gap", "coefficient"] == pytest.approx(4.0)

    def test_log2_scale(self, design):
        m = state_matrix({"f": [1.0, 1.1, 0.9, 1.0, 2.0, 2.1, 1.9, 2.0]})
        row = LinearModelTester(m, design, config={"value_scale": "log2"}).run().table.loc["f"]

        assert row["coefficient"] == pytest.approx(1.0)
        assert row["log2_fold_change"] == pytest.approx(1.0)
        assert row["fold_change"] == pytest.approx(2.0)
        assert row["log10_fold_change"] == pytest.approx(np.log10(2.0))

    def test_non_positive_mean_gives_nan_fold_change(self, design):
        m = state_matrix({"f": [-1.0, -1.1, -0.9, -1.0, 2.0, 2.1, 1.9, 2.0]})
        row = LinearModelTester(m, design).run().table.loc["f"]
        assert np.isnan(row["fold_change"])
        assert np.isfinite(row["p_value"])

    def test_negative_contrast_flips_sign(self, design):
        m = simulated_state()
        plus = LinearModelTester(m, design).run().table
        minus = LinearModelTester(m, design, contrast=[0, -1]).run().table
        np.testing.assert_allclose(minus["statistic"], -plus["statistic"])
        np.testing.assert_allclose(minus["p_value"], plus["p_value"])

    def test_trended_prior_runs(self, design):
        res = LinearModelTester(simulated_state(40), design, config={"trend": True}).run()
        assert res.params["trend"] is True
        assert len(res.table) == 40

    def test_bad_value_scale(self, design):
        with pytest.raises(ConfigurationError):
            LinearModelTester(simulated_state(), design, config={"value_scale": "ln"})
