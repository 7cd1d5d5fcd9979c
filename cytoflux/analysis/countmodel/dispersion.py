from __future__ import annotations

from typing import Dict, Optional

import numpy as np
from scipy.optimize import minimize_scalar

from cytoflux.analysis.countmodel.glmfit import NBGLMFitter
from cytoflux.utils.exceptions import ConfigurationError, CytofluxError
from cytoflux.utils.utils import log_debug, log_info, log_time, log_warning

DISP_MIN = 1e-8
DISP_MAX = 1e4

# feature-wise grid: log2(dispersion / trend)
TAGWISE_GRID = np.linspace(-10, 10, 11)


def ave_log_cpm(counts: np.ndarray, lib_eff: np.ndarray, prior_count: float = 2.0) -> np.ndarray:
    """Average log2 counts-per-million per feature, with a library-scaled prior count."""
    prior = prior_count * lib_eff / np.mean(lib_eff)
    cpm = (counts + prior[:, None]) / (lib_eff + 2 * prior)[:, None] * 1e6
    return np.log2(np.mean(cpm, axis=0))


def _maximize_interpolant(grid: np.ndarray, values: np.ndarray) -> float:
    """Grid argmax refined by the parabola through its neighbours."""
    k = int(np.argmax(values))
    if k == 0 or k == grid.size - 1:
        return float(grid[k])
    x0, x1, x2 = grid[k - 1:k + 2]
    y0, y1, y2 = values[k - 1:k + 2]
    denom = (x0 - x1) * (x0 - x2) * (x1 - x2)
    a = (x2 * (y1 - y0) + x1 * (y0 - y2) + x0 * (y2 - y1)) / denom
    b = (x2 ** 2 * (y0 - y1) + x1 ** 2 * (y2 - y0) + x0 ** 2 * (y1 - y2)) / denom
    if a >= 0:
        return float(grid[k])
    return float(np.clip(-b / (2 * a), x0, x2))


class DispersionEstimator:
    """
    Negative binomial dispersions by Cox–Reid adjusted profile likelihood:
    common → trended (by average log-CPM) → feature-wise empirical Bayes.

    Feature-wise estimates maximise the feature's own APL plus `prior_df`
    residual-df-scaled copies of the APL averaged over features of similar
    abundance, so each dispersion is shrunk towards the trend.
    """

    def __init__(
        self,
        counts: np.ndarray,
        design: np.ndarray,
        offset: np.ndarray,
        prior_df: float = 10.0,
        trend: bool = True,
        n_bins: Optional[int] = None,
        span: float = 0.3,
        max_iter: int = 50,
    ):
        self.counts = np.asarray(counts, dtype=np.float64)
        self.design = np.asarray(design, dtype=np.float64)
        self.offset = np.asarray(offset, dtype=np.float64)
        if prior_df < 0:
            raise ConfigurationError("count_model.prior_df must be >= 0")
        self.prior_df = float(prior_df)
        self.trend = trend
        self.n_bins = n_bins
        self.span = span
        self.fitter = NBGLMFitter(self.design, self.offset, max_iter=max_iter)

        self.ave_log_cpm = ave_log_cpm(self.counts, np.exp(self.offset))
        self.common: Optional[float] = None
        self.trended: Optional[np.ndarray] = None
        self.tagwise: Optional[np.ndarray] = None

    # ------------------------------------------------------------------
    def _apl(self, j: int, dispersion: float) -> float:
        try:
            return self.fitter.cox_reid_apl(self.counts[:, j], dispersion)
        except CytofluxError:
            # non-convergence at an extreme dispersion contributes nothing
            return np.nan

    def _common_over(self, features: np.ndarray) -> float:
        def neg_apl(log_disp):
            vals = [self._apl(j, np.exp(log_disp)) for j in features]
            return -np.nansum(vals)

        res = minimize_scalar(
            neg_apl,
            bounds=(np.log(1e-4), np.log(DISP_MAX)),
            method="bounded",
            options={"xatol": 1e-4},
        )
        return float(np.clip(np.exp(res.x), DISP_MIN, DISP_MAX))

    def _usable(self) -> np.ndarray:
        return np.where(self.counts.sum(axis=0) > 0)[0]

    @log_time("Common dispersion")
    def estimate_common(self) -> float:
        self.common = self._common_over(self._usable())
        log_info(f"Common dispersion: {self.common:.4g} (BCV {np.sqrt(self.common):.3f})")
        return self.common

    @log_time("Trended dispersion")
    def estimate_trended(self) -> np.ndarray:
        if self.common is None:
            self.estimate_common()

        usable = self._usable()
        n = usable.size
        n_bins = self.n_bins or min(50, n // 5)
        if not self.trend or n_bins < 2:
            if self.trend:
                log_warning(f"Only {n} features; dispersion trend falls back to the common value.")
            self.trended = np.full(self.counts.shape[1], self.common)
            return self.trended

        alc = self.ave_log_cpm[usable]
        edges = np.quantile(alc, np.linspace(0, 1, n_bins + 1))
        bin_of = np.clip(np.searchsorted(edges, alc, side="right") - 1, 0, n_bins - 1)

        centers, disps = [], []
        for b in range(n_bins):
            members = usable[bin_of == b]
            if members.size == 0:
                continue
            centers.append(np.median(self.ave_log_cpm[members]))
            disps.append(self._common_over(members))
            log_debug(f"bin {b}: {members.size} features, dispersion {disps[-1]:.4g}")

        order = np.argsort(centers)
        trended = np.interp(self.ave_log_cpm, np.asarray(centers)[order], np.asarray(disps)[order])
        self.trended = np.clip(trended, DISP_MIN, DISP_MAX)
        return self.trended

    @log_time("Feature-wise dispersion")
    def estimate_tagwise(self) -> np.ndarray:
        if self.trended is None:
            self.estimate_trended()

        n_samples, n_coef = self.design.shape
        n_feat = self.counts.shape[1]
        df_residual = n_samples - n_coef
        prior_n = self.prior_df / df_residual if df_residual > 0 else 0.0

        usable = self._usable()
        apl = np.full((n_feat, TAGWISE_GRID.size), np.nan)
        for j in usable:
            for k, g in enumerate(TAGWISE_GRID):
                disp = float(np.clip(self.trended[j] * 2 ** g, DISP_MIN, DISP_MAX))
                apl[j, k] = self._apl(j, disp)

        # shared likelihood: average APL of the features closest in abundance
        k_neighbors = max(1, int(round(self.span * usable.size)))
        alc = self.ave_log_cpm
        tagwise = self.trended.copy()
        for j in usable:
            dist = np.abs(alc[usable] - alc[j])
            neighbors = usable[np.argsort(dist, kind="stable")[:k_neighbors]]
            shared = np.nanmean(apl[neighbors], axis=0)
            combined = apl[j] + prior_n * shared
            finite = np.isfinite(combined)
            if not finite.any():
                continue
            if finite.all():
                g_opt = _maximize_interpolant(TAGWISE_GRID, combined)
            else:
                g_opt = float(TAGWISE_GRID[int(np.argmax(np.where(finite, combined, -np.inf)))])
            tagwise[j] = self.trended[j] * 2 ** g_opt

        self.tagwise = np.clip(tagwise, DISP_MIN, DISP_MAX)
        return self.tagwise

    def estimate(self) -> Dict[str, np.ndarray]:
        self.estimate_common()
        self.estimate_trended()
        self.estimate_tagwise()
        return {
            "common": self.common,
            "trended": self.trended,
            "tagwise": self.tagwise,
            "ave_log_cpm": self.ave_log_cpm,
        }
