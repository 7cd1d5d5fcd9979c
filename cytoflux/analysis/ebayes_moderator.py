import numpy as np

from cytoflux.analysis.ebayes_prior import fit_fdist, fit_fdist_trend
from cytoflux.analysis.stats_ops import raw_stats_from_fit
from cytoflux.utils.exceptions import ConfigurationError
from cytoflux.utils.utils import log_info, log_time, log_warning

MIN_FEATURES_FOR_PRIOR = 3


class EbayesModerator:
    def __init__(self, sigma2, df_residual, method="limma", covariate=None):
        """
        Parameters:
        - sigma2: (n_features,) vector of residual variances
        - df_residual: scalar or array of degrees of freedom (per feature)
        - method: "limma" (moment estimation of a scaled-F prior) or "none"
        - covariate: optional (n_features,) average value; fits a trended prior
        """
        self.sigma2 = np.asarray(sigma2, dtype=np.float64)
        self.df_residual = np.broadcast_to(
            np.asarray(df_residual, dtype=np.float64), self.sigma2.shape
        ).copy()
        self.covariate = None if covariate is None else np.asarray(covariate, dtype=np.float64)
        self.method = method
        self.d0 = None
        self.s0 = None
        self.df_total = None

    def fit(self):
        if self.method == "limma":
            return self._fit_limma_like()
        elif self.method == "none":
            return self._no_moderation()
        else:
            raise ConfigurationError(f"Unknown eBayes method: {self.method}")

    def _no_moderation(self):
        self.d0 = 0.0
        self.s0 = np.zeros_like(self.sigma2)
        return self.d0, self.s0

    def _fit_limma_like(self):
        n = self.sigma2.shape[0]
        if n < MIN_FEATURES_FOR_PRIOR:
            log_warning(f"Only {n} feature(s) with a residual variance; variances are not moderated.")
            return self._no_moderation()

        if self.covariate is None:
            s0, d0 = fit_fdist(self.sigma2, self.df_residual)
            s0 = np.full(n, s0)
        else:
            s0, d0 = fit_fdist_trend(self.sigma2, self.df_residual, self.covariate)

        if not np.isfinite(np.nanmean(s0)):
            log_warning("Prior variance could not be estimated; variances are not moderated.")
            return self._no_moderation()

        self.s0 = np.asarray(s0, dtype=np.float64)
        self.d0 = float(d0)
        log_info(f"eBayes prior: d0 = {self.d0:.3g}, s0² = {np.median(self.s0):.3g}"
                 + (" (trended)" if self.covariate is not None else ""))
        return self.d0, self.s0

    def moderate(self):
        """
        Returns:
        - moderated variances (d0·s0² + d·s²) / (d0 + d)
        - total degrees of freedom (d + d0), capped at the pooled residual df
        """
        if self.d0 is None:
            self.fit()

        d = self.df_residual
        if np.isinf(self.d0):
            s2_moderated = self.s0.copy()
        else:
            s2_moderated = (self.d0 * self.s0 + d * self.sigma2) / (self.d0 + d)

        df_pooled = float(np.sum(d))
        self.df_total = np.minimum(self.d0 + d, df_pooled)
        return s2_moderated, self.df_total

    @log_time("EBayes Computation")
    def apply_to_contrast(self, estimates, unscaled_sd):
        """
        Moderated t-statistics for one contrast.

        Parameters:
        - estimates: (n_features,) contrast estimates
        - unscaled_sd: (n_features,) sqrt(cᵀ (XᵀX)⁻¹ c)

        Returns:
        - dict: t, p, s2_moderated, df_total (each of shape n_features)
        """
        s2_moderated, df_total = self.moderate()
        _, t_stat, p_val = raw_stats_from_fit(
            estimates=estimates,
            stdu=unscaled_sd,
            sigma=np.sqrt(s2_moderated),
            df_res=df_total,
        )

        return {
            "t": t_stat,
            "p": p_val,
            "s2_moderated": s2_moderated,
            "df_total": df_total,
        }
