import numpy as np

from cytoflux.utils.utils import log_time


class LinearModelFitter:
    def __init__(self, expression: np.ndarray, design_matrix: np.ndarray):
        """
        Parameters:
        - expression: (n_samples x n_features) matrix, NaN for missing values
        - design_matrix: (n_samples x n_coefficients) matrix from DesignMatrixBuilder
        """
        self.Y = np.asarray(expression, dtype=np.float64)
        self.X = np.asarray(design_matrix, dtype=np.float64)
        self.coefficients = None
        self.fitted = None
        self.residual_variance = None
        self.df_residual = None
        self.n_obs = None
        self.xtx_inv = None  # (X^T X)^(-1), per feature when any value is missing

    @log_time("Linear Regressions")
    def fit(self):
        """
        Fits OLS for all features.
        Vectorized across features when the matrix is complete; features with
        missing values are fitted on their observed rows only.
        """
        X = self.X
        Y = self.Y  # shape: (n_samples x n_features)
        n, p = X.shape
        n_feat = Y.shape[1]

        missing = np.isnan(Y)
        if not missing.any():
            self._fit_complete(X, Y)
            return self

        self.coefficients = np.full((n_feat, p), np.nan)
        self.fitted = np.full((n, n_feat), np.nan)
        self.residual_variance = np.full(n_feat, np.nan)
        self.df_residual = np.zeros(n_feat)
        self.n_obs = (~missing).sum(axis=0)
        self.xtx_inv = np.full((n_feat, p, p), np.nan)

        for j in range(n_feat):
            obs = ~missing[:, j]
            Xj = X[obs]
            rank = np.linalg.matrix_rank(Xj) if Xj.shape[0] else 0
            if rank < p:
                # coefficients not estimable on the observed rows
                continue
            xtx_inv = np.linalg.inv(Xj.T @ Xj)
            beta = xtx_inv @ Xj.T @ Y[obs, j]
            fitted = Xj @ beta
            df = obs.sum() - p
            rss = np.sum((Y[obs, j] - fitted) ** 2)

            self.coefficients[j] = beta
            self.fitted[obs, j] = fitted
            self.xtx_inv[j] = xtx_inv
            self.df_residual[j] = df
            self.residual_variance[j] = rss / df if df > 0 else np.nan

        return self

    def _fit_complete(self, X, Y):
        n, p = X.shape
        self.xtx_inv = np.linalg.inv(X.T @ X)

        # Fit coefficients for all features
        betas = self.xtx_inv @ X.T @ Y  # shape: (n_coefficients x n_features)
        self.coefficients = betas.T     # shape: (n_features x n_coefficients)

        self.fitted = X @ betas         # shape: (n_samples x n_features)
        resid = Y - self.fitted

        df = n - np.linalg.matrix_rank(X)
        rss = np.sum(resid**2, axis=0)  # shape: (n_features,)
        self.df_residual = np.full(Y.shape[1], float(df))
        self.residual_variance = rss / df if df > 0 else np.full(Y.shape[1], np.nan)
        self.n_obs = np.full(Y.shape[1], n)

    def get_results(self) -> dict:
        """
        Returns a dictionary of results.
        """
        return {
            "coefficients": self.coefficients,
            "fitted": self.fitted,
            "residual_variance": self.residual_variance,
            "df_residual": self.df_residual,
            "n_obs": self.n_obs,
            "xtx_inv": self.xtx_inv,
        }
