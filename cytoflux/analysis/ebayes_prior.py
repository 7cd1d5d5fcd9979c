import numpy as np
from scipy.special import polygamma, digamma


def squeeze_var_input_filter(s2: np.ndarray, df) -> tuple[np.ndarray, np.ndarray]:
    # If df is scalar, broadcast it to shape of s2
    if np.isscalar(df) or np.ndim(df) == 0:
        df = np.full_like(s2, df, dtype=np.float64)

    mask = np.isfinite(s2) & (s2 > 0) & np.isfinite(df) & (df > 0)
    return s2[mask], df[mask]


def trigamma_inverse(y, tol=1e-8):
    # Initial guess
    if y > 1e7:
        x = 1.0 / np.sqrt(y)
    elif y < 1e-6:
        x = 1.0 / y
    else:
        x = 0.5 + 1.0 / y

    # Newton-Raphson method
    for _ in range(50):
        tri = polygamma(1, x)
        delta = tri * (1 - tri / y) / polygamma(2, x)
        x = x + delta
        if abs(-delta / x) < tol:
            return x
    return x


def _log_scaled_variances(s2: np.ndarray, df1: np.ndarray) -> np.ndarray:
    # Avoid zeros like limma does
    m = np.median(s2)
    if m <= 0:
        m = 1.0
    x = np.maximum(s2, 1e-5 * m)
    return np.log(x) - digamma(df1 / 2.0) + np.log(df1 / 2.0)


def fit_fdist(s2: np.ndarray, df1) -> tuple[float, float]:
    """
    Moment estimation of the scaled-F prior on residual variances
    (limma fitFDist, no covariate).

    Returns (s20, d0): prior variance and prior degrees of freedom.
    d0 = inf when the observed spread is no larger than sampling noise.
    """
    s2 = np.asarray(s2, dtype=np.float64)
    x, d = squeeze_var_input_filter(s2, np.broadcast_to(np.asarray(df1, dtype=np.float64), s2.shape).copy())

    if x.size == 0:
        return np.nan, np.nan
    if x.size == 1:
        return float(x[0]), 0.0

    e = _log_scaled_variances(x, d)
    emean = np.mean(e)
    evar = np.var(e, ddof=1)

    evar_adj = evar - np.mean(polygamma(1, d / 2.0))

    if evar_adj > 0:
        df2 = 2 * trigamma_inverse(evar_adj)
        s20 = np.exp(emean + digamma(df2 / 2.0) - np.log(df2 / 2.0))
    else:
        df2 = np.inf
        s20 = np.exp(emean)

    return float(s20), float(df2)


def natural_spline_basis(x: np.ndarray, df: int) -> np.ndarray:
    """
    Natural cubic spline basis with intercept (truncated power form, knots at
    quantiles of x). Returns an (n, df) matrix.
    """
    x = np.asarray(x, dtype=np.float64)
    n = x.shape[0]
    n_internal = df - 2
    a, b = np.min(x), np.max(x)

    if n_internal <= 0 or a == b:
        return np.column_stack([np.ones(n), x])[:, :df]

    probs = np.linspace(0, 1, n_internal + 2)[1:-1]
    knots = np.sort(np.concatenate([[a], np.quantile(x, probs), [b]]))
    xi_last, xi_prev = knots[-1], knots[-2]

    def d(xi):
        return (np.maximum(x - xi, 0) ** 3 - np.maximum(x - xi_last, 0) ** 3) / (xi_last - xi)

    basis = np.zeros((n, df))
    basis[:, 0] = 1.0
    basis[:, 1] = x
    d_prev = d(xi_prev)
    for j in range(len(knots) - 2):
        basis[:, 2 + j] = d(knots[j]) - d_prev
    return basis


def fit_fdist_trend(s2: np.ndarray, df1, covariate: np.ndarray) -> tuple[np.ndarray, float]:
    """
    Scaled-F prior whose location follows a smooth trend in `covariate`
    (typically the average feature value). Log-variances are regressed on a
    natural spline basis; spline df grows with the number of features.

    Returns (s20 per feature, d0).
    """
    s2 = np.asarray(s2, dtype=np.float64)
    d = np.broadcast_to(np.asarray(df1, dtype=np.float64), s2.shape).copy()
    covariate = np.asarray(covariate, dtype=np.float64)
    n = s2.shape[0]

    splinedf = 1 + int(n >= 3) + int(n >= 6) + int(n >= 30)
    splinedf = min(splinedf, np.unique(covariate).size)
    if splinedf < 2:
        s20, d0 = fit_fdist(s2, d)
        return np.full(n, s20), d0

    e = _log_scaled_variances(s2, d)
    basis = natural_spline_basis(covariate, splinedf)
    coef, _, rank, _ = np.linalg.lstsq(basis, e, rcond=None)
    emean = basis @ coef
    resid = e - emean
    evar = np.sum(resid ** 2) / (n - rank) if n > rank else 0.0

    evar_adj = evar - np.mean(polygamma(1, d / 2.0))
    if evar_adj > 0:
        df2 = 2 * trigamma_inverse(evar_adj)
        s20 = np.exp(emean + digamma(df2 / 2.0) - np.log(df2 / 2.0))
    else:
        df2 = np.inf
        s20 = np.exp(emean)

    return s20, float(df2)
