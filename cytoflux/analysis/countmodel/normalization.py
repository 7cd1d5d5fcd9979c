"""Library-size normalization factors for cluster counts (TMM)."""

from __future__ import annotations

from typing import Optional

import numpy as np
from scipy.stats import rankdata

from cytoflux.utils.exceptions import ConfigurationError, InsufficientDataError

NORM_METHODS = ("TMM", "none")


def _tmm_factor(
    obs: np.ndarray,
    ref: np.ndarray,
    lib_obs: float,
    lib_ref: float,
    logratio_trim: float,
    sum_trim: float,
    do_weighting: bool,
    a_cutoff: float,
) -> float:
    """Trimmed mean of M-values of one sample against the reference profile."""
    with np.errstate(divide="ignore", invalid="ignore"):
        log_r = np.log2((obs / lib_obs) / (ref / lib_ref))
        abs_e = (np.log2(obs / lib_obs) + np.log2(ref / lib_ref)) / 2
        v = (lib_obs - obs) / lib_obs / obs + (lib_ref - ref) / lib_ref / ref

    fin = np.isfinite(log_r) & np.isfinite(abs_e) & (abs_e > a_cutoff)
    log_r, abs_e, v = log_r[fin], abs_e[fin], v[fin]

    if log_r.size == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = log_r.size
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = rankdata(log_r)
    rank_e = rankdata(abs_e)
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)
    if not keep.any():
        return 1.0

    if do_weighting:
        f = np.sum(log_r[keep] / v[keep]) / np.sum(1 / v[keep])
    else:
        f = np.mean(log_r[keep])

    if not np.isfinite(f):
        f = 0.0
    return float(2 ** f)


def _reference_profile(counts: np.ndarray, lib_size: np.ndarray, ref: str) -> tuple[np.ndarray, float]:
    if ref == "pseudo":
        # geometric mean over samples; any zero count gives 0 and drops the feature
        with np.errstate(divide="ignore"):
            profile = np.exp(np.mean(np.log(counts), axis=0))
        return profile, float(profile.sum())
    if ref == "sample":
        # sample whose upper quartile is closest to the mean upper quartile
        f75 = np.quantile(counts / lib_size[:, None], 0.75, axis=1)
        i = int(np.argmin(np.abs(f75 - f75.mean())))
        return counts[i], float(lib_size[i])
    raise ConfigurationError(f"Unknown TMM reference '{ref}'. Use 'pseudo' or 'sample'.")


def calc_norm_factors(
    counts: np.ndarray,
    lib_size: Optional[np.ndarray] = None,
    method: str = "TMM",
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    do_weighting: bool = True,
    a_cutoff: float = -1e10,
    ref: str = "pseudo",
) -> np.ndarray:
    """
    Normalization factors per sample, rescaled to a geometric mean of 1.

    Parameters:
    - counts: (n_samples x n_features) integer counts
    - lib_size: per-sample totals; row sums when None
    - method: "TMM" or "none" (all ones)
    - ref: "pseudo" (geometric-mean profile) or "sample" (upper-quartile reference sample)
    """
    if method not in NORM_METHODS:
        raise ConfigurationError(f"Unknown normalization method '{method}'. Use one of {NORM_METHODS}.")
    if not (0 <= logratio_trim < 0.5 and 0 <= sum_trim < 0.5):
        raise ConfigurationError("TMM trims must lie in [0, 0.5).")

    counts = np.asarray(counts, dtype=np.float64)
    lib_size = counts.sum(axis=1) if lib_size is None else np.asarray(lib_size, dtype=np.float64)
    if (lib_size <= 0).any():
        raise InsufficientDataError(
            f"{int((lib_size <= 0).sum())} sample(s) have a zero library size."
        )

    n_samples = counts.shape[0]
    if method == "none":
        return np.ones(n_samples)

    # features absent everywhere carry no information
    counts = counts[:, counts.sum(axis=0) > 0]

    ref_counts, lib_ref = _reference_profile(counts, lib_size, ref)
    if lib_ref <= 0:
        # every feature has a zero in some sample: no common reference
        return np.ones(n_samples)

    factors = np.array([
        _tmm_factor(counts[i], ref_counts, lib_size[i], lib_ref,
                    logratio_trim, sum_trim, do_weighting, a_cutoff)
        for i in range(n_samples)
    ])
    return factors / np.exp(np.mean(np.log(factors)))
