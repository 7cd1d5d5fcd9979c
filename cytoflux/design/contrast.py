import numpy as np

from cytoflux.utils.exceptions import DimensionMismatchError
from cytoflux.utils.utils import log_time


@log_time("Apply Contrast")
def apply_contrast(fit_results, contrast):
    """
    Applies one contrast to fitted linear model results.

    Parameters:
    - fit_results: output of LinearModelFitter.get_results()
    - contrast: shape (p,) → p = design coefficients

    Returns:
    - estimates: (n_features,) contrast estimates cᵀβ
    - unscaled_sd: (n_features,) sqrt(cᵀ (XᵀX)⁻¹ c); per feature because
      features fitted on their non-missing rows have their own (XᵀX)⁻¹
    """
    B = fit_results["coefficients"]      # (n_features x p)
    XtX_inv = fit_results["xtx_inv"]     # (p x p) or (n_features x p x p)
    c = np.asarray(contrast, dtype=np.float64).ravel()

    if c.shape[0] != B.shape[1]:
        raise DimensionMismatchError(
            f"Contrast has length {c.shape[0]} but the fit has {B.shape[1]} coefficients"
        )

    estimates = B @ c

    if XtX_inv.ndim == 2:
        v = float(c @ XtX_inv @ c)
        unscaled_sd = np.full(B.shape[0], np.sqrt(v))
    else:
        v = np.einsum("i,fij,j->f", c, XtX_inv, c)
        unscaled_sd = np.sqrt(v)

    return estimates, unscaled_sd


def contrast_as_coef(design, contrast):
    """
    Reparametrize a design so that the contrast becomes a single coefficient.

    The contrast vector is QR-decomposed and the design rotated by Q; the first
    rotated column is divided by R[0, 0] so its coefficient equals cᵀβ exactly.
    Dropping that column gives the reduced model of a test of cᵀβ = 0.

    Returns:
    - dict with 'design' (rotated design) and 'coef' (column index of the contrast)
    """
    design = np.asarray(design, dtype=np.float64)
    contrast = np.asarray(contrast, dtype=np.float64).ravel()
    p = design.shape[1]

    if contrast.shape[0] != p:
        raise DimensionMismatchError(
            f"Contrast has length {contrast.shape[0]} but the design has {p} columns"
        )

    Q, R = np.linalg.qr(contrast.reshape(-1, 1), mode="complete")
    rotated = design @ Q
    rotated[:, 0] = rotated[:, 0] / R[0, 0]

    cols = list(range(1, p)) + [0]
    return {"design": rotated[:, cols], "coef": p - 1}


def reduced_design(design, contrast):
    """Design with the contrast direction removed (null model of the contrast test)."""
    reformed = contrast_as_coef(design, contrast)
    X = reformed["design"]
    return np.delete(X, reformed["coef"], axis=1)
