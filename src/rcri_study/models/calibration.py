"""
Probability-scale utilities and calibration metrics.

This module provides:
- Probability clamping and the logit/sigmoid transforms used by recalibration
- Calibration metrics (intercept, slope, calibration-in-the-large, ECE,
  E-statistics)
"""

import numpy as np
from scipy.special import expit
from sklearn.linear_model import LogisticRegression
from statsmodels.nonparametric.smoothers_lowess import lowess

# Replacement for exact 0/1 probabilities before taking log-odds
EPSILON = 1e-15


def clamp_probability(p):
    """
    Replace exact 0 with EPSILON and exact 1 with 1 - EPSILON.

    Every other value passes through unchanged, so clamping is idempotent.

    Args:
        p: Probability (scalar or array-like) in [0, 1]

    Returns:
        Clamped probability with the same shape as the input (float for scalars)
    """
    arr = np.asarray(p, dtype=float)
    out = np.where(arr == 0.0, EPSILON, np.where(arr == 1.0, 1.0 - EPSILON, arr))
    if out.ndim == 0:
        return float(out)
    return out


def logit(p):
    """
    Log-odds of a probability, ln(p / (1 - p)).

    The input is clamped first, so the result is finite for every p in [0, 1].

    Raises:
        ValueError: If any value is NaN or outside [0, 1]
    """
    arr = np.asarray(p, dtype=float)
    if arr.size and (not np.all(np.isfinite(arr)) or arr.min() < 0.0 or arr.max() > 1.0):
        raise ValueError("Probabilities must be finite and within [0, 1]")
    q = np.asarray(clamp_probability(arr), dtype=float)
    out = np.log(q / (1.0 - q))
    if out.ndim == 0:
        return float(out)
    return out


def sigmoid(x):
    """Inverse of logit."""
    out = expit(np.asarray(x, dtype=float))
    if np.ndim(out) == 0:
        return float(out)
    return out


def calibration_intercept_slope(y_true: np.ndarray, p: np.ndarray) -> tuple[float, float]:
    """
    Compute calibration intercept and slope using logistic regression on logit scale.

    - Intercept ~0 indicates probabilities match observed proportions
    - Slope ~1 indicates predictions are neither too extreme nor too modest

    Reference:
        Van Calster et al. (2016). Calibration of risk prediction models.
        Medical Decision Making.

    Args:
        y_true: True binary labels (0/1)
        p: Predicted probabilities

    Returns:
        (intercept, slope) tuple, (NaN, NaN) when only one class is present
        or the predictions carry no spread
    """
    y = np.asarray(y_true).astype(float)
    p = np.asarray(p).astype(float)

    mask = np.isfinite(p) & np.isfinite(y)
    y = y[mask].astype(int)
    p = p[mask]

    if len(np.unique(y)) < 2:
        return np.nan, np.nan

    log_odds = logit(p)
    if np.ptp(log_odds) == 0:
        return np.nan, np.nan

    lr = LogisticRegression(C=np.inf, solver="lbfgs", max_iter=1000)
    lr.fit(log_odds.reshape(-1, 1), y)
    return float(lr.intercept_[0]), float(lr.coef_[0][0])


def calibration_in_large(y_true: np.ndarray, p: np.ndarray) -> dict[str, float]:
    """
    Mean predicted risk against observed outcome rate.

    Returns:
        Dict with mean_predicted_risk, observed_risk and their difference
    """
    y = np.asarray(y_true).astype(float)
    p = np.asarray(p).astype(float)
    if len(y) == 0:
        return {"mean_predicted_risk": np.nan, "observed_risk": np.nan, "difference": np.nan}
    mean_pred = float(np.mean(p))
    observed = float(np.mean(y))
    return {
        "mean_predicted_risk": mean_pred,
        "observed_risk": observed,
        "difference": mean_pred - observed,
    }


def expected_calibration_error(y_true: np.ndarray, y_pred: np.ndarray, n_bins: int = 10) -> float:
    """
    Compute Expected Calibration Error (ECE).

    Args:
        y_true: True binary labels
        y_pred: Predicted probabilities
        n_bins: Number of equal-width probability bins

    Returns:
        ECE value (lower is better calibrated)
    """
    y = np.asarray(y_true).astype(float)
    p = np.asarray(y_pred).astype(float)

    mask = np.isfinite(p) & np.isfinite(y)
    y = y[mask].astype(int)
    p = p[mask]

    if len(y) == 0:
        return np.nan

    bin_edges = np.linspace(0.0, 1.0, n_bins + 1)
    ece = 0.0

    for i in range(n_bins):
        in_bin = (p >= bin_edges[i]) & (p < bin_edges[i + 1])
        if i == n_bins - 1:
            in_bin = in_bin | (p == 1.0)

        prop_in_bin = np.mean(in_bin)

        if prop_in_bin > 0:
            avg_pred = np.mean(p[in_bin])
            avg_true = np.mean(y[in_bin])
            ece += np.abs(avg_pred - avg_true) * prop_in_bin

    return float(ece)


def e_statistics(y_true: np.ndarray, p: np.ndarray, frac: float = 2 / 3) -> dict[str, float]:
    """
    E-statistics: absolute difference between a lowess-smoothed observed risk
    and the predicted risk, summarized by mean, 90th percentile and maximum.

    Reference:
        Austin & Steyerberg (2019). The Integrated Calibration Index (ICI) and
        related metrics for quantifying the calibration of logistic regression
        models. Statistics in Medicine.
    """
    y = np.asarray(y_true).astype(float)
    p = np.asarray(p).astype(float)
    nan_stats = {"Emean": np.nan, "E90": np.nan, "Emax": np.nan}

    if len(y) < 3 or np.ptp(p) == 0:
        return nan_stats

    smoothed = lowess(y, p, frac=frac, it=0, delta=0.01 * np.ptp(p), return_sorted=False)
    diff = np.abs(np.asarray(smoothed) - p)
    diff = diff[np.isfinite(diff)]
    if len(diff) == 0:
        return nan_stats

    return {
        "Emean": float(np.mean(diff)),
        "E90": float(np.quantile(diff, 0.9)),
        "Emax": float(np.max(diff)),
    }
