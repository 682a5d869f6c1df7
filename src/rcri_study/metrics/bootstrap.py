"""
Stratified bootstrap confidence intervals for binary classification metrics.

Resampling is stratified so every replicate keeps the case/control counts of
the original population.
"""

from collections.abc import Callable

import numpy as np


def _safe_metric(metric_fn: Callable, y: np.ndarray, p: np.ndarray) -> float:
    """Compute metric, returning NaN when the metric raises ValueError."""
    try:
        return metric_fn(y, p)
    except ValueError:
        return np.nan


def _percentile_ci(vals: list[float], alpha: float = 0.05) -> tuple[float, float]:
    """Compute CI using simple percentile method."""
    lower_pct = 100 * (alpha / 2)
    upper_pct = 100 * (1 - alpha / 2)
    return (float(np.percentile(vals, lower_pct)), float(np.percentile(vals, upper_pct)))


def stratified_bootstrap_ci(
    y_true: np.ndarray,
    y_pred: np.ndarray,
    metric_fn: Callable,
    n_boot: int = 1000,
    seed: int = 0,
    min_valid_frac: float = 0.1,
) -> tuple[float, float]:
    """
    Compute a stratified bootstrap 95% percentile CI for a metric.

    If fewer than `max(20, n_boot * min_valid_frac)` valid replicates are
    obtained, returns (NaN, NaN).

    Args:
        y_true: True binary labels (0/1)
        y_pred: Predicted probabilities [0, 1]
        metric_fn: Function that takes (y_true, y_pred) and returns a scalar
        n_boot: Number of bootstrap iterations (default: 1000)
        seed: Random seed for reproducibility (default: 0)
        min_valid_frac: Minimum fraction of valid samples required (default: 0.1)

    Returns:
        Tuple of (lower_bound, upper_bound)

    Raises:
        ValueError: If array lengths differ or there are fewer than 2 cases
            or 2 controls

    Examples:
        >>> from sklearn.metrics import roc_auc_score
        >>> y_true = np.array([0, 0, 1, 1, 1, 0, 1, 0])
        >>> y_pred = np.array([0.1, 0.2, 0.7, 0.8, 0.9, 0.3, 0.6, 0.4])
        >>> ci_lower, ci_upper = stratified_bootstrap_ci(
        ...     y_true, y_pred, roc_auc_score, n_boot=100, seed=42
        ... )
        >>> 0 <= ci_lower <= ci_upper <= 1
        True
    """
    y_true = np.asarray(y_true)
    y_pred = np.asarray(y_pred)

    if len(y_true) != len(y_pred):
        raise ValueError(
            f"Length mismatch: y_true has {len(y_true)} elements, "
            f"y_pred has {len(y_pred)} elements"
        )

    pos = np.where(y_true == 1)[0]
    neg = np.where(y_true == 0)[0]

    if len(pos) < 2 or len(neg) < 2:
        raise ValueError(
            f"Insufficient samples for stratified bootstrap: "
            f"{len(pos)} cases, {len(neg)} controls (need >= 2 each)"
        )

    rng = np.random.RandomState(seed)
    vals = []
    for _ in range(n_boot):
        i_pos = rng.choice(pos, size=len(pos), replace=True)
        i_neg = rng.choice(neg, size=len(neg), replace=True)
        idx = np.concatenate([i_pos, i_neg])
        v = _safe_metric(metric_fn, y_true[idx], y_pred[idx])
        if np.isfinite(v):
            vals.append(v)

    min_valid = max(20, int(n_boot * min_valid_frac))
    if len(vals) < min_valid:
        return (np.nan, np.nan)

    return _percentile_ci(vals)
