"""
Discrimination metrics for binary risk predictions.

This module computes ranking-based and overall performance metrics:
- AUROC (Area Under ROC Curve) with a 95% confidence interval
- AUPRC (Precision-Recall Area Under Curve)
- Brier score and scaled Brier score

Single-class inputs leave discrimination undefined; the metrics return NaN
rather than raising.

References:
    - Hanley & McNeil (1982). The meaning and use of the area under a ROC curve.
    - Steyerberg et al. (2010). Assessing the performance of prediction models.
"""

import warnings

import numpy as np
from sklearn.metrics import average_precision_score, brier_score_loss, roc_auc_score

from rcri_study.metrics.bootstrap import stratified_bootstrap_ci


def _validate_binary_labels(y_true: np.ndarray, metric_name: str) -> bool:
    """
    Validate that y_true contains both positive and negative classes.

    Warns:
        UserWarning if only one class is present
    """
    unique_classes = np.unique(y_true)
    if len(unique_classes) < 2:
        warnings.warn(
            f"{metric_name} requires both classes (0 and 1) in y_true, "
            f"but only found {unique_classes.tolist()}. Returning NaN.",
            UserWarning,
            stacklevel=3,
        )
        return False
    return True


def has_both_classes(y_true: np.ndarray) -> bool:
    """True when y_true holds at least one 0 and one 1."""
    return len(np.unique(np.asarray(y_true).astype(int))) == 2


def auroc(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    """
    Compute Area Under the ROC Curve (AUROC).

    Returns:
        AUROC in [0.0, 1.0], or NaN if only one class is present
            - 1.0: Perfect discrimination
            - 0.5: No discrimination (e.g. a constant score)

    Examples:
        >>> y_true = np.array([0, 0, 1, 1])
        >>> y_pred = np.array([0.1, 0.4, 0.6, 0.9])
        >>> auroc(y_true, y_pred)
        1.0
    """
    y_true = np.asarray(y_true).astype(int)
    y_pred = np.asarray(y_pred).astype(float)

    if not _validate_binary_labels(y_true, "AUROC"):
        return np.nan

    return float(roc_auc_score(y_true, y_pred))


def auroc_hanley_mcneil_ci(auc: float, n_pos: int, n_neg: int, z: float = 1.959964) -> tuple[float, float]:
    """
    Normal-approximation 95% CI for AUROC using the Hanley-McNeil standard error.

    Args:
        auc: Point estimate of AUROC
        n_pos: Number of cases
        n_neg: Number of controls
        z: Normal quantile for the interval (default: 95%)

    Returns:
        (lower, upper), clipped to [0, 1]; (NaN, NaN) if undefined
    """
    if not np.isfinite(auc) or n_pos < 1 or n_neg < 1:
        return np.nan, np.nan

    q1 = auc / (2.0 - auc)
    q2 = 2.0 * auc**2 / (1.0 + auc)
    var = (
        auc * (1.0 - auc)
        + (n_pos - 1) * (q1 - auc**2)
        + (n_neg - 1) * (q2 - auc**2)
    ) / (n_pos * n_neg)
    se = float(np.sqrt(max(var, 0.0)))
    return float(max(0.0, auc - z * se)), float(min(1.0, auc + z * se))


def auroc_with_ci(
    y_true: np.ndarray,
    y_pred: np.ndarray,
    n_boot: int = 0,
    seed: int = 0,
) -> tuple[float, float, float]:
    """
    AUROC with 95% confidence interval.

    Uses the stratified bootstrap when n_boot > 0, otherwise the
    Hanley-McNeil approximation.

    Returns:
        (auc, lower, upper); all NaN when only one class is present
    """
    y_true = np.asarray(y_true).astype(int)
    y_pred = np.asarray(y_pred).astype(float)

    if not has_both_classes(y_true):
        return np.nan, np.nan, np.nan

    auc = float(roc_auc_score(y_true, y_pred))
    n_pos = int(np.sum(y_true == 1))
    n_neg = int(np.sum(y_true == 0))

    if n_boot > 0 and n_pos >= 2 and n_neg >= 2:
        lower, upper = stratified_bootstrap_ci(
            y_true, y_pred, roc_auc_score, n_boot=n_boot, seed=seed
        )
    else:
        lower, upper = auroc_hanley_mcneil_ci(auc, n_pos, n_neg)

    return auc, lower, upper


def auprc(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    """
    Compute Precision-Recall Area Under Curve (average precision).

    Returns:
        AUPRC in [0.0, 1.0], or NaN if only one class is present
    """
    y_true = np.asarray(y_true).astype(int)
    y_pred = np.asarray(y_pred).astype(float)

    if not _validate_binary_labels(y_true, "AUPRC"):
        return np.nan

    return float(average_precision_score(y_true, y_pred))


def compute_brier_score(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    """
    Compute Brier score (mean squared error of predicted probabilities).

    Returns:
        Brier score in [0.0, 1.0], NaN for empty input
            - 0.25: constant 0.5 prediction on a balanced population
    """
    y_true = np.asarray(y_true).astype(int)
    y_pred = np.asarray(y_pred).astype(float)
    if len(y_true) == 0:
        return np.nan
    return float(brier_score_loss(y_true, y_pred))


def compute_scaled_brier_score(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    """
    Brier score scaled by its maximum for a non-informative model.

    Scaled Brier = 1 - Brier / (prevalence * (1 - prevalence)); NaN when
    only one class is present.
    """
    y_true = np.asarray(y_true).astype(int)
    if not has_both_classes(y_true):
        return np.nan
    prevalence = float(np.mean(y_true))
    brier_max = prevalence * (1.0 - prevalence)
    return float(1.0 - compute_brier_score(y_true, y_pred) / brier_max)


def compute_discrimination_metrics(
    y_true: np.ndarray,
    y_pred: np.ndarray,
    n_boot: int = 0,
    seed: int = 0,
) -> dict[str, float]:
    """
    Compute all discrimination metrics in one pass.

    Returns:
        Dictionary with AUROC, AUROC_95_lower, AUROC_95_upper, AUPRC
        (all NaN when only one class is present)

    Examples:
        >>> y_true = np.array([0, 0, 1, 1])
        >>> y_pred = np.array([0.1, 0.4, 0.6, 0.9])
        >>> compute_discrimination_metrics(y_true, y_pred)["AUROC"]
        1.0
    """
    y_true = np.asarray(y_true).astype(int)
    y_pred = np.asarray(y_pred).astype(float)

    if not has_both_classes(y_true):
        return {
            "AUROC": np.nan,
            "AUROC_95_lower": np.nan,
            "AUROC_95_upper": np.nan,
            "AUPRC": np.nan,
        }

    auc, lower, upper = auroc_with_ci(y_true, y_pred, n_boot=n_boot, seed=seed)
    return {
        "AUROC": auc,
        "AUROC_95_lower": lower,
        "AUROC_95_upper": upper,
        "AUPRC": float(average_precision_score(y_true, y_pred)),
    }
