"""
Decision Curve Analysis (DCA) for clinical utility assessment.

Implements net benefit over a sweep of threshold probabilities, alongside the
treat-all and treat-none reference strategies.

Reference:
    Vickers AJ, Elkin EB (2006). Decision curve analysis: a novel method
    for evaluating prediction models. Med Decis Making, 26(6):565-574.
"""

import logging
from typing import Any

import numpy as np
import pandas as pd

from rcri_study.data.schema import OUTCOME_COUNT_COL, PROBABILITY_COL

logger = logging.getLogger(__name__)

NET_BENEFIT_COLUMNS = [
    "threshold",
    "net_benefit",
    "net_benefit_all",
    "net_benefit_none",
    "tp",
    "fp",
    "n_treat",
]


# =============================================================================
# Core DCA Computations
# =============================================================================


def net_benefit(
    y_true: np.ndarray,
    y_pred_prob: np.ndarray,
    threshold: float,
) -> float:
    """
    Compute net benefit at a single threshold.

    Net Benefit = (TP/n) - (FP/n) * (threshold / (1 - threshold))

    A patient is classified positive when their probability is >= threshold.
    At threshold 0 the harm term vanishes and net benefit equals prevalence.

    Args:
        y_true: Binary labels (0/1)
        y_pred_prob: Predicted probabilities
        threshold: Classification threshold in [0, 1)

    Returns:
        Net benefit value (can be negative); NaN for thresholds outside
        [0, 1) or empty input
    """
    y = np.asarray(y_true).astype(int)
    p = np.asarray(y_pred_prob).astype(float)
    t = float(threshold)

    if t < 0.0 or t >= 1.0 or len(y) == 0:
        return np.nan

    tp = int(((p >= t) & (y == 1)).sum())
    fp = int(((p >= t) & (y == 0)).sum())
    n = len(y)

    odds = t / (1.0 - t)
    return (tp / n) - (fp / n) * odds


def net_benefit_treat_all(
    prevalence: float,
    threshold: float,
) -> float:
    """
    Compute net benefit of the "treat all" strategy.

    NB_all = prevalence - (1 - prevalence) * (threshold / (1 - threshold))

    Returns:
        Net benefit of treating all patients; NaN for thresholds outside [0, 1)
    """
    if threshold < 0.0 or threshold >= 1.0:
        return np.nan

    odds = threshold / (1.0 - threshold)
    return prevalence - (1.0 - prevalence) * odds


def generate_thresholds(xstart: float, xstop: float, xby: float) -> np.ndarray:
    """
    Inclusive threshold grid xstart, xstart + xby, ..., up to xstop.

    Thresholds at or above 1 are dropped (net benefit is undefined there).

    Args:
        xstart: First threshold (>= 0)
        xstop: Last threshold (inclusive when on the grid)
        xby: Step size (> 0)

    Returns:
        Strictly increasing array of thresholds

    Raises:
        ValueError: If xby <= 0, xstart < 0, or xstop < xstart
    """
    xstart = float(xstart)
    xstop = float(xstop)
    xby = float(xby)

    if xby <= 0:
        raise ValueError(f"xby must be positive, got {xby}")
    if xstart < 0:
        raise ValueError(f"xstart must be >= 0, got {xstart}")
    if xstop < xstart:
        raise ValueError(f"xstop ({xstop}) is below xstart ({xstart})")

    # Tolerance keeps an on-grid xstop despite floating point division error
    n = int(np.floor((xstop - xstart) / xby + 1e-9)) + 1
    thresholds = np.round(xstart + xby * np.arange(n), 12)
    return thresholds[thresholds < 1.0]


def net_benefit_curve(
    predictions: pd.DataFrame,
    outcome_col: str = OUTCOME_COUNT_COL,
    predictor_col: str = PROBABILITY_COL,
    xstart: float = 0.001,
    xstop: float | None = None,
    xby: float = 0.001,
) -> pd.DataFrame:
    """
    Compute the decision curve of a predictor.

    Args:
        predictions: Frame holding the outcome and predictor columns
        outcome_col: Outcome column; values > 0 count as an observed outcome
        predictor_col: Predicted probability column
        xstart: First threshold
        xstop: Last threshold (default: maximum observed probability)
        xby: Threshold step

    Returns:
        DataFrame with columns:
            - threshold: Threshold probability (ascending)
            - net_benefit: Net benefit of the predictor
            - net_benefit_all: Treat-all net benefit
            - net_benefit_none: Treat-none net benefit (always 0)
            - tp, fp: Positive classifications with/without the outcome
            - n_treat: Number classified positive
        Empty (with these columns) when predictions are empty.
    """
    if len(predictions) == 0:
        return pd.DataFrame(columns=NET_BENEFIT_COLUMNS)

    y = (predictions[outcome_col].to_numpy(dtype=float) > 0).astype(int)
    p = predictions[predictor_col].to_numpy(dtype=float)
    n = len(y)

    if xstop is None:
        xstop = float(np.max(p))

    thresholds = generate_thresholds(xstart, xstop, xby)
    prevalence = float(np.mean(y))

    results = []
    for t in thresholds:
        positive = p >= t
        tp = int(np.sum(positive & (y == 1)))
        fp = int(np.sum(positive & (y == 0)))

        odds = t / (1.0 - t)
        results.append(
            {
                "threshold": float(t),
                "net_benefit": (tp / n) - (fp / n) * odds,
                "net_benefit_all": prevalence - (1.0 - prevalence) * odds,
                "net_benefit_none": 0.0,
                "tp": tp,
                "fp": fp,
                "n_treat": tp + fp,
            }
        )

    return pd.DataFrame(results, columns=NET_BENEFIT_COLUMNS)


# =============================================================================
# DCA Summary
# =============================================================================


def summarize_curve(curve: pd.DataFrame) -> dict[str, Any]:
    """
    Summarize where the predictor beats the reference strategies.

    Args:
        curve: DataFrame from net_benefit_curve()

    Returns:
        Dictionary with:
            - dca_computed: Whether the curve has any rows
            - n_thresholds: Number of thresholds evaluated
            - threshold_range: Min-max threshold range
            - model_beats_all_from/to: Range where model > treat-all
            - model_beats_none_from/to: Range where model > treat-none
            - integrated_nb_model: Area under the model curve
    """
    if curve.empty:
        return {"dca_computed": False}

    summary = {
        "dca_computed": True,
        "n_thresholds": len(curve),
        "threshold_range": f"{curve['threshold'].min():.3f}-{curve['threshold'].max():.3f}",
    }

    beats_all = curve[curve["net_benefit"] > curve["net_benefit_all"]]
    if len(beats_all) > 0:
        summary["model_beats_all_from"] = float(beats_all["threshold"].min())
        summary["model_beats_all_to"] = float(beats_all["threshold"].max())
    else:
        summary["model_beats_all_from"] = np.nan
        summary["model_beats_all_to"] = np.nan

    beats_none = curve[curve["net_benefit"] > 0]
    if len(beats_none) > 0:
        summary["model_beats_none_from"] = float(beats_none["threshold"].min())
        summary["model_beats_none_to"] = float(beats_none["threshold"].max())
    else:
        summary["model_beats_none_from"] = np.nan
        summary["model_beats_none_to"] = np.nan

    if len(curve) > 1:
        summary["integrated_nb_model"] = float(
            np.trapezoid(curve["net_benefit"].to_numpy(), curve["threshold"].to_numpy())
        )

    return summary
