"""
Performance evaluation of a scored population.

Provides:
- evaluate_predictions: discrimination and calibration statistics plus
  threshold, calibration-bin and demographic summaries
- reformat_performance: flatten the nested statistics into an EvaluationTable
- EvaluationTable: append-only (analysis_id, eval, metric) -> value table
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from rcri_study.data.records import binary_outcome, validate_predictions
from rcri_study.data.schema import (
    AGE_COL,
    EVALUATION_COLUMNS,
    FEMALE_CONCEPT_ID,
    PROBABILITY_COL,
    SEX_COL,
    VALIDATION_EVAL,
)
from rcri_study.errors import EvaluationError
from rcri_study.metrics.discrimination import (
    compute_brier_score,
    compute_discrimination_metrics,
    compute_scaled_brier_score,
    has_both_classes,
)
from rcri_study.models.calibration import (
    calibration_in_large,
    calibration_intercept_slope,
    e_statistics,
    expected_calibration_error,
)

logger = logging.getLogger(__name__)

_KEY_COLUMNS = ["analysis_id", "eval", "metric"]


@dataclass
class PerformanceEvaluation:
    """Nested evaluation output for one prediction set."""

    evaluation_statistics: dict[str, float]
    threshold_summary: pd.DataFrame
    calibration_summary: pd.DataFrame
    demographic_summary: pd.DataFrame
    eval: str = VALIDATION_EVAL


class EvaluationTable:
    """
    Flat evaluation statistics keyed by (analysis_id, eval, metric).

    The table is append-only: append() and concat() return new tables and
    existing keys can never be overwritten.
    """

    def __init__(self, frame: pd.DataFrame | None = None):
        if frame is None:
            frame = pd.DataFrame(columns=EVALUATION_COLUMNS)
        missing = [c for c in EVALUATION_COLUMNS if c not in frame.columns]
        if missing:
            raise ValueError(f"Evaluation table missing columns: {missing}")
        frame = frame[EVALUATION_COLUMNS].reset_index(drop=True)
        if frame.duplicated(subset=_KEY_COLUMNS).any():
            dupes = frame.loc[frame.duplicated(subset=_KEY_COLUMNS), "metric"].tolist()
            raise ValueError(f"Duplicate evaluation keys: {dupes}")
        self._frame = frame

    def __len__(self) -> int:
        return len(self._frame)

    def __contains__(self, key: tuple[str, str, str]) -> bool:
        analysis_id, eval_name, metric = key
        mask = (
            (self._frame["analysis_id"] == analysis_id)
            & (self._frame["eval"] == eval_name)
            & (self._frame["metric"] == metric)
        )
        return bool(mask.any())

    def append(self, rows: list[dict]) -> "EvaluationTable":
        """Return a new table with rows added after the existing ones."""
        if not rows:
            return EvaluationTable(self._frame.copy())
        extra = pd.DataFrame(rows, columns=EVALUATION_COLUMNS)
        return EvaluationTable(pd.concat([self._frame, extra], ignore_index=True))

    @classmethod
    def concat(cls, tables: list["EvaluationTable"]) -> "EvaluationTable":
        """Combine tables from several analyses."""
        frames = [t.to_frame() for t in tables if len(t)]
        if not frames:
            return cls()
        return cls(pd.concat(frames, ignore_index=True))

    def value(self, metric: str, analysis_id: str | None = None, eval: str = VALIDATION_EVAL) -> float:
        """
        Look up one statistic.

        Raises:
            KeyError: If no row matches
        """
        mask = (self._frame["metric"] == metric) & (self._frame["eval"] == eval)
        if analysis_id is not None:
            mask &= self._frame["analysis_id"] == analysis_id
        matches = self._frame.loc[mask, "value"]
        if matches.empty:
            raise KeyError(f"No evaluation row for metric={metric}, analysis_id={analysis_id}")
        return float(matches.iloc[0])

    def metrics(self) -> list[str]:
        return self._frame["metric"].tolist()

    def to_frame(self) -> pd.DataFrame:
        return self._frame.copy()


# ============================================================================
# Summaries
# ============================================================================


def compute_threshold_summary(y: np.ndarray, p: np.ndarray, max_thresholds: int = 100) -> pd.DataFrame:
    """
    Confusion-matrix statistics at each distinct predicted probability.

    Patients with probability >= threshold are classified positive. When
    there are more than max_thresholds distinct values, evenly spaced
    quantiles of the distinct values are used.
    """
    columns = [
        "prediction_threshold",
        "positive_count",
        "true_count",
        "false_count",
        "true_positive_count",
        "false_positive_count",
        "true_negative_count",
        "false_negative_count",
        "sensitivity",
        "specificity",
        "positive_predictive_value",
        "negative_predictive_value",
    ]
    if len(y) == 0:
        return pd.DataFrame(columns=columns)

    thresholds = np.unique(p)
    if len(thresholds) > max_thresholds:
        thresholds = np.unique(np.quantile(thresholds, np.linspace(0, 1, max_thresholds)))

    n_true = int(np.sum(y == 1))
    n_false = int(np.sum(y == 0))

    rows = []
    for t in thresholds[::-1]:
        positive = p >= t
        tp = int(np.sum(positive & (y == 1)))
        fp = int(np.sum(positive & (y == 0)))
        tn = n_false - fp
        fn = n_true - tp
        rows.append(
            {
                "prediction_threshold": float(t),
                "positive_count": tp + fp,
                "true_count": n_true,
                "false_count": n_false,
                "true_positive_count": tp,
                "false_positive_count": fp,
                "true_negative_count": tn,
                "false_negative_count": fn,
                "sensitivity": tp / n_true if n_true else np.nan,
                "specificity": tn / n_false if n_false else np.nan,
                "positive_predictive_value": tp / (tp + fp) if (tp + fp) else np.nan,
                "negative_predictive_value": tn / (tn + fn) if (tn + fn) else np.nan,
            }
        )
    return pd.DataFrame(rows, columns=columns)


def compute_calibration_summary(y: np.ndarray, p: np.ndarray, n_bins: int = 10) -> pd.DataFrame:
    """
    Observed against predicted risk by quantile bin of predicted probability.

    Tied probabilities (typical for point scores) collapse into fewer bins.
    """
    columns = [
        "prediction_bin",
        "person_count",
        "outcome_count",
        "min_predicted_probability",
        "max_predicted_probability",
        "average_predicted_probability",
        "observed_incidence",
    ]
    if len(y) == 0:
        return pd.DataFrame(columns=columns)

    frame = pd.DataFrame({"y": y, "p": p})
    rank = frame["p"].rank(method="dense").to_numpy(dtype=int) - 1
    n_unique = int(rank.max()) + 1
    if n_unique <= n_bins:
        frame["bin"] = rank
    else:
        frame["bin"] = (rank * n_bins) // n_unique

    grouped = frame.groupby("bin", sort=True)
    summary = pd.DataFrame(
        {
            "prediction_bin": np.arange(1, grouped.ngroups + 1),
            "person_count": grouped.size().to_numpy(),
            "outcome_count": grouped["y"].sum().to_numpy(),
            "min_predicted_probability": grouped["p"].min().to_numpy(),
            "max_predicted_probability": grouped["p"].max().to_numpy(),
            "average_predicted_probability": grouped["p"].mean().to_numpy(),
            "observed_incidence": grouped["y"].mean().to_numpy(),
        }
    )
    return summary[columns]


def compute_demographic_summary(
    predictions: pd.DataFrame,
    y: np.ndarray,
    age_group_width: int = 5,
) -> pd.DataFrame:
    """Observed and predicted risk per age group and sex."""
    columns = [
        "age_group",
        "gender_group",
        "person_count",
        "outcome_count",
        "average_predicted_probability",
        "st_dev_predicted_probability",
        "observed_incidence",
    ]
    if AGE_COL not in predictions.columns or SEX_COL not in predictions.columns or len(y) == 0:
        return pd.DataFrame(columns=columns)

    age = predictions[AGE_COL].to_numpy(dtype=float)
    lower = (np.floor(age / age_group_width) * age_group_width).astype(int)
    frame = pd.DataFrame(
        {
            "age_group": [f"Age group: {lo}-{lo + age_group_width - 1}" for lo in lower],
            "gender_group": np.where(
                predictions[SEX_COL].to_numpy() == FEMALE_CONCEPT_ID, "Female", "Male"
            ),
            "y": y,
            "p": predictions[PROBABILITY_COL].to_numpy(dtype=float),
            "age_lower": lower,
        }
    )

    summary = (
        frame.groupby(["age_lower", "age_group", "gender_group"], sort=True)
        .agg(
            person_count=("y", "size"),
            outcome_count=("y", "sum"),
            average_predicted_probability=("p", "mean"),
            st_dev_predicted_probability=("p", "std"),
            observed_incidence=("y", "mean"),
        )
        .reset_index()
    )
    return summary[columns]


# ============================================================================
# Evaluation
# ============================================================================


def evaluate_predictions(
    predictions: pd.DataFrame,
    n_calibration_bins: int = 10,
    age_group_width: int = 5,
    n_boot: int = 0,
    seed: int = 0,
) -> PerformanceEvaluation:
    """
    Compute discrimination and calibration statistics for a prediction set.

    Degenerate outcome distributions (all outcomes identical) leave the
    discrimination and calibration statistics undefined (NaN) instead of
    failing.

    Args:
        predictions: Prediction frame
        n_calibration_bins: Number of quantile bins for the calibration summary
        age_group_width: Width in years of the demographic summary age groups
        n_boot: Bootstrap replicates for the AUROC CI (0 = Hanley-McNeil)
        seed: Bootstrap seed

    Returns:
        PerformanceEvaluation

    Raises:
        EvaluationError: If predictions are empty or malformed
    """
    try:
        validate_predictions(predictions)
    except ValueError as e:
        raise EvaluationError(f"Invalid predictions: {e}") from e

    if len(predictions) == 0:
        raise EvaluationError("Cannot evaluate an empty prediction set")

    y = binary_outcome(predictions)
    p = predictions[PROBABILITY_COL].to_numpy(dtype=float)

    if not has_both_classes(y):
        logger.warning(
            f"All {len(y)} outcomes are identical; discrimination statistics are undefined"
        )

    stats: dict[str, float] = {
        "population_size": float(len(y)),
        "outcome_count": float(np.sum(y)),
    }
    stats.update(compute_discrimination_metrics(y, p, n_boot=n_boot, seed=seed))
    stats["brier_score"] = compute_brier_score(y, p)
    stats["brier_score_scaled"] = compute_scaled_brier_score(y, p)

    intercept, slope = calibration_intercept_slope(y, p)
    stats["calibration_intercept"] = intercept
    stats["calibration_slope"] = slope

    citl = calibration_in_large(y, p)
    stats["mean_predicted_risk"] = citl["mean_predicted_risk"]
    stats["observed_risk"] = citl["observed_risk"]

    stats.update(e_statistics(y, p))
    stats["ECE"] = expected_calibration_error(y, p, n_bins=n_calibration_bins)

    return PerformanceEvaluation(
        evaluation_statistics=stats,
        threshold_summary=compute_threshold_summary(y, p),
        calibration_summary=compute_calibration_summary(y, p, n_bins=n_calibration_bins),
        demographic_summary=compute_demographic_summary(predictions, y, age_group_width),
    )


def reformat_performance(evaluation: PerformanceEvaluation, analysis_id: str) -> EvaluationTable:
    """Flatten evaluation statistics into rows tagged with the analysis id."""
    rows = [
        {
            "analysis_id": analysis_id,
            "eval": evaluation.eval,
            "metric": metric,
            "value": float(value),
        }
        for metric, value in evaluation.evaluation_statistics.items()
    ]
    return EvaluationTable(pd.DataFrame(rows, columns=EVALUATION_COLUMNS))


def _tag(frame: pd.DataFrame, analysis_id: str, eval_name: str) -> pd.DataFrame:
    tagged = frame.copy()
    tagged.insert(0, "eval", eval_name)
    tagged.insert(0, "analysis_id", analysis_id)
    return tagged


def tag_summaries(evaluation: PerformanceEvaluation, analysis_id: str) -> dict[str, pd.DataFrame]:
    """Summary tables with analysis_id and eval columns prepended."""
    return {
        "threshold_summary": _tag(evaluation.threshold_summary, analysis_id, evaluation.eval),
        "calibration_summary": _tag(evaluation.calibration_summary, analysis_id, evaluation.eval),
        "demographic_summary": _tag(evaluation.demographic_summary, analysis_id, evaluation.eval),
    }
