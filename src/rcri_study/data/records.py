"""
Prediction records and their tabular form.

Predictions travel through the pipeline as a pandas DataFrame with the
PREDICTION_COLUMNS layout; PredictionRecord is the per-patient view of one row.
"""

from dataclasses import asdict, dataclass

import numpy as np
import pandas as pd

from rcri_study.data.schema import (
    AGE_COL,
    FEMALE_CONCEPT_ID,
    OUTCOME_COUNT_COL,
    PREDICTION_COLUMNS,
    PROBABILITY_COL,
    ROW_ID_COL,
    SEX_COL,
    SUBJECT_ID_COL,
)


@dataclass(frozen=True)
class PredictionRecord:
    """One patient in one analysis."""

    subject_id: int
    probability: float
    outcome_count: int
    age_years: float
    sex: int
    row_id: int | None = None

    @property
    def has_outcome(self) -> bool:
        return self.outcome_count > 0

    @property
    def is_male(self) -> bool:
        return self.sex != FEMALE_CONCEPT_ID


def predictions_from_records(records: list[PredictionRecord]) -> pd.DataFrame:
    """Build a prediction frame from records (row_id defaults to position)."""
    rows = []
    for i, record in enumerate(records):
        row = asdict(record)
        if row["row_id"] is None:
            row["row_id"] = i
        rows.append(row)
    if not rows:
        return empty_predictions()
    return pd.DataFrame(rows)[PREDICTION_COLUMNS]


def records_from_predictions(predictions: pd.DataFrame) -> list[PredictionRecord]:
    """Convert a prediction frame back into records."""
    return [
        PredictionRecord(
            subject_id=int(row[SUBJECT_ID_COL]),
            probability=float(row[PROBABILITY_COL]),
            outcome_count=int(row[OUTCOME_COUNT_COL]),
            age_years=float(row[AGE_COL]),
            sex=int(row[SEX_COL]),
            row_id=int(row[ROW_ID_COL]),
        )
        for _, row in predictions.iterrows()
    ]


def empty_predictions() -> pd.DataFrame:
    """Prediction frame with no rows and the standard columns."""
    return pd.DataFrame({col: pd.Series(dtype=float) for col in PREDICTION_COLUMNS})


def validate_predictions(predictions: pd.DataFrame) -> pd.DataFrame:
    """
    Check a prediction frame before evaluation.

    Args:
        predictions: Frame with at least probability and outcome_count columns

    Returns:
        The same frame (for chaining)

    Raises:
        ValueError: If required columns are missing, probabilities are not
            finite values in [0, 1], or outcome counts are negative
    """
    required = [PROBABILITY_COL, OUTCOME_COUNT_COL]
    missing = [c for c in required if c not in predictions.columns]
    if missing:
        raise ValueError(
            f"Prediction frame missing columns {missing}. "
            f"Available columns: {predictions.columns.tolist()}"
        )

    p = predictions[PROBABILITY_COL].to_numpy(dtype=float)
    if len(p) and (not np.all(np.isfinite(p)) or p.min() < 0.0 or p.max() > 1.0):
        raise ValueError("Predicted probabilities must be finite and within [0, 1]")

    counts = predictions[OUTCOME_COUNT_COL].to_numpy(dtype=float)
    if len(counts) and counts.min() < 0:
        raise ValueError("outcome_count must be non-negative")

    return predictions


def binary_outcome(predictions: pd.DataFrame) -> np.ndarray:
    """1 where outcome_count > 0, else 0."""
    return (predictions[OUTCOME_COUNT_COL].to_numpy(dtype=float) > 0).astype(int)
