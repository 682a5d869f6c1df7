"""Data layer: schema constants, prediction records, cohorts, extraction and populations."""

from rcri_study.data.records import (
    PredictionRecord,
    predictions_from_records,
    records_from_predictions,
    validate_predictions,
)

__all__ = [
    "PredictionRecord",
    "predictions_from_records",
    "records_from_predictions",
    "validate_predictions",
]
