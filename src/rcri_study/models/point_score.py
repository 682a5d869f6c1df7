"""
Fixed point-score risk model.

The model awards points per covariate; a subject's total maps to a predicted
risk through the model's points table. Nothing is learned from data.
"""

import logging
from typing import TYPE_CHECKING, Protocol

import numpy as np
import pandas as pd

from rcri_study.data.schema import (
    AGE_COL,
    COVARIATE_ID_COL,
    COVARIATE_VALUE_COL,
    OUTCOME_COUNT_COL,
    POINTS_COL,
    PREDICTION_COLUMNS,
    PROBABILITY_COL,
    ROW_ID_COL,
    SEX_COL,
    SUBJECT_ID_COL,
)
from rcri_study.errors import ExtractionError
from rcri_study.models.calibration import clamp_probability

if TYPE_CHECKING:
    from rcri_study.config.schema import ModelSettings
    from rcri_study.data.extraction import RawData

logger = logging.getLogger(__name__)


class ModelProvider(Protocol):
    model_id: str

    def score(self, raw_data: "RawData", population: pd.DataFrame) -> pd.DataFrame: ...

    def weights(self) -> pd.DataFrame: ...


class PointScoreModel:
    """
    Point-score model built from ModelSettings.

    Totals between two table entries use the lower entry; totals below the
    table use the first entry and totals above it use the last.
    """

    def __init__(self, settings: "ModelSettings"):
        self.settings = settings
        self.model_id = settings.model_id
        self._points = {c.covariate_id: c.points for c in settings.covariate_points}
        table = np.asarray(settings.probability_map, dtype=float)
        self._table_points = table[:, 0]
        self._table_probability = table[:, 1]

    def __repr__(self) -> str:
        return f"PointScoreModel(model_id={self.model_id!r}, covariates={len(self._points)})"

    def weights(self) -> pd.DataFrame:
        """Covariate contribution weights (covariate_id, points)."""
        return pd.DataFrame(
            {
                COVARIATE_ID_COL: list(self._points.keys()),
                POINTS_COL: list(self._points.values()),
            }
        )

    def total_points(self, covariates: pd.DataFrame, row_ids) -> pd.Series:
        """Sum of covariate_value * points per row_id (0 for rows without model covariates)."""
        weight = covariates[COVARIATE_ID_COL].map(self._points)
        contributions = (covariates[COVARIATE_VALUE_COL].astype(float) * weight).fillna(0.0)
        totals = contributions.groupby(covariates[ROW_ID_COL]).sum()
        return totals.reindex(pd.Index(row_ids, name=ROW_ID_COL), fill_value=0.0)

    def probability_for_points(self, totals) -> np.ndarray:
        """Map point totals to probabilities through the points table."""
        totals = np.asarray(totals, dtype=float)
        idx = np.searchsorted(self._table_points, totals, side="right") - 1
        idx = np.clip(idx, 0, len(self._table_points) - 1)
        return self._table_probability[idx]

    def score(self, raw_data: "RawData", population: pd.DataFrame) -> pd.DataFrame:
        """
        Score every row of the study population.

        Args:
            raw_data: Extracted covariates and patient attributes
            population: Study population (row_id, subject_id, outcome_count)

        Returns:
            Prediction frame with PREDICTION_COLUMNS plus points; probabilities
            are clamped away from exact 0 and 1

        Raises:
            ExtractionError: If population rows have no patient attributes
        """
        scored = population[[ROW_ID_COL, SUBJECT_ID_COL, OUTCOME_COUNT_COL]].merge(
            raw_data.patient_attributes[[ROW_ID_COL, AGE_COL, SEX_COL]], on=ROW_ID_COL, how="left"
        )
        if scored[[AGE_COL, SEX_COL]].isna().any().any():
            n_missing = int(scored[[AGE_COL, SEX_COL]].isna().any(axis=1).sum())
            raise ExtractionError(f"{n_missing} population rows have no age/sex attributes")

        totals = self.total_points(raw_data.covariates, scored[ROW_ID_COL])
        scored[POINTS_COL] = totals.to_numpy()
        scored[PROBABILITY_COL] = clamp_probability(self.probability_for_points(scored[POINTS_COL]))

        logger.debug(
            f"Scored {len(scored)} rows with {self.model_id}: "
            f"points range {scored[POINTS_COL].min():g}-{scored[POINTS_COL].max():g}"
        )
        return scored[PREDICTION_COLUMNS + [POINTS_COL]]

    def to_dict(self) -> dict:
        return {
            "model": "existing model",
            "name": self.model_id,
            "covariate_points": [c.model_dump() for c in self.settings.covariate_points],
            "probability_map": [list(pair) for pair in self.settings.probability_map],
            "covariate_settings": self.settings.covariate_settings.model_dump(mode="json"),
        }
