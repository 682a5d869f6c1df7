"""Risk model scoring, probability transforms and recalibration."""

from rcri_study.models.calibration import clamp_probability, logit, sigmoid
from rcri_study.models.point_score import PointScoreModel
from rcri_study.models.recalibration import (
    RecalibrationFit,
    RecalibrationMode,
    apply_recalibration,
    fit_recalibration,
    recalibrate,
)

__all__ = [
    "PointScoreModel",
    "RecalibrationFit",
    "RecalibrationMode",
    "apply_recalibration",
    "clamp_probability",
    "fit_recalibration",
    "logit",
    "recalibrate",
    "sigmoid",
]
