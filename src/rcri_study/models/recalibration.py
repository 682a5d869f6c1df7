"""
Logistic recalibration of an existing risk score.

Fits a binomial GLM of the observed outcome on the score's log-odds:

- INTERCEPT_AND_SLOPE: y ~ a + b * logit(p), new p = sigmoid(a + b * logit(p))
- INTERCEPT_ONLY:      y ~ a + offset(logit(p)), new p = sigmoid(logit(p) + a)

Reference:
    Steyerberg (2019). Clinical Prediction Models (2nd ed.), Chapter 20.
"""

import logging
import threading
import warnings
from dataclasses import dataclass
from enum import Enum

import numpy as np
import pandas as pd
import statsmodels.api as sm
from statsmodels.tools.sm_exceptions import ConvergenceWarning, PerfectSeparationWarning

from rcri_study.data.records import binary_outcome
from rcri_study.data.schema import PROBABILITY_COL, VALIDATION_EVAL
from rcri_study.errors import RecalibrationError
from rcri_study.models.calibration import clamp_probability, logit, sigmoid

logger = logging.getLogger(__name__)


class RecalibrationMode(str, Enum):
    NONE = "NONE"
    INTERCEPT_ONLY = "INTERCEPT_ONLY"
    INTERCEPT_AND_SLOPE = "INTERCEPT_AND_SLOPE"


@dataclass(frozen=True)
class RecalibrationFit:
    """
    Coefficients of a recalibration fit.

    Attributes:
        intercept: Fitted intercept on the log-odds scale
        slope: Fitted slope (1.0 unless mode is INTERCEPT_AND_SLOPE)
        mode: Recalibration mode that produced the fit
        n: Number of predictions used for the fit
    """

    intercept: float
    slope: float
    mode: RecalibrationMode
    n: int = 0

    def evaluation_rows(self, analysis_id: str) -> list[dict]:
        """Rows appended to the evaluation table (intercept, plus gradient for slope fits)."""
        rows = [
            {
                "analysis_id": analysis_id,
                "eval": VALIDATION_EVAL,
                "metric": "intercept",
                "value": self.intercept,
            }
        ]
        if self.mode == RecalibrationMode.INTERCEPT_AND_SLOPE:
            rows.append(
                {
                    "analysis_id": analysis_id,
                    "eval": VALIDATION_EVAL,
                    "metric": "gradient",
                    "value": self.slope,
                }
            )
        return rows

    def to_dict(self) -> dict:
        return {
            "intercept": self.intercept,
            "slope": self.slope,
            "mode": self.mode.value,
            "n": self.n,
        }


IDENTITY_FIT = RecalibrationFit(intercept=0.0, slope=1.0, mode=RecalibrationMode.NONE)

_FIT_LOCK = threading.Lock()


def _check_fit(result, y: np.ndarray, mode: RecalibrationMode) -> None:
    """
    Reject a GLM fit that did not converge or perfectly predicts the outcome.

    Does not rely on the warnings filter, so a separated fit is rejected even
    when statsmodels only warned about it.
    """
    params = np.asarray(result.params, dtype=float)
    bse = np.asarray(result.bse, dtype=float)
    if not getattr(result, "converged", True):
        raise RecalibrationError(f"{mode.value} recalibration did not converge")
    if not (np.all(np.isfinite(params)) and np.all(np.isfinite(bse))):
        raise RecalibrationError(
            f"{mode.value} recalibration did not converge: non-finite coefficients"
        )
    if np.allclose(np.asarray(result.mu, dtype=float), y):
        raise RecalibrationError(
            f"{mode.value} recalibration failed: perfect separation, coefficients not identified"
        )


def fit_recalibration(
    predictions: pd.DataFrame,
    mode: RecalibrationMode | str,
    max_iter: int = 100,
) -> RecalibrationFit:
    """
    Fit a recalibration model to observed outcomes.

    Args:
        predictions: Prediction frame (probability, outcome_count)
        mode: Recalibration mode
        max_iter: Maximum IRLS iterations

    Returns:
        RecalibrationFit (identity fit for mode NONE)

    Raises:
        RecalibrationError: If the outcome is degenerate, the slope is not
            identifiable, or the fit fails to converge
    """
    mode = RecalibrationMode(mode)
    if mode == RecalibrationMode.NONE:
        return IDENTITY_FIT

    y = binary_outcome(predictions)
    n = len(y)
    if n == 0:
        raise RecalibrationError("Cannot recalibrate an empty prediction set")
    if len(np.unique(y)) < 2:
        raise RecalibrationError(
            f"Cannot recalibrate: all {n} outcomes are identical ({int(y[0])})"
        )

    lp = logit(predictions[PROBABILITY_COL].to_numpy(dtype=float))

    if mode == RecalibrationMode.INTERCEPT_AND_SLOPE:
        if np.ptp(lp) == 0:
            raise RecalibrationError(
                "Cannot fit a recalibration slope: all predicted probabilities are equal"
            )
        # Single covariate: (quasi-)complete separation means the classes do
        # not overlap on the log-odds scale, and the slope MLE does not exist
        lp_pos, lp_neg = lp[y == 1], lp[y == 0]
        if lp_pos.min() >= lp_neg.max() or lp_pos.max() <= lp_neg.min():
            raise RecalibrationError(
                f"{mode.value} recalibration failed: outcomes are perfectly separated "
                "by the predicted risk"
            )
        model = sm.GLM(y, sm.add_constant(lp, has_constant="add"), family=sm.families.Binomial())
    else:
        model = sm.GLM(y, np.ones((n, 1)), family=sm.families.Binomial(), offset=lp)

    # catch_warnings swaps the process-wide filter list; serialize fits so
    # concurrent analyses cannot restore each other's filters mid-fit.
    with _FIT_LOCK, warnings.catch_warnings():
        warnings.simplefilter("error", PerfectSeparationWarning)
        warnings.simplefilter("error", ConvergenceWarning)
        try:
            result = model.fit(maxiter=max_iter)
        except (
            PerfectSeparationWarning,
            ConvergenceWarning,
            np.linalg.LinAlgError,
            ValueError,
        ) as e:
            raise RecalibrationError(f"{mode.value} recalibration failed: {e}") from e

    _check_fit(result, y, mode)
    params = np.asarray(result.params, dtype=float)

    intercept = float(params[0])
    slope = float(params[1]) if mode == RecalibrationMode.INTERCEPT_AND_SLOPE else 1.0

    logger.debug(f"{mode.value} recalibration: intercept={intercept:.4f}, slope={slope:.4f}")
    return RecalibrationFit(intercept=intercept, slope=slope, mode=mode, n=n)


def apply_recalibration(fit: RecalibrationFit, predictions: pd.DataFrame) -> pd.DataFrame:
    """
    Remap probabilities with a recalibration fit.

    Returns a new frame; outcomes and identifiers are unchanged. Probabilities
    are clamped before the logit, so the identity fit returns the clamped input.
    """
    out = predictions.copy()
    p = clamp_probability(predictions[PROBABILITY_COL].to_numpy(dtype=float))
    out[PROBABILITY_COL] = sigmoid(fit.intercept + fit.slope * logit(p))
    return out


def recalibrate(
    predictions: pd.DataFrame,
    mode: RecalibrationMode | str,
    max_iter: int = 100,
) -> tuple[RecalibrationFit, pd.DataFrame]:
    """Fit and apply in one step."""
    fit = fit_recalibration(predictions, mode, max_iter=max_iter)
    return fit, apply_recalibration(fit, predictions)
