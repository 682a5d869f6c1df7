"""
Tests for models.recalibration module.

Coverage areas:
- Identity fit round trip
- Intercept-only and intercept+slope fits
- Evaluation rows appended per mode
- Failure modes raising RecalibrationError
- Separation detected under threaded fan-out
"""

from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest
from joblib import Parallel, delayed

from conftest import make_mock_predictions
from rcri_study.data.schema import PROBABILITY_COL
from rcri_study.errors import RecalibrationError
from rcri_study.models import recalibration
from rcri_study.models.calibration import clamp_probability, logit
from rcri_study.models.recalibration import (
    IDENTITY_FIT,
    RecalibrationFit,
    RecalibrationMode,
    _check_fit,
    apply_recalibration,
    fit_recalibration,
    recalibrate,
)


@pytest.fixture
def overpredicted():
    """Predictions twice the true risk on the odds scale."""
    rng = np.random.default_rng(7)
    true_p = rng.uniform(0.05, 0.5, size=3000)
    y = rng.binomial(1, true_p)
    shifted = 1 / (1 + np.exp(-(logit(true_p) + np.log(2.0))))
    return make_mock_predictions(shifted, y)


# ============================================================================
# Apply
# ============================================================================


def test_identity_fit_returns_clamped_input():
    preds = make_mock_predictions([0.0, 0.2, 0.7, 1.0], [0, 0, 1, 1])
    out = apply_recalibration(IDENTITY_FIT, preds)
    np.testing.assert_allclose(
        out[PROBABILITY_COL].to_numpy(),
        clamp_probability(preds[PROBABILITY_COL].to_numpy()),
        rtol=1e-12,
    )


def test_apply_keeps_identifiers_and_outcomes():
    preds = make_mock_predictions([0.1, 0.2, 0.3], [0, 1, 0])
    fit = RecalibrationFit(intercept=-0.5, slope=1.2, mode=RecalibrationMode.INTERCEPT_AND_SLOPE)
    out = apply_recalibration(fit, preds)

    pd.testing.assert_frame_equal(
        out.drop(columns=PROBABILITY_COL), preds.drop(columns=PROBABILITY_COL)
    )
    assert not out[PROBABILITY_COL].equals(preds[PROBABILITY_COL])


def test_apply_does_not_modify_input():
    preds = make_mock_predictions([0.1, 0.2, 0.3], [0, 1, 0])
    before = preds.copy()
    apply_recalibration(RecalibrationFit(1.0, 1.0, RecalibrationMode.INTERCEPT_ONLY), preds)
    pd.testing.assert_frame_equal(preds, before)


# ============================================================================
# Fit
# ============================================================================


def test_mode_none_returns_identity():
    preds = make_mock_predictions([0.1, 0.2], [0, 1])
    assert fit_recalibration(preds, RecalibrationMode.NONE) is IDENTITY_FIT


def test_intercept_only_recovers_shift(overpredicted):
    fit = fit_recalibration(overpredicted, RecalibrationMode.INTERCEPT_ONLY)
    assert fit.slope == 1.0
    assert fit.intercept == pytest.approx(-np.log(2.0), abs=0.15)
    assert fit.n == len(overpredicted)


def test_intercept_and_slope_fit(overpredicted):
    fit = fit_recalibration(overpredicted, "INTERCEPT_AND_SLOPE")
    assert fit.mode == RecalibrationMode.INTERCEPT_AND_SLOPE
    assert fit.slope == pytest.approx(1.0, abs=0.2)
    assert fit.intercept < 0


def test_intercept_only_matches_observed_rate(overpredicted):
    """Intercept-only recalibration makes mean predicted risk close to observed risk."""
    _, out = recalibrate(overpredicted, RecalibrationMode.INTERCEPT_ONLY)
    observed = (overpredicted["outcome_count"] > 0).mean()
    assert out[PROBABILITY_COL].mean() == pytest.approx(observed, abs=0.01)


def test_all_outcomes_identical_raises():
    preds = make_mock_predictions([0.1, 0.2, 0.3], [0, 0, 0])
    with pytest.raises(RecalibrationError, match="identical"):
        fit_recalibration(preds, RecalibrationMode.INTERCEPT_ONLY)


def test_empty_predictions_raise():
    preds = make_mock_predictions([], [])
    with pytest.raises(RecalibrationError):
        fit_recalibration(preds, RecalibrationMode.INTERCEPT_AND_SLOPE)


def test_slope_needs_spread_in_predictions():
    preds = make_mock_predictions([0.3] * 10, [0, 1] * 5)
    with pytest.raises(RecalibrationError, match="slope"):
        fit_recalibration(preds, RecalibrationMode.INTERCEPT_AND_SLOPE)


def _separated():
    return make_mock_predictions(
        [0.1, 0.15, 0.2, 0.3, 0.6, 0.7, 0.8, 0.9], [0, 0, 0, 0, 1, 1, 1, 1]
    )


def _fit_error(predictions, mode):
    try:
        fit_recalibration(predictions, mode)
    except RecalibrationError as e:
        return e
    return None


def test_separated_outcomes_raise():
    with pytest.raises(RecalibrationError, match="separated"):
        fit_recalibration(_separated(), RecalibrationMode.INTERCEPT_AND_SLOPE)


def test_quasi_separated_outcomes_raise():
    # Classes touch at a single score value only
    preds = make_mock_predictions([0.1, 0.2, 0.4, 0.4, 0.6, 0.7], [0, 0, 0, 1, 1, 1])
    with pytest.raises(RecalibrationError, match="separated"):
        fit_recalibration(preds, RecalibrationMode.INTERCEPT_AND_SLOPE)


def test_separation_detected_without_warning_filter(monkeypatch):
    # Filters left as they are, e.g. restored by another thread mid-fit
    monkeypatch.setattr(recalibration.warnings, "simplefilter", lambda *args, **kwargs: None)
    with pytest.raises(RecalibrationError):
        fit_recalibration(_separated(), RecalibrationMode.INTERCEPT_AND_SLOPE)


def test_threaded_fits_all_detect_separation(overpredicted):
    jobs = [(_separated(), RecalibrationMode.INTERCEPT_AND_SLOPE)] * 4
    jobs += [(overpredicted, RecalibrationMode.INTERCEPT_AND_SLOPE)] * 2

    errors = Parallel(n_jobs=2, prefer="threads")(
        delayed(_fit_error)(preds, mode) for preds, mode in jobs
    )

    assert all(isinstance(e, RecalibrationError) for e in errors[:4])
    assert errors[4:] == [None, None]


class TestCheckFit:
    @staticmethod
    def _result(**overrides):
        fields = {
            "params": np.array([0.2, 0.9]),
            "bse": np.array([0.1, 0.05]),
            "mu": np.array([0.3, 0.6, 0.2]),
            "converged": True,
        }
        fields.update(overrides)
        return SimpleNamespace(**fields)

    def test_accepts_regular_fit(self):
        _check_fit(self._result(), np.array([0, 1, 0]), RecalibrationMode.INTERCEPT_AND_SLOPE)

    def test_rejects_unconverged(self):
        with pytest.raises(RecalibrationError, match="converge"):
            _check_fit(
                self._result(converged=False),
                np.array([0, 1, 0]),
                RecalibrationMode.INTERCEPT_ONLY,
            )

    def test_rejects_non_finite_standard_errors(self):
        with pytest.raises(RecalibrationError, match="non-finite"):
            _check_fit(
                self._result(bse=np.array([np.inf, 0.1])),
                np.array([0, 1, 0]),
                RecalibrationMode.INTERCEPT_AND_SLOPE,
            )

    def test_rejects_perfect_prediction(self):
        with pytest.raises(RecalibrationError, match="separation"):
            _check_fit(
                self._result(mu=np.array([1e-12, 1.0 - 1e-12, 1e-12])),
                np.array([0, 1, 0]),
                RecalibrationMode.INTERCEPT_AND_SLOPE,
            )


# ============================================================================
# Evaluation rows
# ============================================================================


def test_intercept_only_rows():
    fit = RecalibrationFit(0.3, 1.0, RecalibrationMode.INTERCEPT_ONLY)
    rows = fit.evaluation_rows("Analysis_1")
    assert [r["metric"] for r in rows] == ["intercept"]
    assert rows[0]["analysis_id"] == "Analysis_1"


def test_intercept_and_slope_rows():
    fit = RecalibrationFit(0.3, 0.8, RecalibrationMode.INTERCEPT_AND_SLOPE)
    rows = fit.evaluation_rows("Analysis_2")
    assert [r["metric"] for r in rows] == ["intercept", "gradient"]
    assert rows[1]["value"] == 0.8


def test_fit_is_immutable():
    with pytest.raises(AttributeError):
        IDENTITY_FIT.intercept = 1.0
