"""
Tests for models.point_score (PointScoreModel).

Coverage areas:
- Point totals from long-format covariates
- Points-to-probability mapping (between, below and above table entries)
- Scoring a population into a prediction frame
- Weights and serialization
"""

import numpy as np
import pandas as pd
import pytest

from conftest import make_raw_data
from rcri_study.config.schema import CovariatePoints, ModelSettings
from rcri_study.data.schema import PREDICTION_COLUMNS
from rcri_study.errors import ExtractionError
from rcri_study.models.calibration import EPSILON
from rcri_study.models.point_score import PointScoreModel


@pytest.fixture
def three_point_model():
    settings = ModelSettings(
        model_id="three",
        covariate_points=(
            CovariatePoints(covariate_id=11, covariate_name="a", points=1),
            CovariatePoints(covariate_id=12, covariate_name="b", points=2),
        ),
        probability_map=((0, 0.05), (1, 0.1), (3, 0.3)),
    )
    return PointScoreModel(settings)


def _population(n, outcome_rows=()):
    row_ids = np.arange(1, n + 1)
    return pd.DataFrame(
        {
            "row_id": row_ids,
            "subject_id": row_ids,
            "outcome_count": [1 if r in outcome_rows else 0 for r in row_ids],
        }
    )


def test_total_points(three_point_model):
    covariates = pd.DataFrame(
        {
            "row_id": [1, 1, 2, 3],
            "covariate_id": [11, 12, 12, 99],
            "covariate_value": [1.0, 1.0, 1.0, 1.0],
        }
    )
    totals = three_point_model.total_points(covariates, [1, 2, 3, 4])

    # Covariate 99 is not in the model; row 4 has no covariates
    assert totals.tolist() == [3.0, 2.0, 0.0, 0.0]


@pytest.mark.parametrize(
    "points,expected",
    [(0, 0.05), (1, 0.1), (2, 0.1), (3, 0.3), (7, 0.3), (-1, 0.05)],
)
def test_probability_for_points(three_point_model, points, expected):
    assert three_point_model.probability_for_points([points])[0] == pytest.approx(expected)


def test_score_toy_model(study_settings):
    model = PointScoreModel(study_settings.model("toy"))
    raw = make_raw_data(10, outcome_rows=[1, 2], covariate_rows=[1, 2, 3])
    predictions = model.score(raw, _population(10, outcome_rows=[1, 2]))

    assert list(predictions.columns) == PREDICTION_COLUMNS + ["points"]
    assert predictions["points"].tolist() == [1, 1, 1] + [0] * 7
    np.testing.assert_allclose(predictions["probability"], [0.4] * 3 + [0.1] * 7)
    assert predictions["outcome_count"].sum() == 2
    assert predictions["sex"].notna().all()


def test_score_clamps_boundary_probabilities():
    settings = ModelSettings(
        model_id="edge",
        covariate_points=(CovariatePoints(covariate_id=101456, points=1),),
        probability_map=((0, 0.0), (1, 1.0)),
    )
    raw = make_raw_data(4, covariate_rows=[1, 2])
    predictions = PointScoreModel(settings).score(raw, _population(4))

    p = predictions["probability"].to_numpy()
    assert np.all((p > 0) & (p < 1))
    np.testing.assert_allclose(p, [1 - EPSILON, 1 - EPSILON, EPSILON, EPSILON])


def test_score_requires_patient_attributes(study_settings):
    model = PointScoreModel(study_settings.model("toy"))
    raw = make_raw_data(3)
    raw.patient_attributes = raw.patient_attributes.iloc[:2]

    with pytest.raises(ExtractionError, match="1 population rows"):
        model.score(raw, _population(3))


def test_weights(three_point_model):
    weights = three_point_model.weights()
    assert weights.columns.tolist() == ["covariate_id", "points"]
    assert dict(zip(weights["covariate_id"], weights["points"])) == {11: 1.0, 12: 2.0}


def test_to_dict(three_point_model):
    model_dict = three_point_model.to_dict()
    assert model_dict["name"] == "three"
    assert model_dict["probability_map"] == [[0.0, 0.05], [1.0, 0.1], [3.0, 0.3]]
    assert len(model_dict["covariate_points"]) == 2
