"""
Tests for study.analyses (analysis enumeration and analysis_settings.csv).
"""

import pandas as pd
import pytest

from rcri_study.config.schema import AnalysisSpec
from rcri_study.errors import ConfigurationError
from rcri_study.study.analyses import enumerate_analyses, save_analysis_settings


def test_run_all_is_target_outcome_model_product(study_settings):
    analyses = enumerate_analyses(None, study_settings)

    # Targets 1 and 3, outcome 2, model toy
    assert [a.analysis_id for a in analyses] == ["Analysis_1", "Analysis_2"]
    assert [(a.target_id, a.outcome_id, a.model_id) for a in analyses] == [
        (1, 2, "toy"),
        (3, 2, "toy"),
    ]
    assert analyses[1].target_name == "EmptyTarget"
    assert analyses[0].outcome_name == "Outcome"


def test_explicit_specs_keep_order(study_settings):
    specs = [
        AnalysisSpec(target_id=3, outcome_id=2, model="toy_model.csv"),
        AnalysisSpec(target_id=1, outcome_id=2, model="toy"),
    ]
    analyses = enumerate_analyses(specs, study_settings)

    assert [a.target_id for a in analyses] == [3, 1]
    assert [a.analysis_id for a in analyses] == ["Analysis_1", "Analysis_2"]
    # File-name style model references resolve to the model id
    assert analyses[0].model_id == "toy"


def test_unknown_cohort(study_settings):
    with pytest.raises(ConfigurationError, match="Cohort 99"):
        enumerate_analyses([AnalysisSpec(target_id=99, outcome_id=2, model="toy")], study_settings)


def test_unknown_model(study_settings):
    with pytest.raises(ConfigurationError, match="Unknown model"):
        enumerate_analyses([AnalysisSpec(target_id=1, outcome_id=2, model="nope")], study_settings)


def test_run_all_without_models(study_settings):
    empty = study_settings.model_copy(update={"models": {}})
    with pytest.raises(ConfigurationError, match="Cannot run all"):
        enumerate_analyses(None, empty)


def test_save_analysis_settings(study_settings, tmp_path):
    analyses = enumerate_analyses(None, study_settings)
    path = save_analysis_settings(analyses, tmp_path / "out" / "analysis_settings.csv")

    frame = pd.read_csv(path)
    assert frame.columns.tolist() == [
        "analysis_id",
        "target_id",
        "target_name",
        "outcome_id",
        "outcome_name",
        "model_id",
    ]
    assert frame["analysis_id"].tolist() == ["Analysis_1", "Analysis_2"]
