"""
Tests for config.settings (study settings files) and CovariateSettings.

Coverage areas:
- Shipped RCRI settings
- Cohort, custom covariate and model files
- ConfigurationError for malformed settings files
- CovariateSettings builder from standard feature names
- StudySettings lookups and immutability
"""

import pandas as pd
import pytest
from pydantic import ValidationError

from rcri_study.config.schema import CovariateSettings, normalize_model_id
from rcri_study.config.settings import (
    load_cohort_definitions,
    load_custom_covariates,
    load_model,
    load_model_settings,
    load_study_settings,
)
from rcri_study.errors import ConfigurationError

# ============================================================================
# Shipped settings
# ============================================================================


def test_packaged_rcri_settings():
    settings = load_study_settings()

    assert settings.target_ids == [1]
    assert settings.outcome_ids == [2]
    assert len(settings.custom_covariates) == 6
    assert list(settings.models) == ["rcri"]

    rcri = settings.model("rcri")
    assert len(rcri.covariate_points) == 6
    assert all(c.points == 1 for c in rcri.covariate_points)
    assert rcri.probability_map[0] == (0.0, 0.039)

    covariates = rcri.covariate_settings
    assert covariates.use_demographics_gender is True
    assert covariates.use_cohort_covariates is True
    assert covariates.use_demographics_age is False
    assert covariates.included_covariate_ids == (8507001, 8532001)


def test_every_shipped_cohort_has_a_template():
    settings = load_study_settings()
    sql_dir = settings.settings_dir / "sql"
    names = [c.name for c in settings.cohorts] + [c.cohort_name for c in settings.custom_covariates]
    for name in names:
        assert (sql_dir / f"{name}.sql").exists(), name


# ============================================================================
# Fixture settings
# ============================================================================


def test_fixture_settings(study_settings):
    assert study_settings.target_ids == [1, 3]
    assert study_settings.outcome_ids == [2]
    assert study_settings.custom_covariates[0].label == "Risk factor"

    toy = study_settings.model("toy")
    assert toy.covariate_ids == [101456]
    # No standard feature files: only the cohort covariates the model uses
    assert toy.covariate_settings.use_cohort_covariates is True
    assert toy.covariate_settings.use_demographics_gender is False


def test_model_lookup_accepts_file_names(study_settings):
    assert study_settings.model("toy_model.csv").model_id == "toy"
    assert normalize_model_id(" toy.csv ") == "toy"


def test_unknown_model(study_settings):
    with pytest.raises(ConfigurationError, match="Unknown model"):
        study_settings.model("grace")


def test_settings_are_immutable(study_settings):
    with pytest.raises(ValidationError):
        study_settings.cohorts = ()


def test_missing_type_column_means_target(tmp_path):
    pd.DataFrame({"cohortId": [5], "name": ["Only"]}).to_csv(
        tmp_path / "CohortsToCreate.csv", index=False
    )
    cohorts = load_cohort_definitions(tmp_path)
    assert cohorts[0].type == "target"


def test_missing_cohorts_file(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_cohort_definitions(tmp_path)


def test_no_custom_covariates_file(tmp_path):
    assert load_custom_covariates(tmp_path) == ()


def test_custom_covariates_missing_columns(settings_dir):
    pd.DataFrame({"id": [101], "cohortName": ["RiskFactor"]}).to_csv(
        settings_dir / "CustomCovariates.csv", index=False
    )
    with pytest.raises(ConfigurationError, match="atlasId"):
        load_study_settings(settings_dir)


def test_missing_settings_dir(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_study_settings(tmp_path / "nowhere")


# ============================================================================
# Model files
# ============================================================================


def test_probability_map_is_sorted(settings_dir):
    pd.DataFrame({"points": [1, 0], "probability": [0.4, 0.1]}).to_csv(
        settings_dir / "models" / "toy_probability.csv", index=False
    )
    model = load_model(settings_dir / "models", "toy")
    assert model.probability_map == ((0.0, 0.1), (1.0, 0.4))


def test_duplicate_point_totals_rejected(settings_dir):
    pd.DataFrame({"points": [0, 0], "probability": [0.1, 0.2]}).to_csv(
        settings_dir / "models" / "toy_probability.csv", index=False
    )
    with pytest.raises(ConfigurationError, match="duplicate"):
        load_model(settings_dir / "models", "toy")


def test_probability_outside_unit_interval_rejected(settings_dir):
    pd.DataFrame({"points": [0, 1], "probability": [0.1, 1.4]}).to_csv(
        settings_dir / "models" / "toy_probability.csv", index=False
    )
    with pytest.raises(ConfigurationError):
        load_model(settings_dir / "models", "toy")


def test_missing_probability_table(settings_dir):
    (settings_dir / "models" / "toy_probability.csv").unlink()
    with pytest.raises(ConfigurationError, match="probability table"):
        load_model_settings(settings_dir)


def test_no_models(tmp_path):
    (tmp_path / "models").mkdir()
    with pytest.raises(ConfigurationError, match="No \\*_model.csv"):
        load_model_settings(tmp_path)


def test_standard_features_loaded(settings_dir):
    models_dir = settings_dir / "models"
    pd.DataFrame({"x": ["useDemographicsGender", "useDemographicsAge"]}).to_csv(
        models_dir / "toy_standard_features.csv", index=False
    )
    pd.DataFrame({"x": [8507001, 1002]}).to_csv(
        models_dir / "toy_standard_features_include.csv", index=False
    )
    settings = load_model(models_dir, "toy").covariate_settings

    assert settings.use_demographics_gender is True
    assert settings.use_demographics_age is True
    assert settings.use_cohort_covariates is True
    assert settings.included_covariate_ids == (8507001, 1002)


def test_standard_features_need_include_file(settings_dir):
    pd.DataFrame({"x": ["useDemographicsGender"]}).to_csv(
        settings_dir / "models" / "toy_standard_features.csv", index=False
    )
    with pytest.raises(ConfigurationError, match="include"):
        load_model(settings_dir / "models", "toy")


def test_unknown_standard_feature_is_configuration_error(settings_dir):
    models_dir = settings_dir / "models"
    pd.DataFrame({"x": ["useConditionOccurrence"]}).to_csv(
        models_dir / "toy_standard_features.csv", index=False
    )
    pd.DataFrame({"x": [1]}).to_csv(models_dir / "toy_standard_features_include.csv", index=False)
    with pytest.raises(ConfigurationError, match="useConditionOccurrence"):
        load_model(models_dir, "toy")


# ============================================================================
# CovariateSettings
# ============================================================================


def test_covariate_settings_default_off():
    settings = CovariateSettings()
    assert settings.any_enabled is False
    assert settings.included_covariate_ids == ()
    assert settings.long_term_start_days == -365
    assert settings.end_days == 0


def test_from_feature_names_accepts_both_spellings():
    settings = CovariateSettings.from_feature_names(
        ["useDemographicsIndexYear", "use_demographics_age_group"], [2020006]
    )
    assert settings.use_demographics_index_year is True
    assert settings.use_demographics_age_group is True
    assert settings.any_enabled is True
    assert settings.included_covariate_ids == (2020006,)


def test_from_feature_names_passes_window():
    settings = CovariateSettings.from_feature_names([], long_term_start_days=-30)
    assert settings.long_term_start_days == -30


def test_covariate_window_validated():
    with pytest.raises(ValidationError):
        CovariateSettings(long_term_start_days=10, end_days=0)
