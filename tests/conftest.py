"""
Shared pytest fixtures for the RCRI study tests.

The CDM fixture is a small DuckDB file with person, observation_period and two
source tables (surgery, events) that the test SQL templates read from:

- 20 persons, all operated on 2020-06-01, observed 2015-01-01 to 2022-12-31
- persons 1-8 have the covariate cohort event 90 days before surgery
- persons 1-5 have the outcome 9 days after surgery
- person 6 has an outcome in 2019 (before the risk window)
"""

import logging
import shutil
from pathlib import Path

import duckdb
import numpy as np
import pandas as pd
import pytest

from rcri_study.config.schema import DatabaseConfig, StudyConfig
from rcri_study.config.settings import load_study_settings
from rcri_study.data.cohorts import DuckDBCohortStore
from rcri_study.data.extraction import RawData
from rcri_study.data.records import PredictionRecord, predictions_from_records
from rcri_study.data.schema import FEMALE_CONCEPT_ID, MALE_CONCEPT_ID
from rcri_study.utils.paths import packaged_settings_dir

N_PERSONS = 20
SURGERY_DATE = "2020-06-01"
COVARIATE_PERSONS = range(1, 9)
OUTCOME_PERSONS = range(1, 6)
PRIOR_OUTCOME_PERSON = 6


def make_mock_predictions(
    probabilities,
    outcomes,
    ages=None,
    sexes=None,
) -> pd.DataFrame:
    """
    Build a prediction frame for unit tests.

    Args:
        probabilities: Predicted probabilities
        outcomes: Outcome counts
        ages: Ages in years (default: 40 + i)
        sexes: Gender concept ids (default: alternating male/female)
    """
    n = len(probabilities)
    if ages is None:
        ages = [40 + i for i in range(n)]
    if sexes is None:
        sexes = [MALE_CONCEPT_ID if i % 2 == 0 else FEMALE_CONCEPT_ID for i in range(n)]
    records = [
        PredictionRecord(
            subject_id=i + 1,
            probability=float(probabilities[i]),
            outcome_count=int(outcomes[i]),
            age_years=float(ages[i]),
            sex=int(sexes[i]),
            row_id=i + 1,
        )
        for i in range(n)
    ]
    return predictions_from_records(records)


def make_raw_data(
    n: int,
    outcome_rows=(),
    covariate_rows=(),
    covariate_id: int = 101456,
) -> RawData:
    """
    Synthetic RawData for n cohort entries (row_id = subject_id = 1..n).

    Args:
        n: Number of target cohort entries
        outcome_rows: Row ids with an outcome (outcome id 2) 10 days after index
        covariate_rows: Row ids carrying covariate_id
        covariate_id: Covariate present in covariate_rows
    """
    row_ids = np.arange(1, n + 1)
    cohorts = pd.DataFrame(
        {
            "row_id": row_ids,
            "subject_id": row_ids,
            "cohort_start_date": pd.Timestamp("2020-06-01"),
            "days_to_cohort_end": 0,
            "days_to_obs_end": 1000,
        }
    )
    outcomes = pd.DataFrame(
        {"row_id": list(outcome_rows), "outcome_id": 2, "days_to_event": 10},
        columns=["row_id", "outcome_id", "days_to_event"],
    )
    covariates = pd.DataFrame(
        {"row_id": list(covariate_rows), "covariate_id": covariate_id, "covariate_value": 1.0},
        columns=["row_id", "covariate_id", "covariate_value"],
    )
    covariate_ref = pd.DataFrame(
        {
            "covariate_id": [covariate_id],
            "covariate_name": ["Risk factor"],
            "analysis_id": [456],
            "concept_id": [0],
        }
    )
    patient_attributes = pd.DataFrame(
        {
            "row_id": row_ids,
            "age_years": 50 + row_ids % 30,
            "sex": np.where(row_ids % 2 == 1, MALE_CONCEPT_ID, FEMALE_CONCEPT_ID),
        }
    )
    return RawData(
        cohorts=cohorts,
        outcomes=outcomes,
        covariates=covariates,
        covariate_ref=covariate_ref,
        patient_attributes=patient_attributes,
    )


@pytest.fixture(autouse=True)
def reset_package_logger():
    """CLI tests attach handlers and stop propagation; undo that after each test."""
    yield
    package_logger = logging.getLogger("rcri_study")
    for handler in list(package_logger.handlers):
        handler.close()
        package_logger.removeHandler(handler)
    package_logger.propagate = True
    package_logger.setLevel(logging.NOTSET)


@pytest.fixture
def balanced_predictions():
    """100 patients, 50 with the outcome, every probability 0.5."""
    outcomes = [1] * 50 + [0] * 50
    return make_mock_predictions([0.5] * 100, outcomes)


@pytest.fixture
def informative_predictions():
    """500 patients whose outcomes follow their predicted risk."""
    rng = np.random.default_rng(42)
    p = rng.uniform(0.05, 0.6, size=500)
    y = rng.binomial(1, p)
    ages = rng.integers(45, 90, size=500)
    sexes = rng.choice([MALE_CONCEPT_ID, FEMALE_CONCEPT_ID], size=500)
    return make_mock_predictions(p, y, ages=ages, sexes=sexes)


# ============================================================================
# Settings directory
# ============================================================================


TARGET_SQL = """
INSERT INTO @target_database_schema.@target_cohort_table
SELECT @target_cohort_id, person_id, surgery_date, surgery_date
FROM @cdm_database_schema.surgery;
"""

EVENT_SQL = """
INSERT INTO @target_database_schema.@target_cohort_table
SELECT @target_cohort_id, person_id, event_date, event_date
FROM @cdm_database_schema.events
WHERE event_type = '{event_type}';
"""


@pytest.fixture
def settings_dir(tmp_path) -> Path:
    """
    Study settings with one target (1), one outcome (2), an empty target (3),
    one covariate cohort (101) and a one-covariate "toy" model.
    """
    root = tmp_path / "settings"
    (root / "models").mkdir(parents=True)
    (root / "sql").mkdir()

    pd.DataFrame(
        {
            "cohortId": [1, 2, 3],
            "name": ["Surgery", "Outcome", "EmptyTarget"],
            "type": ["target", "outcome", "target"],
        }
    ).to_csv(root / "CohortsToCreate.csv", index=False)
    pd.DataFrame(
        {"atlasId": [101], "cohortName": ["RiskFactor"], "covariateName": ["Risk factor"]}
    ).to_csv(root / "CustomCovariates.csv", index=False)

    pd.DataFrame(
        {"covariateId": [101456], "covariateName": ["Risk factor"], "points": [1]}
    ).to_csv(root / "models" / "toy_model.csv", index=False)
    pd.DataFrame({"points": [0, 1], "probability": [0.1, 0.4]}).to_csv(
        root / "models" / "toy_probability.csv", index=False
    )

    shutil.copy(
        packaged_settings_dir() / "sql" / "CreateCohortTable.sql",
        root / "sql" / "CreateCohortTable.sql",
    )
    (root / "sql" / "Surgery.sql").write_text(TARGET_SQL)
    (root / "sql" / "Outcome.sql").write_text(EVENT_SQL.format(event_type="outcome"))
    (root / "sql" / "RiskFactor.sql").write_text(EVENT_SQL.format(event_type="risk_factor"))
    (root / "sql" / "EmptyTarget.sql").write_text(EVENT_SQL.format(event_type="nothing"))
    return root


@pytest.fixture
def study_settings(settings_dir):
    return load_study_settings(settings_dir)


# ============================================================================
# CDM database
# ============================================================================


@pytest.fixture
def cdm_path(tmp_path) -> Path:
    """DuckDB CDM file with the persons described in the module docstring."""
    path = tmp_path / "cdm.duckdb"
    con = duckdb.connect(str(path))
    con.execute(
        "CREATE TABLE person (person_id BIGINT, year_of_birth INTEGER, gender_concept_id INTEGER)"
    )
    con.execute(
        """
        CREATE TABLE observation_period (
            person_id BIGINT,
            observation_period_start_date DATE,
            observation_period_end_date DATE
        )
        """
    )
    con.execute("CREATE TABLE surgery (person_id BIGINT, surgery_date DATE)")
    con.execute("CREATE TABLE events (person_id BIGINT, event_type VARCHAR, event_date DATE)")

    for pid in range(1, N_PERSONS + 1):
        gender = MALE_CONCEPT_ID if pid % 2 == 1 else FEMALE_CONCEPT_ID
        con.execute("INSERT INTO person VALUES (?, ?, ?)", [pid, 1940 + pid, gender])
        con.execute(
            "INSERT INTO observation_period VALUES (?, DATE '2015-01-01', DATE '2022-12-31')",
            [pid],
        )
        con.execute(f"INSERT INTO surgery VALUES (?, DATE '{SURGERY_DATE}')", [pid])

    for pid in COVARIATE_PERSONS:
        con.execute("INSERT INTO events VALUES (?, 'risk_factor', DATE '2020-03-03')", [pid])
    for pid in OUTCOME_PERSONS:
        con.execute("INSERT INTO events VALUES (?, 'outcome', DATE '2020-06-10')", [pid])
    con.execute(
        "INSERT INTO events VALUES (?, 'outcome', DATE '2019-01-01')", [PRIOR_OUTCOME_PERSON]
    )
    con.close()
    return path


@pytest.fixture
def database_config(cdm_path) -> DatabaseConfig:
    return DatabaseConfig(database=cdm_path, cdm_database_name="testdb")


@pytest.fixture
def materialized_cdm(database_config, study_settings) -> DatabaseConfig:
    """CDM whose cohort table holds every study and covariate cohort."""
    with DuckDBCohortStore.connect(database_config, study_settings.settings_dir) as store:
        store.materialize_cohorts(study_settings.cohorts, study_settings.custom_covariates)
    return database_config


@pytest.fixture
def study_config(tmp_path, materialized_cdm, settings_dir) -> StudyConfig:
    return StudyConfig(
        settings_dir=settings_dir,
        output_folder=tmp_path / "results",
        database=materialized_cdm,
        analyses=[{"target_id": 1, "outcome_id": 2, "model": "toy"}],
    )
