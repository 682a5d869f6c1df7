"""
Default configuration values.

Single source of truth for the study's default parameters; the pydantic
schema and the loader both start from these dicts.
"""

from typing import Any

# Recalibration modes accepted by the config and the CLI
VALID_RECALIBRATION_MODES = ["NONE", "INTERCEPT_ONLY", "INTERCEPT_AND_SLOPE"]

# CLI shorthand -> recalibration mode
RECALIBRATION_ALIASES = {
    "none": "NONE",
    "intercept": "INTERCEPT_ONLY",
    "intercept-slope": "INTERCEPT_AND_SLOPE",
}

DEFAULT_DATABASE_CONFIG: dict[str, Any] = {
    "database": "cdm.duckdb",
    "cdm_database_schema": "main",
    "cdm_database_name": "friendly_database_name",
    "cohort_database_schema": None,  # None = same as cdm_database_schema
    "cohort_table": "cohort",
    "read_only": False,
    "threads": 1,
}

# Risk window and population rules
DEFAULT_POPULATION_CONFIG: dict[str, Any] = {
    "risk_window_start": 1,
    "start_anchor": "cohort start",
    "risk_window_end": 365,
    "end_anchor": "cohort start",
    "first_exposure_only": False,
    "remove_subjects_with_prior_outcome": False,
    "prior_outcome_lookback": 99999,
    "require_time_at_risk": False,
    "min_time_at_risk": 1,
    "include_all_outcomes": True,
}

DEFAULT_RECALIBRATION_CONFIG: dict[str, Any] = {
    "mode": "NONE",
    "max_iter": 100,
}

DEFAULT_DCA_CONFIG: dict[str, Any] = {
    "xstart": 0.001,
    "xstop": None,  # None = maximum observed probability
    "xby": 0.001,
}

DEFAULT_EVALUATION_CONFIG: dict[str, Any] = {
    "n_calibration_bins": 10,
    "age_group_width": 5,
    "n_boot": 0,  # 0 = Hanley-McNeil standard error for the AUROC CI
    "seed": 0,
}

DEFAULT_PACKAGING_CONFIG: dict[str, Any] = {
    "min_cell_count": 10,
}

DEFAULT_EXECUTION_CONFIG: dict[str, Any] = {
    "create_cohorts": False,
    "run_analyses": False,
    "package_results": False,
    "view_results": False,
    "sample_size": None,
    "sample_seed": 42,
    "n_jobs": 1,
}

DEFAULT_STUDY_CONFIG: dict[str, Any] = {
    "settings_dir": None,  # None = settings shipped with the package
    "output_folder": "results",
    "analyses": None,  # None = every target x outcome x model
    "strictness": "warn",
}
