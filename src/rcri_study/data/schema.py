"""
Data schema definitions and constants.

Defines column names, concept ids and table layouts used throughout the study.
"""

# ============================================================================
# Identifiers and Prediction Columns
# ============================================================================

ROW_ID_COL = "row_id"
SUBJECT_ID_COL = "subject_id"
PROBABILITY_COL = "probability"
OUTCOME_COUNT_COL = "outcome_count"
AGE_COL = "age_years"
SEX_COL = "sex"
POINTS_COL = "points"

PREDICTION_COLUMNS = [
    ROW_ID_COL,
    SUBJECT_ID_COL,
    PROBABILITY_COL,
    OUTCOME_COUNT_COL,
    AGE_COL,
    SEX_COL,
]

# ============================================================================
# Sex Concepts
# ============================================================================

# OMOP gender concepts; every code other than FEMALE counts as male
FEMALE_CONCEPT_ID = 8532
MALE_CONCEPT_ID = 8507

# ============================================================================
# Cohort and Population Columns
# ============================================================================

COHORT_ID_COL = "cohort_definition_id"
COHORT_START_COL = "cohort_start_date"
COHORT_END_COL = "cohort_end_date"
DAYS_TO_COHORT_END_COL = "days_to_cohort_end"
DAYS_TO_OBS_END_COL = "days_to_obs_end"
OUTCOME_ID_COL = "outcome_id"
DAYS_TO_EVENT_COL = "days_to_event"
RISK_START_COL = "risk_start"
RISK_END_COL = "risk_end"
TIME_AT_RISK_COL = "time_at_risk"

COHORT_START_ANCHOR = "cohort start"
COHORT_END_ANCHOR = "cohort end"
VALID_ANCHORS = [COHORT_START_ANCHOR, COHORT_END_ANCHOR]

# ============================================================================
# Covariate Columns
# ============================================================================

COVARIATE_ID_COL = "covariate_id"
COVARIATE_VALUE_COL = "covariate_value"
COVARIATE_NAME_COL = "covariate_name"
ANALYSIS_ID_COL = "analysis_id"
CONCEPT_ID_COL = "concept_id"

# Reserved id shared by the synthesized age and sex rows
DEMOGRAPHIC_COVARIATE_ID = -1
AGE_COVARIATE_NAME = "Age in years"
SEX_COVARIATE_NAME = "Male (%)"

MODEL_COVARIATE_KIND = "model"
DEMOGRAPHIC_COVARIATE_KIND = "demographic"

COVARIATE_SUMMARY_COLUMNS = [
    COVARIATE_ID_COL,
    COVARIATE_NAME_COL,
    ANALYSIS_ID_COL,
    CONCEPT_ID_COL,
    COVARIATE_VALUE_COL,
    "covariate_count",
    "covariate_mean",
    "covariate_st_dev",
    "covariate_count_with_no_outcome",
    "covariate_mean_with_no_outcome",
    "covariate_st_dev_with_no_outcome",
    "covariate_count_with_outcome",
    "covariate_mean_with_outcome",
    "covariate_st_dev_with_outcome",
    "standardized_mean_diff",
    "covariate_kind",
]

# Count columns blanked by minimum-cell-count redaction
COVARIATE_COUNT_COLUMNS = [
    "covariate_count",
    "covariate_count_with_no_outcome",
    "covariate_count_with_outcome",
]

# ============================================================================
# Evaluation Table
# ============================================================================

EVALUATION_COLUMNS = ["analysis_id", "eval", "metric", "value"]
VALIDATION_EVAL = "validation"

# ============================================================================
# Standard Covariate Ids (FeatureExtraction convention)
# ============================================================================

AGE_COVARIATE_ID = 1002
COHORT_COVARIATE_ANALYSIS_ID = 456


def gender_covariate_id(gender_concept_id: int) -> int:
    """Covariate id for a gender concept (concept_id * 1000 + 1)."""
    return int(gender_concept_id) * 1000 + 1


def age_group_covariate_id(age_group: int) -> int:
    """Covariate id for a 5-year age group index (group * 1000 + 3)."""
    return int(age_group) * 1000 + 3


def index_year_covariate_id(year: int) -> int:
    """Covariate id for the index year (year * 1000 + 6)."""
    return int(year) * 1000 + 6


def cohort_covariate_id(atlas_id: int) -> int:
    """Covariate id for a custom cohort covariate (atlas_id * 1000 + 456)."""
    return int(atlas_id) * 1000 + COHORT_COVARIATE_ANALYSIS_ID
