"""
Study population construction.

Turns the extracted cohort and outcome tables into one row per target cohort
entry with a risk window and an outcome count. Day offsets are relative to
cohort start (day 0).
"""

import logging

import numpy as np
import pandas as pd

from rcri_study.config.schema import PopulationConfig
from rcri_study.data.schema import (
    COHORT_END_ANCHOR,
    COHORT_START_COL,
    DAYS_TO_COHORT_END_COL,
    DAYS_TO_EVENT_COL,
    DAYS_TO_OBS_END_COL,
    OUTCOME_COUNT_COL,
    OUTCOME_ID_COL,
    RISK_END_COL,
    RISK_START_COL,
    ROW_ID_COL,
    SUBJECT_ID_COL,
    TIME_AT_RISK_COL,
)
from rcri_study.errors import ExtractionError

logger = logging.getLogger(__name__)

COHORT_COLUMNS = [ROW_ID_COL, SUBJECT_ID_COL, COHORT_START_COL, DAYS_TO_COHORT_END_COL, DAYS_TO_OBS_END_COL]
OUTCOME_COLUMNS = [ROW_ID_COL, OUTCOME_ID_COL, DAYS_TO_EVENT_COL]

POPULATION_COLUMNS = [
    ROW_ID_COL,
    SUBJECT_ID_COL,
    COHORT_START_COL,
    RISK_START_COL,
    RISK_END_COL,
    TIME_AT_RISK_COL,
    OUTCOME_COUNT_COL,
    DAYS_TO_EVENT_COL,
]


def _check_columns(df: pd.DataFrame, required: list[str], name: str):
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ExtractionError(f"{name} table missing columns {missing}")


def _log_step(attrition: list[dict], description: str, population: pd.DataFrame):
    attrition.append(
        {
            "description": description,
            "rows": len(population),
            "subjects": int(population[SUBJECT_ID_COL].nunique()),
        }
    )
    logger.debug(f"{description}: {len(population)} rows")


def create_study_population(
    cohorts: pd.DataFrame,
    outcomes: pd.DataFrame,
    outcome_id: int,
    settings: PopulationConfig,
) -> tuple[pd.DataFrame, list[dict]]:
    """
    Build the study population for one outcome.

    Steps:
    1. first_exposure_only: keep each subject's earliest cohort entry
    2. Risk window: start/end offsets added to the chosen anchors; the end is
       truncated at the end of observation
    3. remove_subjects_with_prior_outcome: drop entries with an outcome in
       [-prior_outcome_lookback, risk window start)
    4. require_time_at_risk: drop entries with fewer than min_time_at_risk
       days at risk (kept anyway when include_all_outcomes and an outcome
       falls in the window)
    5. outcome_count = number of outcomes inside the risk window

    Args:
        cohorts: Target cohort entries (COHORT_COLUMNS)
        outcomes: Outcome occurrences relative to cohort start (OUTCOME_COLUMNS)
        outcome_id: Outcome cohort to count
        settings: Risk window and inclusion rules

    Returns:
        (population, attrition) where population has POPULATION_COLUMNS and
        attrition lists the row/subject counts after each step

    Raises:
        ExtractionError: If inputs are malformed or the population is empty
    """
    _check_columns(cohorts, COHORT_COLUMNS, "cohorts")
    _check_columns(outcomes, OUTCOME_COLUMNS, "outcomes")

    attrition: list[dict] = []
    population = cohorts[COHORT_COLUMNS].copy()
    _log_step(attrition, "Original cohorts", population)

    if settings.first_exposure_only:
        population = (
            population.sort_values([SUBJECT_ID_COL, COHORT_START_COL, ROW_ID_COL])
            .drop_duplicates(SUBJECT_ID_COL, keep="first")
            .reset_index(drop=True)
        )
        _log_step(attrition, "First exposure only", population)

    days_to_end = population[DAYS_TO_COHORT_END_COL].to_numpy(dtype=float)
    no_offset = np.zeros(len(population))
    start_offset = days_to_end if settings.start_anchor == COHORT_END_ANCHOR else no_offset
    end_offset = days_to_end if settings.end_anchor == COHORT_END_ANCHOR else no_offset
    risk_start = settings.risk_window_start + start_offset
    risk_end = settings.risk_window_end + end_offset
    risk_end = np.minimum(risk_end, population[DAYS_TO_OBS_END_COL].to_numpy(dtype=float))

    population[RISK_START_COL] = risk_start
    population[RISK_END_COL] = risk_end
    population[TIME_AT_RISK_COL] = population[RISK_END_COL] - population[RISK_START_COL] + 1

    events = outcomes.loc[outcomes[OUTCOME_ID_COL] == outcome_id, [ROW_ID_COL, DAYS_TO_EVENT_COL]]
    events = events.merge(
        population[[ROW_ID_COL, RISK_START_COL, RISK_END_COL]], on=ROW_ID_COL, how="inner"
    )

    if settings.remove_subjects_with_prior_outcome:
        prior = events[
            (events[DAYS_TO_EVENT_COL] >= -settings.prior_outcome_lookback)
            & (events[DAYS_TO_EVENT_COL] < events[RISK_START_COL])
        ]
        population = population[~population[ROW_ID_COL].isin(prior[ROW_ID_COL])]
        _log_step(attrition, "No prior outcome", population)

    in_window = events[
        (events[DAYS_TO_EVENT_COL] >= events[RISK_START_COL])
        & (events[DAYS_TO_EVENT_COL] <= events[RISK_END_COL])
    ]
    counts = in_window.groupby(ROW_ID_COL).agg(
        **{
            OUTCOME_COUNT_COL: (DAYS_TO_EVENT_COL, "size"),
            DAYS_TO_EVENT_COL: (DAYS_TO_EVENT_COL, "min"),
        }
    )
    population = population.merge(counts, left_on=ROW_ID_COL, right_index=True, how="left")
    population[OUTCOME_COUNT_COL] = population[OUTCOME_COUNT_COL].fillna(0).astype(int)

    if settings.require_time_at_risk:
        enough_time = population[TIME_AT_RISK_COL] >= settings.min_time_at_risk
        if settings.include_all_outcomes:
            keep = enough_time | (population[OUTCOME_COUNT_COL] > 0)
            description = "Minimum time at risk (all outcomes kept)"
        else:
            keep = enough_time
            description = "Minimum time at risk"
        population = population[keep]
        _log_step(attrition, description, population)

    population = population[POPULATION_COLUMNS].reset_index(drop=True)

    if population.empty:
        raise ExtractionError(f"Study population for outcome {outcome_id} is empty")

    logger.info(
        f"Study population: {len(population)} rows, "
        f"{int((population[OUTCOME_COUNT_COL] > 0).sum())} with outcome {outcome_id}"
    )
    return population, attrition
