"""
Covariate summary tables.

compute_covariate_summary describes every extracted covariate split by
outcome presence; merge_demographic_summary then appends two synthesized rows
(age and percentage male) computed from the scored population.
"""

import logging

import numpy as np
import pandas as pd

from rcri_study.data.schema import (
    AGE_COL,
    AGE_COVARIATE_NAME,
    ANALYSIS_ID_COL,
    CONCEPT_ID_COL,
    COVARIATE_ID_COL,
    COVARIATE_NAME_COL,
    COVARIATE_SUMMARY_COLUMNS,
    COVARIATE_VALUE_COL,
    DEMOGRAPHIC_COVARIATE_ID,
    DEMOGRAPHIC_COVARIATE_KIND,
    FEMALE_CONCEPT_ID,
    MODEL_COVARIATE_KIND,
    OUTCOME_COUNT_COL,
    ROW_ID_COL,
    SEX_COL,
    SEX_COVARIATE_NAME,
)
from rcri_study.errors import EvaluationError

logger = logging.getLogger(__name__)


def _group_stats(values: np.ndarray, n: int) -> tuple[int, float, float]:
    """
    Count, mean and standard deviation of a sparse covariate over n people.

    values holds the non-zero covariate values; the remaining n - len(values)
    people contribute zeros.
    """
    count = int(len(values))
    if n == 0:
        return count, np.nan, np.nan
    total = float(np.sum(values))
    mean = total / n
    if n < 2:
        return count, mean, np.nan
    sum_sq = float(np.sum(values**2))
    var = (sum_sq - n * mean**2) / (n - 1)
    return count, mean, float(np.sqrt(max(var, 0.0)))


def _int_or_zero(value) -> int:
    return int(value) if value is not None and pd.notna(value) else 0


def _standardized_mean_diff(mean_with, sd_with, mean_without, sd_without) -> float:
    pooled = np.sqrt((sd_with**2 + sd_without**2) / 2.0)
    if not np.isfinite(pooled) or pooled == 0:
        return np.nan
    return float((mean_with - mean_without) / pooled)


def compute_covariate_summary(
    covariates: pd.DataFrame,
    covariate_ref: pd.DataFrame,
    population: pd.DataFrame,
    weights: pd.DataFrame | None = None,
) -> pd.DataFrame:
    """
    Summarize each covariate by outcome presence.

    Args:
        covariates: Long-format covariates (row_id, covariate_id, covariate_value)
        covariate_ref: Covariate descriptions (covariate_id, covariate_name,
            analysis_id, concept_id)
        population: Study population (row_id, outcome_count)
        weights: Optional model weights (covariate_id, points); covariates not
            in the model get a weight of 0

    Returns:
        DataFrame with COVARIATE_SUMMARY_COLUMNS, one row per covariate in
        covariate_ref, ordered by covariate id

    Raises:
        EvaluationError: If required columns are missing
    """
    for name, frame, cols in [
        ("covariates", covariates, [ROW_ID_COL, COVARIATE_ID_COL, COVARIATE_VALUE_COL]),
        ("covariate_ref", covariate_ref, [COVARIATE_ID_COL, COVARIATE_NAME_COL]),
        ("population", population, [ROW_ID_COL, OUTCOME_COUNT_COL]),
    ]:
        missing = [c for c in cols if c not in frame.columns]
        if missing:
            raise EvaluationError(f"{name} missing columns {missing}")

    has_outcome = population.set_index(ROW_ID_COL)[OUTCOME_COUNT_COL] > 0
    n_with = int(has_outcome.sum())
    n_without = int((~has_outcome).sum())
    n_all = n_with + n_without

    in_pop = covariates[covariates[ROW_ID_COL].isin(has_outcome.index)].copy()
    in_pop["has_outcome"] = in_pop[ROW_ID_COL].map(has_outcome).to_numpy(dtype=bool)

    weight_map: dict[int, float] = {}
    if weights is not None and not weights.empty:
        weight_map = dict(
            zip(weights[COVARIATE_ID_COL].astype(int), weights["points"].astype(float))
        )

    grouped = dict(tuple(in_pop.groupby(COVARIATE_ID_COL)))
    empty = np.array([], dtype=float)

    rows = []
    for _, ref in covariate_ref.sort_values(COVARIATE_ID_COL).iterrows():
        covariate_id = int(ref[COVARIATE_ID_COL])
        subset = grouped.get(covariate_id)
        if subset is None:
            values_all = values_with = values_without = empty
        else:
            values_all = subset[COVARIATE_VALUE_COL].to_numpy(dtype=float)
            mask = subset["has_outcome"].to_numpy(dtype=bool)
            values_with = values_all[mask]
            values_without = values_all[~mask]

        count, mean, sd = _group_stats(values_all, n_all)
        count_with, mean_with, sd_with = _group_stats(values_with, n_with)
        count_without, mean_without, sd_without = _group_stats(values_without, n_without)

        rows.append(
            {
                COVARIATE_ID_COL: covariate_id,
                COVARIATE_NAME_COL: ref[COVARIATE_NAME_COL],
                ANALYSIS_ID_COL: _int_or_zero(ref.get(ANALYSIS_ID_COL)),
                CONCEPT_ID_COL: _int_or_zero(ref.get(CONCEPT_ID_COL)),
                COVARIATE_VALUE_COL: weight_map.get(covariate_id, 0.0),
                "covariate_count": count,
                "covariate_mean": mean,
                "covariate_st_dev": sd,
                "covariate_count_with_no_outcome": count_without,
                "covariate_mean_with_no_outcome": mean_without,
                "covariate_st_dev_with_no_outcome": sd_without,
                "covariate_count_with_outcome": count_with,
                "covariate_mean_with_outcome": mean_with,
                "covariate_st_dev_with_outcome": sd_with,
                "standardized_mean_diff": _standardized_mean_diff(
                    mean_with, sd_with, mean_without, sd_without
                ),
                "covariate_kind": MODEL_COVARIATE_KIND,
            }
        )

    return pd.DataFrame(rows, columns=COVARIATE_SUMMARY_COLUMNS)


def _demographic_row(name: str, overall: dict, no_outcome: dict, outcome: dict, stat: str, sd: str | None) -> dict:
    return {
        COVARIATE_ID_COL: DEMOGRAPHIC_COVARIATE_ID,
        COVARIATE_NAME_COL: name,
        ANALYSIS_ID_COL: DEMOGRAPHIC_COVARIATE_ID,
        CONCEPT_ID_COL: DEMOGRAPHIC_COVARIATE_ID,
        COVARIATE_VALUE_COL: 0.0,
        "covariate_count": no_outcome["n"] + outcome["n"],
        "covariate_mean": overall[stat],
        "covariate_st_dev": overall[sd] if sd else 0.0,
        "covariate_count_with_no_outcome": no_outcome["n"],
        "covariate_mean_with_no_outcome": no_outcome[stat],
        "covariate_st_dev_with_no_outcome": no_outcome[sd] if sd else 0.0,
        "covariate_count_with_outcome": outcome["n"],
        "covariate_mean_with_outcome": outcome[stat],
        "covariate_st_dev_with_outcome": outcome[sd] if sd else 0.0,
        # Placeholder: no standardized difference is computed for these rows
        "standardized_mean_diff": 0.0,
        "covariate_kind": DEMOGRAPHIC_COVARIATE_KIND,
    }


def _demographics(group: pd.DataFrame) -> dict:
    n = len(group)
    if n == 0:
        return {"n": 0, "mean_age": np.nan, "sd_age": np.nan, "male_pct": np.nan}
    age = group[AGE_COL].astype(float)
    male = (group[SEX_COL] != FEMALE_CONCEPT_ID).sum()
    return {
        "n": n,
        "mean_age": float(age.mean()),
        "sd_age": float(age.std()) if n > 1 else np.nan,
        "male_pct": float(male) / n * 100.0,
    }


def merge_demographic_summary(
    covariate_summary: pd.DataFrame | None,
    predictions: pd.DataFrame,
) -> pd.DataFrame | None:
    """
    Append age and percentage-male rows to a covariate summary.

    The two rows use the reserved id -1 (covariate, analysis and concept id),
    a covariate value of 0, a standardized mean difference of 0, and
    covariate_kind "demographic". They are always the last two rows: age,
    then sex. Their counts split the full population by outcome presence.

    Args:
        covariate_summary: Summary from compute_covariate_summary, or None
            when that step failed
        predictions: Scored population (outcome_count, age_years, sex)

    Returns:
        The merged summary; the input unchanged (None or empty) when there is
        no covariate summary to extend
    """
    if covariate_summary is None or covariate_summary.empty:
        logger.info("No covariate summary available; skipping demographic rows")
        return covariate_summary

    missing = [c for c in [OUTCOME_COUNT_COL, AGE_COL, SEX_COL] if c not in predictions.columns]
    if missing:
        raise EvaluationError(f"Predictions missing demographic columns {missing}")

    with_outcome = predictions[OUTCOME_COUNT_COL] > 0
    overall = _demographics(predictions)
    no_outcome = _demographics(predictions[~with_outcome])
    outcome = _demographics(predictions[with_outcome])

    age_row = _demographic_row(AGE_COVARIATE_NAME, overall, no_outcome, outcome, "mean_age", "sd_age")
    sex_row = _demographic_row(SEX_COVARIATE_NAME, overall, no_outcome, outcome, "male_pct", None)

    summary = covariate_summary.copy()
    if "covariate_kind" not in summary.columns:
        summary["covariate_kind"] = MODEL_COVARIATE_KIND

    extra = pd.DataFrame([age_row, sex_row])
    return pd.concat([summary, extra], ignore_index=True)
