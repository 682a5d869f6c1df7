"""
Covariate extraction from a DuckDB CDM database.

Builds the per-analysis RawData: target cohort entries, outcome occurrences,
long-format covariates and patient attributes. Standard covariate ids follow
the FeatureExtraction convention (see data.schema).
"""

import logging
from dataclasses import dataclass, field
from typing import Protocol

import duckdb
import numpy as np
import pandas as pd

from rcri_study.config.schema import CovariateSettings, CustomCovariate, DatabaseConfig
from rcri_study.data.schema import (
    AGE_COL,
    AGE_COVARIATE_ID,
    ANALYSIS_ID_COL,
    COHORT_COVARIATE_ANALYSIS_ID,
    COHORT_ID_COL,
    COHORT_START_COL,
    CONCEPT_ID_COL,
    COVARIATE_ID_COL,
    COVARIATE_NAME_COL,
    COVARIATE_VALUE_COL,
    DAYS_TO_COHORT_END_COL,
    DAYS_TO_EVENT_COL,
    DAYS_TO_OBS_END_COL,
    FEMALE_CONCEPT_ID,
    MALE_CONCEPT_ID,
    OUTCOME_ID_COL,
    ROW_ID_COL,
    SEX_COL,
    SUBJECT_ID_COL,
    age_group_covariate_id,
    cohort_covariate_id,
    gender_covariate_id,
    index_year_covariate_id,
)
from rcri_study.errors import ExtractionError

logger = logging.getLogger(__name__)

COVARIATE_COLUMNS = [ROW_ID_COL, COVARIATE_ID_COL, COVARIATE_VALUE_COL]
COVARIATE_REF_COLUMNS = [COVARIATE_ID_COL, COVARIATE_NAME_COL, ANALYSIS_ID_COL, CONCEPT_ID_COL]

GENDER_NAMES = {MALE_CONCEPT_ID: "MALE", FEMALE_CONCEPT_ID: "FEMALE"}
AGE_GROUP_WIDTH = 5


@dataclass
class RawData:
    """
    Extracted data for one (target, outcome) pair.

    Attributes:
        cohorts: row_id, subject_id, cohort_start_date, days_to_cohort_end, days_to_obs_end
        outcomes: row_id, outcome_id, days_to_event (relative to cohort start)
        covariates: row_id, covariate_id, covariate_value (non-zero values only)
        covariate_ref: covariate_id, covariate_name, analysis_id, concept_id
        patient_attributes: row_id, age_years, sex
        metadata: Extraction settings, for the result bundle
    """

    cohorts: pd.DataFrame
    outcomes: pd.DataFrame
    covariates: pd.DataFrame
    covariate_ref: pd.DataFrame
    patient_attributes: pd.DataFrame
    metadata: dict = field(default_factory=dict)


class CovariateExtractor(Protocol):
    def extract(
        self,
        target_id: int,
        outcome_id: int,
        settings: CovariateSettings,
        sample_size: int | None = None,
    ) -> RawData: ...


class DuckDBCovariateExtractor:
    """
    Extract RawData from the CDM and cohort tables.

    Args:
        connection: DuckDB connection (one per worker thread)
        database: Schema and table names
        custom_covariates: Cohorts available as covariates
        seed: Random seed for population sampling
    """

    def __init__(
        self,
        connection: duckdb.DuckDBPyConnection,
        database: DatabaseConfig,
        custom_covariates: tuple[CustomCovariate, ...] = (),
        seed: int = 42,
    ):
        self.connection = connection
        self.database = database
        self.custom_covariates = tuple(custom_covariates)
        self.seed = seed

    def close(self):
        self.connection.close()

    @property
    def _cdm(self) -> str:
        return self.database.cdm_database_schema

    @property
    def _cohort_table(self) -> str:
        return f"{self.database.cohort_database_schema}.{self.database.cohort_table}"

    def _query(self, sql: str, params: list | None = None) -> pd.DataFrame:
        try:
            return self.connection.execute(sql, params or []).df()
        except duckdb.Error as e:
            raise ExtractionError(f"Extraction query failed: {e}") from e

    def _cohort_rows(self, cohort_id: int) -> pd.DataFrame:
        return self._query(
            f"""
            SELECT {SUBJECT_ID_COL}, {COHORT_START_COL}
            FROM {self._cohort_table}
            WHERE {COHORT_ID_COL} = ?
            """,
            [int(cohort_id)],
        )

    def _target(self, target_id: int, sample_size: int | None) -> pd.DataFrame:
        target = self._query(
            f"""
            SELECT c.{SUBJECT_ID_COL},
                   c.{COHORT_START_COL},
                   date_diff('day', c.cohort_start_date, c.cohort_end_date) AS {DAYS_TO_COHORT_END_COL},
                   date_diff('day', c.cohort_start_date, op.observation_period_end_date) AS {DAYS_TO_OBS_END_COL},
                   year(c.cohort_start_date) - p.year_of_birth AS {AGE_COL},
                   p.gender_concept_id AS {SEX_COL},
                   year(c.cohort_start_date) AS index_year
            FROM {self._cohort_table} c
            JOIN {self._cdm}.person p ON p.person_id = c.subject_id
            JOIN {self._cdm}.observation_period op
              ON op.person_id = c.subject_id
             AND c.cohort_start_date BETWEEN op.observation_period_start_date
                                         AND op.observation_period_end_date
            WHERE c.{COHORT_ID_COL} = ?
            ORDER BY c.{SUBJECT_ID_COL}, c.{COHORT_START_COL}
            """,
            [int(target_id)],
        )
        if target.empty:
            raise ExtractionError(f"Target cohort {target_id} has no entries in observation")

        if sample_size is not None and sample_size < len(target):
            logger.info(f"Sampling {sample_size} of {len(target)} target cohort entries")
            target = target.sample(n=sample_size, random_state=self.seed).sort_index()

        target = target.reset_index(drop=True)
        target.insert(0, ROW_ID_COL, np.arange(1, len(target) + 1))
        return target

    def _relative_events(self, target: pd.DataFrame, cohort_id: int) -> pd.DataFrame:
        """Entries of cohort_id for target subjects, in days from each row's cohort start."""
        events = self._cohort_rows(cohort_id).rename(columns={COHORT_START_COL: "event_date"})
        merged = target[[ROW_ID_COL, SUBJECT_ID_COL, COHORT_START_COL]].merge(
            events, on=SUBJECT_ID_COL, how="inner"
        )
        merged[DAYS_TO_EVENT_COL] = (
            pd.to_datetime(merged["event_date"]) - pd.to_datetime(merged[COHORT_START_COL])
        ).dt.days
        return merged[[ROW_ID_COL, DAYS_TO_EVENT_COL]]

    def _demographic_covariates(
        self, target: pd.DataFrame, settings: CovariateSettings
    ) -> tuple[list[pd.DataFrame], list[dict]]:
        frames = []
        refs = []
        row_ids = target[ROW_ID_COL]

        if settings.use_demographics_gender:
            sex = target[SEX_COL].astype(int)
            ids = sex.map(gender_covariate_id)
            frames.append(pd.DataFrame({ROW_ID_COL: row_ids, COVARIATE_ID_COL: ids, COVARIATE_VALUE_COL: 1.0}))
            for concept in sorted(sex.unique()):
                refs.append(
                    {
                        COVARIATE_ID_COL: gender_covariate_id(concept),
                        COVARIATE_NAME_COL: f"gender = {GENDER_NAMES.get(concept, concept)}",
                        ANALYSIS_ID_COL: 1,
                        CONCEPT_ID_COL: int(concept),
                    }
                )

        if settings.use_demographics_age:
            frames.append(
                pd.DataFrame(
                    {
                        ROW_ID_COL: row_ids,
                        COVARIATE_ID_COL: AGE_COVARIATE_ID,
                        COVARIATE_VALUE_COL: target[AGE_COL].astype(float),
                    }
                )
            )
            refs.append(
                {
                    COVARIATE_ID_COL: AGE_COVARIATE_ID,
                    COVARIATE_NAME_COL: "age in years",
                    ANALYSIS_ID_COL: 2,
                    CONCEPT_ID_COL: 0,
                }
            )

        if settings.use_demographics_age_group:
            groups = (target[AGE_COL] // AGE_GROUP_WIDTH).astype(int)
            frames.append(
                pd.DataFrame(
                    {
                        ROW_ID_COL: row_ids,
                        COVARIATE_ID_COL: groups.map(age_group_covariate_id),
                        COVARIATE_VALUE_COL: 1.0,
                    }
                )
            )
            for group in sorted(groups.unique()):
                lo = group * AGE_GROUP_WIDTH
                refs.append(
                    {
                        COVARIATE_ID_COL: age_group_covariate_id(group),
                        COVARIATE_NAME_COL: f"age group: {lo:3d} - {lo + AGE_GROUP_WIDTH - 1:3d}",
                        ANALYSIS_ID_COL: 3,
                        CONCEPT_ID_COL: 0,
                    }
                )

        if settings.use_demographics_index_year:
            years = target["index_year"].astype(int)
            frames.append(
                pd.DataFrame(
                    {
                        ROW_ID_COL: row_ids,
                        COVARIATE_ID_COL: years.map(index_year_covariate_id),
                        COVARIATE_VALUE_COL: 1.0,
                    }
                )
            )
            for year in sorted(years.unique()):
                refs.append(
                    {
                        COVARIATE_ID_COL: index_year_covariate_id(year),
                        COVARIATE_NAME_COL: f"index year: {year}",
                        ANALYSIS_ID_COL: 6,
                        CONCEPT_ID_COL: 0,
                    }
                )

        if settings.included_covariate_ids:
            included = set(settings.included_covariate_ids)
            frames = [f[f[COVARIATE_ID_COL].isin(included)] for f in frames]
            refs = [r for r in refs if r[COVARIATE_ID_COL] in included]

        return frames, refs

    def _cohort_covariates(
        self, target: pd.DataFrame, settings: CovariateSettings
    ) -> tuple[list[pd.DataFrame], list[dict]]:
        frames = []
        refs = []
        for covariate in self.custom_covariates:
            covariate_id = cohort_covariate_id(covariate.atlas_id)
            events = self._relative_events(target, covariate.atlas_id)
            in_window = events[
                (events[DAYS_TO_EVENT_COL] >= settings.long_term_start_days)
                & (events[DAYS_TO_EVENT_COL] <= settings.end_days)
            ]
            rows = np.unique(in_window[ROW_ID_COL].to_numpy())
            frames.append(
                pd.DataFrame({ROW_ID_COL: rows, COVARIATE_ID_COL: covariate_id, COVARIATE_VALUE_COL: 1.0})
            )
            refs.append(
                {
                    COVARIATE_ID_COL: covariate_id,
                    COVARIATE_NAME_COL: covariate.label,
                    ANALYSIS_ID_COL: COHORT_COVARIATE_ANALYSIS_ID,
                    CONCEPT_ID_COL: 0,
                }
            )
        return frames, refs

    def extract(
        self,
        target_id: int,
        outcome_id: int,
        settings: CovariateSettings,
        sample_size: int | None = None,
    ) -> RawData:
        """
        Extract RawData for one target cohort and outcome.

        Args:
            target_id: Target cohort definition id
            outcome_id: Outcome cohort definition id
            settings: Covariates to build
            sample_size: Optional random sample of the target cohort

        Raises:
            ExtractionError: If the target cohort is empty or a query fails
        """
        target = self._target(target_id, sample_size)

        outcomes = self._relative_events(target, outcome_id)
        outcomes.insert(1, OUTCOME_ID_COL, int(outcome_id))

        frames, refs = self._demographic_covariates(target, settings)
        if settings.use_cohort_covariates:
            cohort_frames, cohort_refs = self._cohort_covariates(target, settings)
            frames.extend(cohort_frames)
            refs.extend(cohort_refs)

        frames = [f for f in frames if not f.empty]
        if frames:
            covariates = pd.concat(frames, ignore_index=True)
            covariates = covariates[covariates[COVARIATE_VALUE_COL] != 0]
            covariates = covariates.sort_values([ROW_ID_COL, COVARIATE_ID_COL]).reset_index(drop=True)
        else:
            covariates = pd.DataFrame(columns=COVARIATE_COLUMNS)
        covariate_ref = pd.DataFrame(refs, columns=COVARIATE_REF_COLUMNS)

        logger.info(
            f"Extracted target {target_id} / outcome {outcome_id}: {len(target)} rows, "
            f"{len(outcomes)} outcome entries, {len(covariate_ref)} covariates"
        )

        return RawData(
            cohorts=target[
                [ROW_ID_COL, SUBJECT_ID_COL, COHORT_START_COL, DAYS_TO_COHORT_END_COL, DAYS_TO_OBS_END_COL]
            ].copy(),
            outcomes=outcomes[[ROW_ID_COL, OUTCOME_ID_COL, DAYS_TO_EVENT_COL]],
            covariates=covariates[COVARIATE_COLUMNS],
            covariate_ref=covariate_ref,
            patient_attributes=target[[ROW_ID_COL, AGE_COL, SEX_COL]].copy(),
            metadata={
                "target_id": int(target_id),
                "outcome_id": int(outcome_id),
                "sample_size": sample_size,
                "covariate_settings": settings.model_dump(mode="json"),
            },
        )
