"""
Configuration schema for the validation study.

Defines Pydantic models for the run configuration (StudyConfig and its
sections) and for the immutable study settings resolved once at startup
(cohorts, custom covariates, per-model settings).
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from rcri_study.data.schema import COHORT_START_ANCHOR
from rcri_study.errors import ConfigurationError
from rcri_study.models.recalibration import RecalibrationMode

Anchor = Literal["cohort start", "cohort end"]

# ============================================================================
# Database Configuration
# ============================================================================


class DatabaseConfig(BaseModel):
    """Connection and schema names for the CDM database."""

    model_config = ConfigDict(extra="forbid")

    database: Path = Field(default=Path("cdm.duckdb"))
    cdm_database_schema: str = "main"
    cdm_database_name: str = "friendly_database_name"
    cohort_database_schema: str | None = None
    cohort_table: str = "cohort"
    read_only: bool = False
    threads: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def default_cohort_schema(self):
        """Cohort tables live in the CDM schema unless told otherwise."""
        if self.cohort_database_schema is None:
            self.cohort_database_schema = self.cdm_database_schema
        return self


# ============================================================================
# Population (Risk Window) Configuration
# ============================================================================


class PopulationConfig(BaseModel):
    """Risk window and population inclusion rules."""

    model_config = ConfigDict(extra="forbid")

    risk_window_start: int = 1
    start_anchor: Anchor = COHORT_START_ANCHOR
    risk_window_end: int = 365
    end_anchor: Anchor = COHORT_START_ANCHOR
    first_exposure_only: bool = False
    remove_subjects_with_prior_outcome: bool = False
    prior_outcome_lookback: int = Field(default=99999, ge=0)
    require_time_at_risk: bool = False
    min_time_at_risk: int = Field(default=1, ge=0)
    include_all_outcomes: bool = True

    @model_validator(mode="after")
    def validate_risk_window(self):
        if self.start_anchor == self.end_anchor and self.risk_window_end < self.risk_window_start:
            raise ValueError(
                f"risk_window_end ({self.risk_window_end}) precedes "
                f"risk_window_start ({self.risk_window_start}) with the same anchor"
            )
        return self


# ============================================================================
# Recalibration, DCA and Evaluation Configuration
# ============================================================================


class RecalibrationConfig(BaseModel):
    """Optional logistic recalibration of the score."""

    model_config = ConfigDict(extra="forbid")

    mode: RecalibrationMode = RecalibrationMode.NONE
    max_iter: int = Field(default=100, ge=1)

    @field_validator("mode", mode="before")
    @classmethod
    def upper_case_mode(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v


class DCAConfig(BaseModel):
    """Configuration for decision curve analysis."""

    model_config = ConfigDict(extra="forbid")

    xstart: float = Field(default=0.001, ge=0.0, lt=1.0)
    xstop: float | None = Field(default=None, ge=0.0, le=1.0)
    xby: float = Field(default=0.001, gt=0.0)

    @model_validator(mode="after")
    def validate_range(self):
        if self.xstop is not None and self.xstop < self.xstart:
            raise ValueError(f"xstop ({self.xstop}) is below xstart ({self.xstart})")
        return self


class EvaluationConfig(BaseModel):
    """Configuration for performance evaluation."""

    model_config = ConfigDict(extra="forbid")

    n_calibration_bins: int = Field(default=10, ge=2)
    age_group_width: int = Field(default=5, ge=1)
    n_boot: int = Field(default=0, ge=0)
    seed: int = 0


class PackagingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    min_cell_count: int = Field(default=10, ge=0)


class ExecutionConfig(BaseModel):
    """Which study stages run, and how."""

    model_config = ConfigDict(extra="forbid")

    create_cohorts: bool = False
    run_analyses: bool = False
    package_results: bool = False
    view_results: bool = False
    sample_size: int | None = Field(default=None, ge=1)
    sample_seed: int = 42
    n_jobs: int = Field(default=1, ge=1)


class AnalysisSpec(BaseModel):
    """One (target cohort, outcome cohort, model) triple."""

    model_config = ConfigDict(frozen=True)

    target_id: int
    outcome_id: int
    model: str


# ============================================================================
# Master Study Configuration
# ============================================================================


class StudyConfig(BaseModel):
    """Complete study configuration passed to the runner."""

    model_config = ConfigDict(extra="forbid")

    settings_dir: Path | None = None
    output_folder: Path = Field(default=Path("results"))
    analyses: list[AnalysisSpec] | None = None
    strictness: Literal["off", "warn", "error"] = "warn"

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    population: PopulationConfig = Field(default_factory=PopulationConfig)
    recalibration: RecalibrationConfig = Field(default_factory=RecalibrationConfig)
    dca: DCAConfig = Field(default_factory=DCAConfig)
    evaluation: EvaluationConfig = Field(default_factory=EvaluationConfig)
    packaging: PackagingConfig = Field(default_factory=PackagingConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)

    @property
    def database_output_dir(self) -> Path:
        """<output_folder>/<cdm_database_name>"""
        return self.output_folder / self.database.cdm_database_name


# ============================================================================
# Study Settings (resolved once from settings_dir)
# ============================================================================

# FeatureExtraction-style names accepted in <model>_standard_features.csv
FEATURE_NAME_FIELDS = {
    "useDemographicsGender": "use_demographics_gender",
    "useDemographicsAge": "use_demographics_age",
    "useDemographicsAgeGroup": "use_demographics_age_group",
    "useDemographicsIndexYear": "use_demographics_index_year",
    "useCohortCovariates": "use_cohort_covariates",
}


class CovariateSettings(BaseModel):
    """
    Which covariates the extractor builds for a model.

    Every flag defaults to False. included_covariate_ids restricts the
    standard covariates to the listed ids (empty = keep all). Cohort
    covariates count when the covariate cohort starts within
    [index + long_term_start_days, index + end_days].
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    use_demographics_gender: bool = False
    use_demographics_age: bool = False
    use_demographics_age_group: bool = False
    use_demographics_index_year: bool = False
    use_cohort_covariates: bool = False
    included_covariate_ids: tuple[int, ...] = ()
    long_term_start_days: int = -365
    end_days: int = 0

    @model_validator(mode="after")
    def validate_window(self):
        if self.end_days < self.long_term_start_days:
            raise ValueError(
                f"end_days ({self.end_days}) precedes long_term_start_days "
                f"({self.long_term_start_days})"
            )
        return self

    @classmethod
    def from_feature_names(
        cls,
        names: list[str],
        included_ids: list[int] | None = None,
        **kwargs,
    ) -> "CovariateSettings":
        """
        Build settings from standard feature names.

        Names may be FeatureExtraction-style (useDemographicsGender) or the
        field names themselves (use_demographics_gender).

        Raises:
            ConfigurationError: If a name is not a known covariate flag
        """
        flags = {}
        unknown = []
        fields = set(FEATURE_NAME_FIELDS.values())
        for name in names:
            name = str(name).strip()
            field = FEATURE_NAME_FIELDS.get(name, name)
            if field not in fields:
                unknown.append(name)
                continue
            flags[field] = True
        if unknown:
            raise ConfigurationError(f"Unknown standard feature names: {unknown}")

        ids = tuple(int(i) for i in (included_ids or []))
        return cls(included_covariate_ids=ids, **flags, **kwargs)

    @property
    def any_enabled(self) -> bool:
        return any(getattr(self, field) for field in FEATURE_NAME_FIELDS.values())


class CohortDefinition(BaseModel):
    """A cohort instantiated by the cohort store (CohortsToCreate.csv)."""

    model_config = ConfigDict(frozen=True)

    cohort_id: int
    name: str
    type: Literal["target", "outcome"] = "target"


class CustomCovariate(BaseModel):
    """A cohort used as a covariate (CustomCovariates.csv)."""

    model_config = ConfigDict(frozen=True)

    atlas_id: int
    cohort_name: str
    covariate_name: str | None = None

    @property
    def label(self) -> str:
        return self.covariate_name or self.cohort_name


class CovariatePoints(BaseModel):
    model_config = ConfigDict(frozen=True)

    covariate_id: int
    covariate_name: str = ""
    points: float


class ModelSettings(BaseModel):
    """
    Immutable definition of one point-score model.

    Attributes:
        model_id: Model identifier used in analysis triples (file stem)
        covariate_points: Points awarded per covariate
        probability_map: (total points, probability) pairs, sorted by points
        covariate_settings: Covariates to extract for this model
    """

    model_config = ConfigDict(frozen=True)

    model_id: str
    covariate_points: tuple[CovariatePoints, ...]
    probability_map: tuple[tuple[float, float], ...]
    covariate_settings: CovariateSettings = Field(default_factory=CovariateSettings)

    @field_validator("probability_map")
    @classmethod
    def validate_probability_map(cls, v):
        if not v:
            raise ValueError("probability_map must not be empty")
        points = [p for p, _ in v]
        if len(set(points)) != len(points):
            raise ValueError("probability_map has duplicate point totals")
        for _, prob in v:
            if not 0.0 <= prob <= 1.0:
                raise ValueError(f"probability {prob} outside [0, 1]")
        return tuple(sorted(v))

    @property
    def covariate_ids(self) -> list[int]:
        return [c.covariate_id for c in self.covariate_points]


class StudySettings(BaseModel):
    """Everything read from settings_dir, resolved once per run."""

    model_config = ConfigDict(frozen=True)

    settings_dir: Path
    cohorts: tuple[CohortDefinition, ...] = ()
    custom_covariates: tuple[CustomCovariate, ...] = ()
    models: dict[str, ModelSettings] = Field(default_factory=dict)

    @property
    def target_ids(self) -> list[int]:
        return [c.cohort_id for c in self.cohorts if c.type == "target"]

    @property
    def outcome_ids(self) -> list[int]:
        return [c.cohort_id for c in self.cohorts if c.type == "outcome"]

    def model(self, model_id: str) -> ModelSettings:
        """
        Raises:
            ConfigurationError: If the model is not defined in settings_dir
        """
        key = normalize_model_id(model_id)
        if key not in self.models:
            raise ConfigurationError(
                f"Unknown model '{model_id}'. Available: {sorted(self.models)}"
            )
        return self.models[key]


def normalize_model_id(name: str) -> str:
    """Strip a trailing '_model.csv' / '.csv' so file names and ids both work."""
    name = str(name).strip()
    for suffix in ("_model.csv", ".csv"):
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return name

