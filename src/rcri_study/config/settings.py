"""
Study settings files.

The settings directory holds the study definition, read once at startup:

    settings/
    ├── CohortsToCreate.csv            cohortId, name, type (target|outcome)
    ├── CustomCovariates.csv           atlasId, cohortName [, covariateName]
    ├── models/
    │   ├── <model>_model.csv          covariateId, covariateName, points
    │   ├── <model>_probability.csv    points, probability
    │   ├── <model>_standard_features.csv          x (feature names)
    │   └── <model>_standard_features_include.csv  x (covariate ids)
    └── sql/
        ├── CreateCohortTable.sql
        └── <cohort name>.sql          one template per cohort
"""

import logging
from pathlib import Path

import pandas as pd
from pydantic import ValidationError

from rcri_study.config.schema import (
    CohortDefinition,
    CovariatePoints,
    CovariateSettings,
    CustomCovariate,
    ModelSettings,
    StudySettings,
)
from rcri_study.data.schema import COHORT_COVARIATE_ANALYSIS_ID
from rcri_study.errors import ConfigurationError
from rcri_study.utils.paths import packaged_settings_dir

logger = logging.getLogger(__name__)

COHORTS_FILE = "CohortsToCreate.csv"
CUSTOM_COVARIATES_FILE = "CustomCovariates.csv"
MODELS_SUBDIR = "models"
SQL_SUBDIR = "sql"

MODEL_SUFFIX = "_model.csv"
PROBABILITY_SUFFIX = "_probability.csv"
STANDARD_FEATURES_SUFFIX = "_standard_features.csv"
STANDARD_INCLUDE_SUFFIX = "_standard_features_include.csv"


def _read_csv(path: Path, required: list[str]) -> pd.DataFrame:
    try:
        df = pd.read_csv(path)
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise ConfigurationError(f"Could not read {path}: {e}") from e
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ConfigurationError(
            f"{path.name} is missing required columns {missing} (found {list(df.columns)})"
        )
    return df


def _text(value) -> str:
    return str(value) if value is not None and pd.notna(value) else ""


def load_cohort_definitions(settings_dir: str | Path) -> tuple[CohortDefinition, ...]:
    """Read CohortsToCreate.csv; a missing type column means every cohort is a target."""
    path = Path(settings_dir) / COHORTS_FILE
    if not path.exists():
        raise ConfigurationError(f"Cohort definitions not found: {path}")
    df = _read_csv(path, ["cohortId", "name"])

    cohorts = []
    for row in df.itertuples(index=False):
        try:
            cohorts.append(
                CohortDefinition(
                    cohort_id=int(row.cohortId),
                    name=str(row.name),
                    type=str(getattr(row, "type", "target")).strip().lower(),
                )
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid cohort definition in {path.name}: {e}") from e
    return tuple(cohorts)


def load_custom_covariates(settings_dir: str | Path) -> tuple[CustomCovariate, ...]:
    """
    Read CustomCovariates.csv.

    A missing file means the study has no custom covariates.

    Raises:
        ConfigurationError: If the file lacks the atlasId or cohortName column
    """
    path = Path(settings_dir) / CUSTOM_COVARIATES_FILE
    if not path.exists():
        return ()
    df = _read_csv(path, ["atlasId", "cohortName"])

    covariates = []
    for row in df.itertuples(index=False):
        name = getattr(row, "covariateName", None)
        covariates.append(
            CustomCovariate(
                atlas_id=int(row.atlasId),
                cohort_name=str(row.cohortName),
                covariate_name=_text(name) or None,
            )
        )
    return tuple(covariates)


def _load_covariate_settings(models_dir: Path, model_id: str, uses_cohorts: bool) -> CovariateSettings:
    standard_path = models_dir / f"{model_id}{STANDARD_FEATURES_SUFFIX}"
    if not standard_path.exists():
        return CovariateSettings(use_cohort_covariates=uses_cohorts)

    names = _read_csv(standard_path, ["x"])["x"].dropna().astype(str).tolist()

    include_path = models_dir / f"{model_id}{STANDARD_INCLUDE_SUFFIX}"
    if not include_path.exists():
        raise ConfigurationError(
            f"{standard_path.name} requires a matching {include_path.name}"
        )
    included = _read_csv(include_path, ["x"])["x"].dropna().astype(int).tolist()

    settings = CovariateSettings.from_feature_names(names, included)
    if uses_cohorts and not settings.use_cohort_covariates:
        settings = settings.model_copy(update={"use_cohort_covariates": True})
    return settings


def load_model(models_dir: str | Path, model_id: str) -> ModelSettings:
    """
    Load one point-score model.

    Raises:
        ConfigurationError: If a model file is missing or malformed
    """
    models_dir = Path(models_dir)
    model_path = models_dir / f"{model_id}{MODEL_SUFFIX}"
    prob_path = models_dir / f"{model_id}{PROBABILITY_SUFFIX}"
    if not prob_path.exists():
        raise ConfigurationError(f"Model {model_id} has no probability table {prob_path.name}")

    points_df = _read_csv(model_path, ["covariateId", "points"])
    prob_df = _read_csv(prob_path, ["points", "probability"])

    covariate_points = tuple(
        CovariatePoints(
            covariate_id=int(row.covariateId),
            covariate_name=_text(getattr(row, "covariateName", "")),
            points=float(row.points),
        )
        for row in points_df.itertuples(index=False)
    )
    uses_cohorts = any(
        c.covariate_id % 1000 == COHORT_COVARIATE_ANALYSIS_ID for c in covariate_points
    )

    try:
        return ModelSettings(
            model_id=model_id,
            covariate_points=covariate_points,
            probability_map=tuple(
                (float(p), float(q)) for p, q in zip(prob_df["points"], prob_df["probability"])
            ),
            covariate_settings=_load_covariate_settings(models_dir, model_id, uses_cohorts),
        )
    except ValidationError as e:
        raise ConfigurationError(f"Invalid model {model_id}: {e}") from e


def load_model_settings(settings_dir: str | Path) -> dict[str, ModelSettings]:
    """
    Load every model under <settings_dir>/models, keyed by model id.

    Raises:
        ConfigurationError: If no model is defined or one is malformed
    """
    models_dir = Path(settings_dir) / MODELS_SUBDIR
    model_files = sorted(models_dir.glob(f"*{MODEL_SUFFIX}"))
    if not model_files:
        raise ConfigurationError(f"No *{MODEL_SUFFIX} files found in {models_dir}")

    models = {}
    for path in model_files:
        model_id = path.name[: -len(MODEL_SUFFIX)]
        models[model_id] = load_model(models_dir, model_id)
        logger.debug(
            f"Loaded model {model_id}: {len(models[model_id].covariate_points)} covariates, "
            f"{len(models[model_id].probability_map)} point totals"
        )
    return models


def resolve_settings_dir(settings_dir: str | Path | None) -> Path:
    return Path(settings_dir) if settings_dir is not None else packaged_settings_dir()


def load_study_settings(settings_dir: str | Path | None = None) -> StudySettings:
    """
    Read the whole study definition from settings_dir.

    Args:
        settings_dir: Settings directory (default: settings shipped with the package)

    Returns:
        Immutable StudySettings

    Raises:
        ConfigurationError: If any settings file is missing or malformed
    """
    settings_dir = resolve_settings_dir(settings_dir)
    if not settings_dir.is_dir():
        raise ConfigurationError(f"Settings directory not found: {settings_dir}")

    settings = StudySettings(
        settings_dir=settings_dir,
        cohorts=load_cohort_definitions(settings_dir),
        custom_covariates=load_custom_covariates(settings_dir),
        models=load_model_settings(settings_dir),
    )
    logger.info(
        f"Loaded settings from {settings_dir}: {len(settings.cohorts)} cohorts, "
        f"{len(settings.custom_covariates)} custom covariates, {len(settings.models)} models"
    )
    return settings


def sql_template_path(settings_dir: str | Path, name: str) -> Path:
    return Path(settings_dir) / SQL_SUBDIR / f"{name}.sql"
