"""Configuration system for the validation study."""

from rcri_study.config.loader import (
    apply_overrides,
    load_study_config,
    load_yaml,
    save_config,
)
from rcri_study.config.schema import (
    AnalysisSpec,
    CohortDefinition,
    CovariatePoints,
    CovariateSettings,
    CustomCovariate,
    DatabaseConfig,
    DCAConfig,
    EvaluationConfig,
    ExecutionConfig,
    ModelSettings,
    PackagingConfig,
    PopulationConfig,
    RecalibrationConfig,
    StudyConfig,
    StudySettings,
)
from rcri_study.config.settings import load_model_settings, load_study_settings
from rcri_study.config.validation import (
    ConfigValidationError,
    ConfigValidationWarning,
    validate_study_config,
)

__all__ = [
    "AnalysisSpec",
    "CohortDefinition",
    "ConfigValidationError",
    "ConfigValidationWarning",
    "CovariatePoints",
    "CovariateSettings",
    "CustomCovariate",
    "DCAConfig",
    "DatabaseConfig",
    "EvaluationConfig",
    "ExecutionConfig",
    "ModelSettings",
    "PackagingConfig",
    "PopulationConfig",
    "RecalibrationConfig",
    "StudyConfig",
    "StudySettings",
    "apply_overrides",
    "load_model_settings",
    "load_study_config",
    "load_study_settings",
    "load_yaml",
    "save_config",
    "validate_study_config",
]
