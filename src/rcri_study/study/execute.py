"""
Top-level study execution.

Runs the enabled stages in order: create cohorts, run analyses, package
results, view results. Only configuration problems abort the run.
"""

import logging

from rcri_study.config.loader import log_config_summary
from rcri_study.config.schema import StudyConfig, StudySettings
from rcri_study.config.settings import load_study_settings
from rcri_study.config.validation import validate_study_config
from rcri_study.data.cohorts import DuckDBCohortStore
from rcri_study.data.extraction import DuckDBCovariateExtractor
from rcri_study.evaluation.packaging import package_results
from rcri_study.evaluation.reports import OutputDirectories
from rcri_study.study.analyses import enumerate_analyses, save_analysis_settings
from rcri_study.study.runner import AnalysisOutcome, StudyRunner
from rcri_study.utils.logging import add_file_handler, log_section, remove_file_handler

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "rcri_study"


def create_cohorts(config: StudyConfig, settings: StudySettings) -> dict[int, int]:
    """Materialize every study and covariate cohort; returns entries per cohort id."""
    log_section(logger, "Creating cohorts")
    with DuckDBCohortStore.connect(config.database, settings.settings_dir) as store:
        counts = store.materialize_cohorts(settings.cohorts, settings.custom_covariates)
    logger.info(f"Created {len(counts)} cohorts in {config.database.cohort_table}")
    return counts


def run_analyses(
    config: StudyConfig,
    settings: StudySettings,
    dirs: OutputDirectories,
) -> list[AnalysisOutcome]:
    """Enumerate and run every analysis against the CDM database."""
    log_section(logger, "Running analyses")
    analyses = enumerate_analyses(config.analyses, settings)
    save_analysis_settings(analyses, dirs.analysis_settings_file)

    with DuckDBCohortStore.connect(config.database, settings.settings_dir) as store:

        def extractor_factory() -> DuckDBCovariateExtractor:
            return DuckDBCovariateExtractor(
                store.cursor(),
                config.database,
                settings.custom_covariates,
                seed=config.execution.sample_seed,
            )

        runner = StudyRunner(config, settings, extractor_factory, dirs)
        return runner.run(analyses)


def execute(config: StudyConfig, settings: StudySettings | None = None) -> bool:
    """
    Run the study.

    Args:
        config: Study configuration
        settings: Study settings (default: loaded from config.settings_dir)

    Returns:
        True when an interactive results view was produced. No viewer ships
        with this package, so this is always False.

    Raises:
        ConfigurationError: If the configuration or a settings file is invalid
        ExtractionError: If the database cannot be opened
    """
    dirs = OutputDirectories.create(config.output_folder, config.database.cdm_database_name)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    if package_logger.level == logging.NOTSET:
        package_logger.setLevel(logging.INFO)
    handler = add_file_handler(package_logger, dirs.log_file)

    try:
        log_section(logger, "RCRI external validation study")
        log_config_summary(config, logger)
        validate_study_config(config)

        if settings is None:
            settings = load_study_settings(config.settings_dir)

        execution = config.execution
        if execution.create_cohorts:
            create_cohorts(config, settings)

        if execution.run_analyses:
            run_analyses(config, settings, dirs)

        if execution.package_results:
            log_section(logger, "Packaging results")
            package_results(
                dirs.database,
                min_cell_count=config.packaging.min_cell_count,
                analysis_settings_file=dirs.analysis_settings_file,
            )

        if execution.view_results:
            logger.warning(f"No results viewer is available; result bundles are in {dirs.database}")
        return False
    finally:
        remove_file_handler(package_logger, handler)
