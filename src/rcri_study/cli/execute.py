"""
CLI implementation for the execute, package-results and validate-config
commands.
"""

import logging
import sys
from pathlib import Path
from typing import Any

from rcri_study.config.loader import load_study_config
from rcri_study.config.settings import load_study_settings
from rcri_study.config.validation import validate_study_config
from rcri_study.errors import ConfigurationError
from rcri_study.evaluation.packaging import package_results
from rcri_study.study.execute import execute
from rcri_study.utils.logging import log_section, setup_logger


def _verbose_to_level(verbose: int) -> int:
    """Convert verbose count to logging level."""
    return logging.DEBUG if verbose > 0 else logging.INFO


def run_execute(
    config_file: str | None,
    cli_args: dict[str, Any],
    overrides: list[str] | None = None,
    verbose: int = 0,
) -> bool:
    """
    Run the study from CLI arguments.

    Args:
        config_file: Path to YAML config file (optional)
        cli_args: Dotted config keys from CLI flags (None = not given)
        overrides: "key=value" overrides
        verbose: Verbosity level

    Returns:
        Whether a results view was produced
    """
    logger = setup_logger("rcri_study", level=_verbose_to_level(verbose))

    try:
        config = load_study_config(config_file=config_file, overrides=overrides, cli_args=cli_args)
        viewed = execute(config)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    logger.info(f"Results: {config.database_output_dir}")
    return viewed


def run_package_results(results_dir: str | Path, min_cell_count: int, verbose: int = 0) -> Path:
    """Redact and zip the bundles in an existing results directory."""
    logger = setup_logger("rcri_study", level=_verbose_to_level(verbose))
    log_section(logger, "Packaging results")

    results_dir = Path(results_dir)
    analysis_settings = results_dir.parent / "analysis_settings.csv"
    zip_path = package_results(
        results_dir,
        min_cell_count=min_cell_count,
        analysis_settings_file=analysis_settings if analysis_settings.exists() else None,
    )
    logger.info(f"Wrote {zip_path}")
    return zip_path


def run_validate_config(config_file: str | Path, verbose: int = 0):
    """
    Validate a config file and the settings it points to.

    Exits with status 1 when the configuration is invalid.
    """
    logger = setup_logger("rcri_study", level=_verbose_to_level(verbose))
    logger.info(f"Validating config: {config_file}")

    try:
        config = load_study_config(config_file=config_file)
        issues = validate_study_config(config, strictness="off")
        settings = load_study_settings(config.settings_dir)
    except ConfigurationError as e:
        print(f"[FAIL] {Path(config_file).name}: {e}")
        sys.exit(1)

    for issue in issues:
        print(f"  - {issue}")
    print(
        f"[OK] {Path(config_file).name}: {len(settings.cohorts)} cohorts, "
        f"{len(settings.models)} models, {len(issues)} warnings"
    )
