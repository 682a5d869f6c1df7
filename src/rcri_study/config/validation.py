"""
Configuration validation and safety checks.

Issues that do not make the configuration invalid, but probably are not what
the user meant, are collected and reported per the strictness level.
"""

import warnings

from rcri_study.config.schema import StudyConfig
from rcri_study.errors import ConfigurationError

# Above this many DCA thresholds the curve gets slow and the nb.csv large
MAX_DCA_THRESHOLDS = 10000


class ConfigValidationError(ConfigurationError):
    """Raised when configuration validation fails in strict mode."""

    pass


class ConfigValidationWarning(UserWarning):
    """Warning for potential configuration issues."""

    pass


def validate_study_config(config: StudyConfig, strictness: str | None = None) -> list[str]:
    """
    Validate study configuration for likely mistakes.

    Args:
        config: StudyConfig instance
        strictness: "off", "warn", or "error" (default: config.strictness)

    Returns:
        List of issue messages (empty when the configuration looks fine)
    """
    strictness = strictness or config.strictness
    issues = []
    execution = config.execution

    if not any(
        [
            execution.create_cohorts,
            execution.run_analyses,
            execution.package_results,
            execution.view_results,
        ]
    ):
        issues.append(
            "No study stage enabled (create_cohorts, run_analyses, package_results, "
            "view_results are all False). Nothing will run."
        )

    # Risk window anchored at cohort end but started at cohort start can be empty
    population = config.population
    if population.start_anchor == "cohort end" and population.end_anchor == "cohort start":
        issues.append(
            "Risk window starts at cohort end but ends relative to cohort start; "
            "subjects with long cohort eras will have an empty risk window."
        )

    if population.require_time_at_risk and population.min_time_at_risk == 0:
        issues.append("require_time_at_risk=True with min_time_at_risk=0 has no effect.")

    dca = config.dca
    if dca.xstop is not None:
        n_thresholds = int((dca.xstop - dca.xstart) / dca.xby) + 1
        if n_thresholds == 1:
            issues.append(
                f"DCA range [{dca.xstart}, {dca.xstop}] with xby={dca.xby} "
                "evaluates a single threshold."
            )
    else:
        n_thresholds = int((1.0 - dca.xstart) / dca.xby) + 1
    if n_thresholds > MAX_DCA_THRESHOLDS:
        issues.append(
            f"DCA step xby={dca.xby} yields up to {n_thresholds} thresholds "
            f"(> {MAX_DCA_THRESHOLDS})."
        )

    if execution.package_results and config.packaging.min_cell_count == 0:
        issues.append("min_cell_count=0: packaged results will not be redacted.")

    if execution.view_results:
        issues.append("view_results=True but no interactive results viewer is available.")

    _handle_issues(issues, strictness, "Study configuration")
    return issues


def _handle_issues(issues: list[str], strictness: str, context: str):
    """Handle validation issues based on strictness level."""
    if not issues:
        return

    message = f"{context} issues:\n" + "\n".join(f"  - {issue}" for issue in issues)

    if strictness == "error":
        raise ConfigValidationError(message)
    elif strictness == "warn":
        warnings.warn(message, ConfigValidationWarning, stacklevel=3)
    # strictness == "off": do nothing
