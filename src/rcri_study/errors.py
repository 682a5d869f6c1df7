"""
Error taxonomy for the validation study.

Only ConfigurationError is fatal. The other kinds are raised by a single
analysis step and are turned into a Failure result by the study runner, which
logs them and moves on to the next step or analysis.
"""


class StudyError(Exception):
    """Base class for all study errors."""


class ConfigurationError(StudyError):
    """Malformed study configuration or settings file. Aborts the run."""


class ExtractionError(StudyError):
    """Data extraction or population construction failed for one analysis."""


class RecalibrationError(StudyError):
    """Recalibration fit failed (non-convergence, degenerate outcomes)."""


class EvaluationError(StudyError):
    """Performance or covariate summary computation failed."""
