"""Analysis enumeration, per-analysis pipeline and study execution."""

from rcri_study.study.analyses import Analysis, enumerate_analyses, save_analysis_settings
from rcri_study.study.execute import execute
from rcri_study.study.runner import (
    AnalysisOutcome,
    Failure,
    StepResult,
    StudyRunner,
    Success,
    run_step,
)

__all__ = [
    "Analysis",
    "AnalysisOutcome",
    "Failure",
    "StepResult",
    "StudyRunner",
    "Success",
    "enumerate_analyses",
    "execute",
    "run_step",
    "save_analysis_settings",
]
