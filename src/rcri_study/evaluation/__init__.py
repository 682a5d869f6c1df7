"""Performance evaluation, covariate summaries, result bundles and packaging."""

from rcri_study.evaluation.covariate_summary import compute_covariate_summary, merge_demographic_summary
from rcri_study.evaluation.packaging import package_results
from rcri_study.evaluation.performance import (
    EvaluationTable,
    PerformanceEvaluation,
    evaluate_predictions,
    reformat_performance,
)
from rcri_study.evaluation.reports import AnalysisResult, OutputDirectories, ResultsWriter, load_result

__all__ = [
    "AnalysisResult",
    "EvaluationTable",
    "OutputDirectories",
    "PerformanceEvaluation",
    "ResultsWriter",
    "compute_covariate_summary",
    "evaluate_predictions",
    "load_result",
    "merge_demographic_summary",
    "package_results",
    "reformat_performance",
]
