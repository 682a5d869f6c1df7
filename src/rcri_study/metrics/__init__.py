"""Discrimination, decision-curve and bootstrap metrics."""

from rcri_study.metrics.dca import generate_thresholds, net_benefit, net_benefit_curve, summarize_curve
from rcri_study.metrics.discrimination import auroc, auroc_with_ci, compute_discrimination_metrics

__all__ = [
    "auroc",
    "auroc_with_ci",
    "compute_discrimination_metrics",
    "generate_thresholds",
    "net_benefit",
    "net_benefit_curve",
    "summarize_curve",
]
