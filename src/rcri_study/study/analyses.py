"""
Analysis enumeration.

An analysis is one (target cohort, outcome cohort, model) triple with an id
of the form Analysis_<n>, numbered from 1 in enumeration order.
"""

import logging
from dataclasses import asdict, dataclass
from itertools import product
from pathlib import Path

import pandas as pd

from rcri_study.config.schema import AnalysisSpec, StudySettings, normalize_model_id
from rcri_study.errors import ConfigurationError

logger = logging.getLogger(__name__)

ANALYSIS_PREFIX = "Analysis_"


@dataclass(frozen=True)
class Analysis:
    analysis_id: str
    target_id: int
    target_name: str
    outcome_id: int
    outcome_name: str
    model_id: str


def _cohort_names(settings: StudySettings) -> dict[int, str]:
    return {c.cohort_id: c.name for c in settings.cohorts}


def enumerate_analyses(
    specs: list[AnalysisSpec] | None,
    settings: StudySettings,
) -> list[Analysis]:
    """
    Resolve the analyses to run.

    Args:
        specs: Explicit triples, or None for every target x outcome x model
        settings: Study settings (cohorts and models)

    Returns:
        Analyses with ids Analysis_1, Analysis_2, ...

    Raises:
        ConfigurationError: If a triple names an unknown cohort or model, or
            "run all" finds no target, outcome or model
    """
    names = _cohort_names(settings)

    if specs is None:
        targets, outcomes, models = settings.target_ids, settings.outcome_ids, sorted(settings.models)
        if not targets or not outcomes or not models:
            raise ConfigurationError(
                f"Cannot run all analyses: {len(targets)} target cohorts, "
                f"{len(outcomes)} outcome cohorts, {len(models)} models"
            )
        triples = [(t, o, m) for t, o, m in product(targets, outcomes, models)]
    else:
        triples = [(s.target_id, s.outcome_id, s.model) for s in specs]

    analyses = []
    for n, (target_id, outcome_id, model) in enumerate(triples, start=1):
        for cohort_id in (target_id, outcome_id):
            if cohort_id not in names:
                raise ConfigurationError(
                    f"Cohort {cohort_id} is not defined in CohortsToCreate.csv"
                )
        model_id = settings.model(model).model_id
        analyses.append(
            Analysis(
                analysis_id=f"{ANALYSIS_PREFIX}{n}",
                target_id=int(target_id),
                target_name=names[target_id],
                outcome_id=int(outcome_id),
                outcome_name=names[outcome_id],
                model_id=normalize_model_id(model_id),
            )
        )

    logger.info(f"Enumerated {len(analyses)} analyses")
    return analyses


def save_analysis_settings(analyses: list[Analysis], path: str | Path) -> Path:
    """Write analysis_settings.csv (one row per analysis)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    frame = pd.DataFrame(
        [asdict(a) for a in analyses],
        columns=["analysis_id", "target_id", "target_name", "outcome_id", "outcome_name", "model_id"],
    )
    frame.to_csv(path, index=False)
    return path
