"""
StudyRunner: per-analysis pipeline with partial-failure semantics.

For each analysis (target, outcome, model):
    extract -> population -> score -> evaluate -> [recalibrate] -> decision
    curve -> covariate summary -> demographic merge -> persist

Every step returns a StepResult (Success | Failure). Extraction, population
and scoring failures skip the analysis; recalibration failures keep the
original predictions; evaluation and summary failures leave the matching
table out of the bundle. ConfigurationError is never caught here.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import numpy as np
from joblib import Parallel, delayed

from rcri_study.config.schema import StudyConfig, StudySettings
from rcri_study.data.extraction import CovariateExtractor, RawData
from rcri_study.data.population import create_study_population
from rcri_study.data.schema import OUTCOME_COUNT_COL, PROBABILITY_COL
from rcri_study.errors import (
    ConfigurationError,
    EvaluationError,
    ExtractionError,
    RecalibrationError,
    StudyError,
)
from rcri_study.evaluation.covariate_summary import (
    compute_covariate_summary,
    merge_demographic_summary,
)
from rcri_study.evaluation.performance import (
    EvaluationTable,
    evaluate_predictions,
    reformat_performance,
    tag_summaries,
)
from rcri_study.evaluation.reports import AnalysisResult, OutputDirectories, ResultsWriter
from rcri_study.metrics.dca import net_benefit_curve
from rcri_study.models.point_score import ModelProvider, PointScoreModel
from rcri_study.models.recalibration import (
    RecalibrationMode,
    apply_recalibration,
    fit_recalibration,
)
from rcri_study.study.analyses import Analysis

logger = logging.getLogger(__name__)

# Errors raised by pandas/numpy/statsmodels inside a step
COMPUTATION_ERRORS = (
    ValueError,
    KeyError,
    TypeError,
    ZeroDivisionError,
    FloatingPointError,
    np.linalg.LinAlgError,
)

COMPLETED = "completed"
PARTIAL = "partial"
FAILED = "failed"


# ============================================================================
# Step results
# ============================================================================


@dataclass(frozen=True)
class Success:
    value: Any

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure:
    error: StudyError
    step: str

    @property
    def ok(self) -> bool:
        return False

    def to_dict(self) -> dict:
        return {
            "step": self.step,
            "error_type": type(self.error).__name__,
            "message": str(self.error),
        }


StepResult = Success | Failure


def run_step(
    step: str,
    fn: Callable[..., Any],
    *args,
    error_type: type[StudyError] = EvaluationError,
    **kwargs,
) -> StepResult:
    """
    Run one pipeline step and wrap its outcome.

    Study errors become a Failure as raised; computation errors are converted
    to error_type. ConfigurationError propagates.

    Args:
        step: Step name (for logs and the failure record)
        fn: Callable to run with *args/**kwargs
        error_type: Error kind for unexpected computation errors

    Returns:
        Success(value) or Failure(error, step)
    """
    try:
        return Success(fn(*args, **kwargs))
    except ConfigurationError:
        raise
    except StudyError as e:
        return Failure(e, step)
    except COMPUTATION_ERRORS as e:
        wrapped = error_type(f"{type(e).__name__}: {e}")
        wrapped.__cause__ = e
        return Failure(wrapped, step)


# ============================================================================
# Analysis outcome
# ============================================================================


@dataclass
class AnalysisOutcome:
    """
    What happened to one analysis.

    Attributes:
        analysis_id: Analysis identifier
        status: "completed", "partial" (bundle written, some steps failed) or
            "failed" (no bundle)
        result: The composed result (None when the analysis was skipped)
        bundle_dir: Directory of the written bundle
        failures: Failed steps in pipeline order
    """

    analysis_id: str
    status: str
    result: AnalysisResult | None = None
    bundle_dir: Any = None
    failures: list[Failure] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status != FAILED


# ============================================================================
# Runner
# ============================================================================


class StudyRunner:
    """
    Run analyses against a configuration resolved once at startup.

    Args:
        config: Study configuration
        settings: Cohorts, custom covariates and per-model settings
        extractor_factory: Returns a new CovariateExtractor; called once per
            analysis so concurrent analyses never share a connection
        dirs: Output directories
        models: Model providers by model id (default: a PointScoreModel per
            model in settings)

    Usage:
        runner = StudyRunner(config, settings, factory, dirs)
        outcomes = runner.run(analyses)
    """

    def __init__(
        self,
        config: StudyConfig,
        settings: StudySettings,
        extractor_factory: Callable[[], CovariateExtractor],
        dirs: OutputDirectories,
        models: dict[str, ModelProvider] | None = None,
    ):
        self.config = config
        self.settings = settings
        self.extractor_factory = extractor_factory
        self.dirs = dirs
        if models is None:
            models = {model_id: PointScoreModel(m) for model_id, m in settings.models.items()}
        self.models = models

    def _log_failure(self, analysis_id: str, failure: Failure):
        logger.error(
            f"analysis_id={analysis_id} step={failure.step} "
            f"error={type(failure.error).__name__}: {failure.error}"
        )

    def _extract(self, analysis: Analysis) -> RawData:
        covariate_settings = self.settings.model(analysis.model_id).covariate_settings
        extractor = self.extractor_factory()
        try:
            return extractor.extract(
                analysis.target_id,
                analysis.outcome_id,
                covariate_settings,
                sample_size=self.config.execution.sample_size,
            )
        finally:
            close = getattr(extractor, "close", None)
            if close is not None:
                close()

    def _evaluate(self, predictions, analysis_id: str) -> tuple[EvaluationTable, dict]:
        ev = self.config.evaluation
        evaluation = evaluate_predictions(
            predictions,
            n_calibration_bins=ev.n_calibration_bins,
            age_group_width=ev.age_group_width,
            n_boot=ev.n_boot,
            seed=ev.seed,
        )
        return reformat_performance(evaluation, analysis_id), tag_summaries(evaluation, analysis_id)

    def _net_benefit(self, predictions):
        dca = self.config.dca
        return net_benefit_curve(
            predictions,
            outcome_col=OUTCOME_COUNT_COL,
            predictor_col=PROBABILITY_COL,
            xstart=dca.xstart,
            xstop=dca.xstop,
            xby=dca.xby,
        )

    def _input_settings(self, analysis: Analysis) -> dict:
        model = self.settings.model(analysis.model_id)
        return {
            "analysis_id": analysis.analysis_id,
            "target_id": analysis.target_id,
            "target_name": analysis.target_name,
            "outcome_id": analysis.outcome_id,
            "outcome_name": analysis.outcome_name,
            "model_id": analysis.model_id,
            "cdm_database_name": self.config.database.cdm_database_name,
            "sample_size": self.config.execution.sample_size,
            "population_settings": self.config.population.model_dump(mode="json"),
            "covariate_settings": model.covariate_settings.model_dump(mode="json"),
            "recalibration": self.config.recalibration.model_dump(mode="json"),
            "dca": self.config.dca.model_dump(mode="json"),
            "evaluation": self.config.evaluation.model_dump(mode="json"),
        }

    def run_analysis(self, analysis: Analysis) -> AnalysisOutcome:
        """
        Run one analysis and persist its bundle.

        Raises:
            ConfigurationError: Only for configuration problems; every other
                failure is recorded in the returned outcome
        """
        aid = analysis.analysis_id
        failures: list[Failure] = []

        def failed(failure: Failure) -> AnalysisOutcome:
            self._log_failure(aid, failure)
            failures.append(failure)
            logger.warning(f"Skipping {aid}: {failure.step} failed")
            return AnalysisOutcome(analysis_id=aid, status=FAILED, failures=failures)

        def record(failure: Failure):
            self._log_failure(aid, failure)
            failures.append(failure)

        logger.info(
            f"{aid}: target {analysis.target_id} ({analysis.target_name}), "
            f"outcome {analysis.outcome_id} ({analysis.outcome_name}), model {analysis.model_id}"
        )

        if analysis.model_id not in self.models:
            raise ConfigurationError(f"No model provider for {analysis.model_id}")
        model = self.models[analysis.model_id]

        # Data -------------------------------------------------------------
        extracted = run_step("extract", self._extract, analysis, error_type=ExtractionError)
        if not extracted.ok:
            return failed(extracted)
        raw = extracted.value

        built = run_step(
            "population",
            create_study_population,
            raw.cohorts,
            raw.outcomes,
            analysis.outcome_id,
            self.config.population,
            error_type=ExtractionError,
        )
        if not built.ok:
            return failed(built)
        population, attrition = built.value

        scored = run_step("score", model.score, raw, population, error_type=ExtractionError)
        if not scored.ok:
            return failed(scored)
        predictions = scored.value

        # Evaluation -------------------------------------------------------
        evaluation = None
        summaries: dict = {}
        evaluated = run_step("evaluate", self._evaluate, predictions, aid)
        if evaluated.ok:
            evaluation, summaries = evaluated.value
        else:
            record(evaluated)

        fit = None
        mode = self.config.recalibration.mode
        if mode != RecalibrationMode.NONE:
            fitted = run_step(
                "recalibrate",
                fit_recalibration,
                predictions,
                mode,
                max_iter=self.config.recalibration.max_iter,
                error_type=RecalibrationError,
            )
            if fitted.ok:
                fit = fitted.value
                predictions = apply_recalibration(fit, predictions)
                logger.info(
                    f"{aid}: {mode.value} recalibration intercept={fit.intercept:.4f} "
                    f"slope={fit.slope:.4f}"
                )
                reevaluated = run_step("evaluate_recalibrated", self._evaluate, predictions, aid)
                if reevaluated.ok:
                    table, summaries = reevaluated.value
                    evaluation = table.append(fit.evaluation_rows(aid))
                else:
                    record(reevaluated)
                    evaluation, summaries = None, {}
            else:
                record(fitted)
                logger.warning(f"{aid}: keeping the original predictions")

        curve = run_step("net_benefit", self._net_benefit, predictions)
        net_benefit = curve.value if curve.ok else None
        if not curve.ok:
            record(curve)

        # Covariate summary ------------------------------------------------
        covariate_summary = None
        summarized = run_step(
            "covariate_summary",
            compute_covariate_summary,
            raw.covariates,
            raw.covariate_ref,
            predictions,
            weights=model.weights(),
        )
        if summarized.ok:
            merged = run_step(
                "demographic_summary_merge",
                merge_demographic_summary,
                summarized.value,
                predictions,
            )
            if merged.ok:
                covariate_summary = merged.value
            else:
                record(merged)
                covariate_summary = summarized.value
        else:
            record(summarized)

        # Persist ----------------------------------------------------------
        result = AnalysisResult(
            analysis_id=aid,
            target_id=analysis.target_id,
            outcome_id=analysis.outcome_id,
            model_id=analysis.model_id,
            database=self.config.database.cdm_database_name,
            prediction=predictions,
            evaluation=evaluation,
            threshold_summary=summaries.get("threshold_summary"),
            calibration_summary=summaries.get("calibration_summary"),
            demographic_summary=summaries.get("demographic_summary"),
            covariate_summary=covariate_summary,
            net_benefit=net_benefit,
            recalibration=fit,
            model=model.to_dict() if hasattr(model, "to_dict") else {"name": analysis.model_id},
            input_settings=self._input_settings(analysis),
            attrition=attrition,
            failures=[f.to_dict() for f in failures],
        )

        bundle_dir = self.dirs.bundle_dir(aid)
        try:
            ResultsWriter(bundle_dir).write(result)
        except OSError as e:
            logger.error(f"analysis_id={aid} step=persist error={type(e).__name__}: {e}")
            return AnalysisOutcome(analysis_id=aid, status=FAILED, result=result, failures=failures)

        status = PARTIAL if failures else COMPLETED
        logger.info(f"{aid}: {status} ({len(failures)} failed steps)")
        return AnalysisOutcome(
            analysis_id=aid,
            status=status,
            result=result,
            bundle_dir=bundle_dir,
            failures=failures,
        )

    def run(self, analyses: list[Analysis]) -> list[AnalysisOutcome]:
        """
        Run every analysis; one analysis failing never stops the others.

        With execution.n_jobs > 1 analyses run on a thread pool. Each analysis
        gets its own extractor and writes to its own bundle directory.
        """
        n_jobs = min(self.config.execution.n_jobs, max(len(analyses), 1))
        if n_jobs == 1:
            outcomes = [self.run_analysis(a) for a in analyses]
        else:
            logger.info(f"Running {len(analyses)} analyses on {n_jobs} threads")
            outcomes = Parallel(n_jobs=n_jobs, prefer="threads")(
                delayed(self.run_analysis)(a) for a in analyses
            )
        log_outcomes(outcomes)
        return list(outcomes)


def log_outcomes(outcomes: list[AnalysisOutcome]):
    """Log a one-line summary per analysis and the totals."""
    for outcome in outcomes:
        steps = ", ".join(f.step for f in outcome.failures) or "-"
        logger.info(f"  {outcome.analysis_id}: {outcome.status} (failed steps: {steps})")
    n_ok = sum(o.succeeded for o in outcomes)
    logger.info(f"{n_ok} of {len(outcomes)} analyses produced a result bundle")
