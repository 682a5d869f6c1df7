"""
End-to-end tests for the study runner.

Covers:
- run_step error conversion
- A full analysis against the DuckDB CDM fixture
- Recalibration (applied, and failing with the original predictions kept)
- One failing analysis not affecting the others
- execute() with analyses and packaging enabled
"""

import json
import logging
import zipfile

import duckdb
import numpy as np
import pandas as pd
import pytest

from conftest import make_raw_data
from rcri_study.config.schema import (
    AnalysisSpec,
    ExecutionConfig,
    RecalibrationConfig,
    StudyConfig,
)
from rcri_study.data.extraction import DuckDBCovariateExtractor
from rcri_study.errors import ConfigurationError, EvaluationError, ExtractionError
from rcri_study.evaluation.reports import OutputDirectories, load_result
from rcri_study.study.analyses import enumerate_analyses
from rcri_study.study.execute import execute
from rcri_study.study.runner import (
    COMPLETED,
    FAILED,
    PARTIAL,
    Failure,
    StudyRunner,
    Success,
    run_step,
)

# ============================================================================
# Helpers
# ============================================================================


class FakeExtractor:
    """Synthetic extractor: 20 entries, rows 1-5 with the outcome, 1-8 with the covariate."""

    def __init__(self, failing_targets=(), outcome_rows=range(1, 6)):
        self.failing_targets = set(failing_targets)
        self.outcome_rows = list(outcome_rows)
        self.closed = False

    def extract(self, target_id, outcome_id, settings, sample_size=None):
        if target_id in self.failing_targets:
            raise ExtractionError(f"target cohort {target_id} could not be read")
        return make_raw_data(20, outcome_rows=self.outcome_rows, covariate_rows=range(1, 9))

    def close(self):
        self.closed = True


def _duckdb_factory(config, settings):
    def factory():
        con = duckdb.connect(str(config.database.database))
        return DuckDBCovariateExtractor(con, config.database, settings.custom_covariates)

    return factory


@pytest.fixture
def output_dirs(study_config):
    return OutputDirectories.create(study_config.output_folder, study_config.database.cdm_database_name)


# ============================================================================
# run_step
# ============================================================================


class TestRunStep:
    def test_success(self):
        result = run_step("add", lambda a, b: a + b, 1, 2)
        assert isinstance(result, Success)
        assert result.ok and result.value == 3

    def test_study_error_kept(self):
        def boom():
            raise ExtractionError("no rows")

        result = run_step("extract", boom)
        assert isinstance(result, Failure)
        assert not result.ok
        assert isinstance(result.error, ExtractionError)
        assert result.to_dict() == {
            "step": "extract",
            "error_type": "ExtractionError",
            "message": "no rows",
        }

    def test_computation_error_converted(self):
        def boom():
            raise ZeroDivisionError("division by zero")

        result = run_step("evaluate", boom)
        assert isinstance(result.error, EvaluationError)
        assert isinstance(result.error.__cause__, ZeroDivisionError)

        result = run_step("score", boom, error_type=ExtractionError)
        assert isinstance(result.error, ExtractionError)

    def test_configuration_error_propagates(self):
        def boom():
            raise ConfigurationError("bad config")

        with pytest.raises(ConfigurationError):
            run_step("extract", boom)


# ============================================================================
# Runner against the DuckDB CDM
# ============================================================================


class TestRunnerDuckDB:
    def test_completed_analysis(self, study_config, study_settings, output_dirs):
        analyses = enumerate_analyses(study_config.analyses, study_settings)
        runner = StudyRunner(
            study_config, study_settings, _duckdb_factory(study_config, study_settings), output_dirs
        )
        outcome = runner.run_analysis(analyses[0])

        assert outcome.status == COMPLETED
        assert outcome.failures == []
        result = outcome.result

        # 20 patients; persons 1-8 score 0.4, of whom 1-5 have the outcome
        assert result.evaluation.value("population_size") == 20
        assert result.evaluation.value("outcome_count") == 5
        assert result.evaluation.value("AUROC") == pytest.approx(0.9)
        assert "intercept" not in result.evaluation.metrics()

        summary = result.covariate_summary
        assert summary["covariate_id"].tolist()[-2:] == [-1, -1]
        assert summary["covariate_kind"].tolist()[-2:] == ["demographic", "demographic"]
        demographic = summary.iloc[-2:]
        assert (
            demographic["covariate_count_with_no_outcome"] + demographic["covariate_count_with_outcome"]
            == 20
        ).all()
        assert (demographic["covariate_count_with_outcome"] == 5).all()

        bundle = output_dirs.bundle_dir("Analysis_1")
        assert outcome.bundle_dir == bundle
        assert (bundle / "covariate_summary.csv").exists()
        assert (bundle / "nb.csv").exists()
        assert not (bundle / "recalibration.json").exists()

    def test_intercept_recalibration(self, study_config, study_settings, output_dirs):
        config = study_config.model_copy(
            update={"recalibration": RecalibrationConfig(mode="INTERCEPT_ONLY")}
        )
        analyses = enumerate_analyses(config.analyses, study_settings)
        runner = StudyRunner(config, study_settings, _duckdb_factory(config, study_settings), output_dirs)
        outcome = runner.run_analysis(analyses[0])

        assert outcome.status == COMPLETED
        evaluation = outcome.result.evaluation
        assert evaluation.metrics()[-1] == "intercept"
        assert "gradient" not in evaluation.metrics()
        # A uniform shift of the log-odds keeps the ranking
        assert evaluation.value("AUROC") == pytest.approx(0.9)
        # Recalibrated mean risk matches the observed rate
        assert outcome.result.prediction["probability"].mean() == pytest.approx(0.25, abs=1e-6)

        with open(output_dirs.bundle_dir("Analysis_1") / "recalibration.json") as f:
            fit = json.load(f)
        assert fit["mode"] == "INTERCEPT_ONLY"
        assert fit["slope"] == 1.0
        assert fit["intercept"] == pytest.approx(evaluation.value("intercept"))

    def test_intercept_and_slope_recalibration(self, study_config, study_settings, output_dirs):
        config = study_config.model_copy(
            update={"recalibration": RecalibrationConfig(mode="INTERCEPT_AND_SLOPE")}
        )
        analyses = enumerate_analyses(config.analyses, study_settings)
        # An outcome in the low-risk group keeps both group rates inside (0, 1)
        runner = StudyRunner(
            config,
            study_settings,
            lambda: FakeExtractor(outcome_rows=[1, 2, 3, 4, 5, 12]),
            output_dirs,
        )
        outcome = runner.run_analysis(analyses[0])

        assert outcome.status == COMPLETED
        assert outcome.result.evaluation.metrics()[-2:] == ["intercept", "gradient"]
        # Two score levels: the fit reproduces each group's observed rate
        p = outcome.result.prediction["probability"].to_numpy()
        np.testing.assert_allclose(p[:8], 5 / 8, atol=1e-6)
        np.testing.assert_allclose(p[8:], 1 / 12, atol=1e-6)

    def test_empty_target_fails_analysis(self, study_config, study_settings, output_dirs):
        specs = [AnalysisSpec(target_id=3, outcome_id=2, model="toy")]
        analyses = enumerate_analyses(specs, study_settings)
        runner = StudyRunner(
            study_config, study_settings, _duckdb_factory(study_config, study_settings), output_dirs
        )
        outcome = runner.run_analysis(analyses[0])

        assert outcome.status == FAILED
        assert outcome.bundle_dir is None
        assert output_dirs.existing_bundles() == []


# ============================================================================
# Partial failure
# ============================================================================


class TestPartialFailure:
    def test_failing_analysis_does_not_stop_others(
        self, study_config, study_settings, output_dirs, caplog
    ):
        specs = [
            AnalysisSpec(target_id=1, outcome_id=2, model="toy"),
            AnalysisSpec(target_id=3, outcome_id=2, model="toy"),
            AnalysisSpec(target_id=1, outcome_id=2, model="toy"),
        ]
        analyses = enumerate_analyses(specs, study_settings)
        runner = StudyRunner(
            study_config, study_settings, lambda: FakeExtractor(failing_targets=[3]), output_dirs
        )

        with caplog.at_level(logging.INFO, logger="rcri_study"):
            outcomes = runner.run(analyses)

        assert [o.status for o in outcomes] == [COMPLETED, FAILED, COMPLETED]
        assert outcomes[1].failures[0].step == "extract"
        assert output_dirs.existing_bundles() == [
            output_dirs.bundle_dir("Analysis_1"),
            output_dirs.bundle_dir("Analysis_3"),
        ]
        assert "analysis_id=Analysis_2 step=extract error=ExtractionError" in caplog.text

    def test_failed_recalibration_keeps_original_predictions(
        self, study_config, study_settings, output_dirs
    ):
        config = study_config.model_copy(
            update={"recalibration": RecalibrationConfig(mode="INTERCEPT_ONLY")}
        )
        analyses = enumerate_analyses(config.analyses, study_settings)
        # No outcomes: the recalibration model cannot be fitted
        runner = StudyRunner(
            config, study_settings, lambda: FakeExtractor(outcome_rows=[]), output_dirs
        )
        outcome = runner.run_analysis(analyses[0])

        assert outcome.status == PARTIAL
        assert [f.step for f in outcome.failures] == ["recalibrate"]
        np.testing.assert_allclose(
            outcome.result.prediction["probability"], [0.4] * 8 + [0.1] * 12
        )
        assert outcome.result.recalibration is None
        assert "intercept" not in outcome.result.evaluation.metrics()

        bundle = output_dirs.bundle_dir("Analysis_1")
        assert not (bundle / "recalibration.json").exists()
        loaded = load_result(bundle)
        assert loaded.failures[0]["error_type"] == "RecalibrationError"

    def test_parallel_run(self, study_config, study_settings, output_dirs):
        config = study_config.model_copy(update={"execution": ExecutionConfig(n_jobs=2)})
        specs = [AnalysisSpec(target_id=1, outcome_id=2, model="toy")] * 3
        analyses = enumerate_analyses(specs, study_settings)
        runner = StudyRunner(config, study_settings, lambda: FakeExtractor(), output_dirs)

        outcomes = runner.run(analyses)

        assert [o.analysis_id for o in outcomes] == ["Analysis_1", "Analysis_2", "Analysis_3"]
        assert all(o.status == COMPLETED for o in outcomes)
        assert len(output_dirs.existing_bundles()) == 3


# ============================================================================
# execute()
# ============================================================================


def test_execute_runs_and_packages(study_config, study_settings):
    config = study_config.model_copy(
        update={
            "execution": ExecutionConfig(run_analyses=True, package_results=True),
            "strictness": "off",
        }
    )
    viewed = execute(config, study_settings)

    assert viewed is False
    database_dir = config.database_output_dir
    assert (database_dir / "log.txt").exists()
    assert "Running analyses" in (database_dir / "log.txt").read_text()

    settings_file = config.output_folder / "analysis_settings.csv"
    assert pd.read_csv(settings_file)["analysis_id"].tolist() == ["Analysis_1"]

    zip_path = database_dir / "testdb_results.zip"
    assert zip_path.exists()
    with zipfile.ZipFile(zip_path) as archive:
        names = archive.namelist()
    assert "analysis_settings.csv" in names
    assert any(n.endswith("evaluation_statistics.csv") for n in names)


def test_execute_creates_cohorts(tmp_path, database_config, settings_dir):
    config = StudyConfig(
        settings_dir=settings_dir,
        output_folder=tmp_path / "out",
        database=database_config,
        analyses=[{"target_id": 1, "outcome_id": 2, "model": "toy"}],
        execution={"create_cohorts": True, "run_analyses": True},
        strictness="off",
    )
    execute(config)

    bundle = config.database_output_dir / "Analysis_1" / "plpResult"
    evaluation = pd.read_csv(bundle / "evaluation_statistics.csv")
    auroc = evaluation.loc[evaluation["metric"] == "AUROC", "value"].iloc[0]
    assert auroc == pytest.approx(0.9)
