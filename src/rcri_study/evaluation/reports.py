"""
ResultsWriter: study output directories and result bundle serialization.

Provides:
- AnalysisResult: Everything one analysis produced
- OutputDirectories: Output tree creation and path management
- ResultsWriter: Writes one analysis bundle (CSV/JSON files plus a joblib copy)

Bundle layout (<output_folder>/<db name>/<analysis_id>/plpResult/):
    prediction.csv, evaluation_statistics.csv, threshold_summary.csv,
    calibration_summary.csv, demographic_summary.csv, covariate_summary.csv,
    nb.csv, recalibration.json, model.json, input_settings.json,
    result.joblib
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pandas as pd

from rcri_study.evaluation.performance import EvaluationTable
from rcri_study.models.recalibration import RecalibrationFit
from rcri_study.utils.paths import (
    ANALYSIS_SETTINGS_FILENAME,
    EXPORT_SUBDIR,
    LOG_FILENAME,
    RESULT_SUBDIR,
)
from rcri_study.utils.serialization import load_joblib, save_joblib, save_json

logger = logging.getLogger(__name__)

RESULT_JOBLIB = "result.joblib"

# Bundle files holding one row per patient; never shared
PREDICTION_FILES = ["prediction.csv", RESULT_JOBLIB]


@dataclass
class AnalysisResult:
    """
    Composed result of one (target, outcome, model) analysis.

    Optional parts are None when their step failed or did not run; failures
    records each failed step as {"step", "error_type", "message"}.
    """

    analysis_id: str
    target_id: int
    outcome_id: int
    model_id: str
    database: str
    prediction: pd.DataFrame
    evaluation: EvaluationTable | None = None
    threshold_summary: pd.DataFrame | None = None
    calibration_summary: pd.DataFrame | None = None
    demographic_summary: pd.DataFrame | None = None
    covariate_summary: pd.DataFrame | None = None
    net_benefit: pd.DataFrame | None = None
    recalibration: RecalibrationFit | None = None
    model: dict[str, Any] = field(default_factory=dict)
    input_settings: dict[str, Any] = field(default_factory=dict)
    attrition: list[dict] = field(default_factory=list)
    failures: list[dict] = field(default_factory=list)


@dataclass
class OutputDirectories:
    """
    Structured output directory paths.

    Attributes:
        root: output_folder
        database: <root>/<cdm_database_name>; holds log.txt and the bundles
        export: <database>/export; redacted copies for sharing
    """

    root: Path
    database: Path
    export: Path

    @classmethod
    def create(cls, root: str | Path, cdm_database_name: str) -> "OutputDirectories":
        """Create the root and database directories (export is created on packaging)."""
        root = Path(root)
        database = root / cdm_database_name
        database.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Created output structure at: {database}")
        return cls(root=root, database=database, export=database / EXPORT_SUBDIR)

    @property
    def log_file(self) -> Path:
        return self.database / LOG_FILENAME

    @property
    def analysis_settings_file(self) -> Path:
        return self.root / ANALYSIS_SETTINGS_FILENAME

    def bundle_dir(self, analysis_id: str) -> Path:
        return self.database / analysis_id / RESULT_SUBDIR

    def existing_bundles(self) -> list[Path]:
        """Bundle directories already written, sorted by analysis id."""
        return sorted(
            p for p in self.database.glob(f"*/{RESULT_SUBDIR}") if (p / RESULT_JOBLIB).exists()
        )


class ResultsWriter:
    """
    Write one analysis result bundle.

    Usage:
        writer = ResultsWriter(dirs.bundle_dir("Analysis_1"))
        writer.write(result)
    """

    def __init__(self, bundle_dir: str | Path):
        self.bundle_dir = Path(bundle_dir)

    def _path(self, filename: str) -> Path:
        return self.bundle_dir / filename

    def save_table(self, frame: pd.DataFrame | None, filename: str) -> Path | None:
        """Write a table as CSV; None (step failed) writes nothing."""
        if frame is None:
            return None
        path = self._path(filename)
        frame.to_csv(path, index=False)
        logger.debug(f"Saved {filename}: {path}")
        return path

    def save_evaluation(self, evaluation: EvaluationTable | None) -> Path | None:
        if evaluation is None:
            return None
        return self.save_table(evaluation.to_frame(), "evaluation_statistics.csv")

    def save_recalibration(self, fit: RecalibrationFit | None) -> Path | None:
        if fit is None:
            return None
        path = self._path("recalibration.json")
        save_json(fit.to_dict(), path)
        return path

    def write(self, result: AnalysisResult) -> list[Path]:
        """
        Write every available part of the result.

        Returns:
            Paths written
        """
        self.bundle_dir.mkdir(parents=True, exist_ok=True)

        written = [
            self.save_table(result.prediction, "prediction.csv"),
            self.save_evaluation(result.evaluation),
            self.save_table(result.threshold_summary, "threshold_summary.csv"),
            self.save_table(result.calibration_summary, "calibration_summary.csv"),
            self.save_table(result.demographic_summary, "demographic_summary.csv"),
            self.save_table(result.covariate_summary, "covariate_summary.csv"),
            self.save_table(result.net_benefit, "nb.csv"),
            self.save_recalibration(result.recalibration),
        ]

        model_path = self._path("model.json")
        save_json(result.model, model_path)
        settings_path = self._path("input_settings.json")
        save_json(
            {
                **result.input_settings,
                "attrition": result.attrition,
                "failures": result.failures,
            },
            settings_path,
        )
        joblib_path = self._path(RESULT_JOBLIB)
        save_joblib(result, joblib_path)

        written.extend([model_path, settings_path, joblib_path])
        written = [p for p in written if p is not None]
        logger.info(f"Results saved to: {self.bundle_dir}")
        return written


def load_result(bundle_dir: str | Path) -> AnalysisResult:
    """
    Load the complete result object of a bundle.

    Raises:
        FileNotFoundError: If the bundle has no result.joblib
    """
    path = Path(bundle_dir) / RESULT_JOBLIB
    if not path.exists():
        raise FileNotFoundError(f"Result bundle not found: {path}")
    return load_joblib(path)
