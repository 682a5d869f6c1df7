"""
Result packaging for sharing.

Copies every analysis bundle into <db>/export/, leaves out patient-level files,
blanks small counts (and the statistics derived from them) below the minimum
cell count, then zips the export folder to <db>/<db name>_results.zip.
"""

import logging
import shutil
from pathlib import Path

import numpy as np
import pandas as pd

from rcri_study.evaluation.reports import PREDICTION_FILES
from rcri_study.utils.paths import ANALYSIS_SETTINGS_FILENAME, EXPORT_SUBDIR, RESULT_SUBDIR

logger = logging.getLogger(__name__)

# count column -> columns computed from that stratum, blanked together with it
REDACTION_RULES: dict[str, dict[str, list[str]]] = {
    "covariate_summary.csv": {
        "covariate_count": ["covariate_mean", "covariate_st_dev"],
        "covariate_count_with_no_outcome": [
            "covariate_mean_with_no_outcome",
            "covariate_st_dev_with_no_outcome",
        ],
        "covariate_count_with_outcome": [
            "covariate_mean_with_outcome",
            "covariate_st_dev_with_outcome",
        ],
    },
    "demographic_summary.csv": {
        "person_count": [
            "outcome_count",
            "average_predicted_probability",
            "st_dev_predicted_probability",
            "observed_incidence",
        ],
        "outcome_count": ["observed_incidence"],
    },
    "calibration_summary.csv": {
        "person_count": [
            "outcome_count",
            "average_predicted_probability",
            "min_predicted_probability",
            "max_predicted_probability",
            "observed_incidence",
        ],
        "outcome_count": ["observed_incidence"],
    },
    "threshold_summary.csv": {
        "positive_count": ["positive_predictive_value"],
        "true_count": ["sensitivity", "negative_predictive_value"],
        "false_count": ["specificity", "positive_predictive_value"],
        "true_positive_count": ["sensitivity", "positive_predictive_value"],
        "false_positive_count": ["specificity", "positive_predictive_value"],
        "true_negative_count": ["specificity", "negative_predictive_value"],
        "false_negative_count": ["sensitivity", "negative_predictive_value"],
    },
    "nb.csv": {
        "tp": ["net_benefit"],
        "fp": ["net_benefit"],
        "n_treat": ["net_benefit"],
    },
}

# Evaluation statistics that are counts
EVALUATION_COUNT_METRICS = ["population_size", "outcome_count"]

# Evaluation statistics that give back the outcome count with population_size
EVALUATION_DERIVED_METRICS = ["observed_risk"]


def redact_counts(
    frame: pd.DataFrame,
    rules: dict[str, list[str]],
    min_cell_count: int,
) -> pd.DataFrame:
    """
    Blank counts below min_cell_count and the columns derived from them.

    Masks are computed on the original counts before any cell is blanked.

    Returns:
        New frame; the input is not modified
    """
    redacted = frame.copy()
    masks = {}
    for count_col in rules:
        if count_col in frame.columns:
            counts = pd.to_numeric(frame[count_col], errors="coerce")
            masks[count_col] = (counts < min_cell_count).to_numpy()

    for count_col, mask in masks.items():
        if not mask.any():
            continue
        targets = [count_col] + [c for c in rules[count_col] if c in redacted.columns]
        for col in targets:
            redacted[col] = redacted[col].astype(float)
            redacted.loc[mask, col] = np.nan
    return redacted


def redact_evaluation(frame: pd.DataFrame, min_cell_count: int) -> pd.DataFrame:
    """
    Blank small counts in an evaluation table.

    Per (analysis_id, eval): a population size or outcome count below
    min_cell_count is blanked. The outcome count is also blanked when the
    non-outcome count (population size minus outcome count) is small. Once a
    count is blanked, observed_risk is blanked as well.
    """
    redacted = frame.copy()
    redacted["value"] = pd.to_numeric(redacted["value"], errors="coerce")

    for _, index in redacted.groupby(["analysis_id", "eval"], sort=False).groups.items():
        group = redacted.loc[index]
        values = dict(zip(group["metric"], group["value"]))
        n = values.get("population_size", np.nan)
        k = values.get("outcome_count", np.nan)

        blanked = {m for m in EVALUATION_COUNT_METRICS if values.get(m, np.inf) < min_cell_count}
        if n - k < min_cell_count:
            blanked.add("outcome_count")
        if not blanked:
            continue
        blanked.update(EVALUATION_DERIVED_METRICS)
        redacted.loc[index[group["metric"].isin(blanked).to_numpy()], "value"] = np.nan
    return redacted


def _export_bundle(bundle_dir: Path, target_dir: Path, min_cell_count: int) -> int:
    target_dir.mkdir(parents=True, exist_ok=True)
    n_redacted = 0
    for path in sorted(bundle_dir.iterdir()):
        if not path.is_file() or path.name in PREDICTION_FILES:
            continue
        if path.name in REDACTION_RULES:
            frame = pd.read_csv(path)
            redacted = redact_counts(frame, REDACTION_RULES[path.name], min_cell_count)
            n_redacted += int(redacted.isna().sum().sum() - frame.isna().sum().sum())
            redacted.to_csv(target_dir / path.name, index=False)
        elif path.name == "evaluation_statistics.csv":
            frame = pd.read_csv(path)
            redacted = redact_evaluation(frame, min_cell_count)
            n_redacted += int(redacted["value"].isna().sum() - frame["value"].isna().sum())
            redacted.to_csv(target_dir / path.name, index=False)
        else:
            shutil.copy2(path, target_dir / path.name)
    return n_redacted


def package_results(
    database_dir: str | Path,
    min_cell_count: int = 10,
    analysis_settings_file: str | Path | None = None,
) -> Path:
    """
    Redact and zip every result bundle under database_dir.

    Args:
        database_dir: <output_folder>/<cdm_database_name>
        min_cell_count: Counts below this are blanked
        analysis_settings_file: Optional analysis_settings.csv to include

    Returns:
        Path to the zip file

    Raises:
        FileNotFoundError: If database_dir does not exist
    """
    database_dir = Path(database_dir)
    if not database_dir.is_dir():
        raise FileNotFoundError(f"Results directory not found: {database_dir}")

    export_dir = database_dir / EXPORT_SUBDIR
    if export_dir.exists():
        shutil.rmtree(export_dir)
    export_dir.mkdir(parents=True)

    bundles = sorted(database_dir.glob(f"*/{RESULT_SUBDIR}"))
    bundles = [b for b in bundles if b.parent.name != EXPORT_SUBDIR]
    if not bundles:
        logger.warning(f"No result bundles found in {database_dir}")

    for bundle_dir in bundles:
        analysis_id = bundle_dir.parent.name
        n_redacted = _export_bundle(bundle_dir, export_dir / analysis_id, min_cell_count)
        logger.info(f"Packaged {analysis_id} ({n_redacted} cells below {min_cell_count} redacted)")

    if analysis_settings_file is not None and Path(analysis_settings_file).exists():
        shutil.copy2(analysis_settings_file, export_dir / ANALYSIS_SETTINGS_FILENAME)

    archive_base = database_dir / f"{database_dir.name}_results"
    zip_path = Path(shutil.make_archive(str(archive_base), "zip", root_dir=export_dir))
    logger.info(f"Packaged {len(bundles)} analyses into {zip_path}")
    return zip_path
